"""Administrator operations: platform metrics, users and chapters."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.auth_service import AuthService, profile_to_dict
from plant_api.services.email_client import EmailClient
from plant_api.services.errors import (
    ChapterNotEmptyError,
    ChapterNotFoundError,
    ConflictError,
    ExternalServiceError,
    ProfileNotFoundError,
    UserCreationError,
)
from plant_api.services.trade_service import profile_ref
from plant_core.metrics.aggregation import sum_decimal
from plant_core.metrics.periods import growth_percent, today_utc
from plant_core.models.profile import ProfileRole
from plant_core.models.trade import TradeStatus
from plant_core.state.repository import (
    AuthIdentityRepository,
    ChapterRepository,
    MetricRepository,
    ProfileRepository,
    ReportHistoryRepository,
    TradeRepository,
)
from plant_core.state.tables import ChapterTable

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)

_GROWTH_WINDOW = timedelta(days=30)
_ADMIN_EDITABLE_FIELDS = frozenset(
    {"full_name", "role", "chapter_id", "business_name", "business_description", "phone"}
)
_DETACH_VALUES = frozenset({"", "none"})


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100.0, 1) if whole else 0.0


def _validate_role(role: str) -> str:
    try:
        return ProfileRole(role).value
    except ValueError:
        raise ValueError(f"role must be one of {[r.value for r in ProfileRole]}") from None


class AdminService:
    """Administrator-only reads and writes.

    Parameters
    ----------
    session:
        Request-scoped database session.
    actor_id:
        The administrator's profile id, recorded on audit entries.
    """

    def __init__(self, session: AsyncSession, *, actor_id: str | None = None) -> None:
        self._session = session
        self._actor_id = actor_id
        self._profiles = ProfileRepository(session)
        self._identities = AuthIdentityRepository(session)
        self._chapters = ChapterRepository(session)
        self._metrics = MetricRepository(session)
        self._trades = TradeRepository(session)
        self._reports = ReportHistoryRepository(session)
        self._audit = AuditService(session, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def dashboard_metrics(self, now: datetime | None = None) -> dict[str, Any]:
        """System-wide counters and 30-day growth."""
        now = now or datetime.now(UTC)
        window_start = now - _GROWTH_WINDOW

        total_members = await self._profiles.count()
        members_before = await self._profiles.count(created_before=window_start)
        total_chapters = await self._chapters.count()
        chapters_before = await self._chapters.count(created_before=window_start)

        total_revenue = sum_decimal(await self._trades.paid_amounts())
        recent_revenue = sum_decimal(await self._trades.paid_amounts(paid_from=window_start))
        previous_revenue = sum_decimal(
            await self._trades.paid_amounts(paid_from=window_start - _GROWTH_WINDOW, paid_to=window_start)
        )

        by_status = await self._trades.count_by_status()
        paid = by_status.get(TradeStatus.PAID.value, 0)
        failed = by_status.get(TradeStatus.FAILED.value, 0)
        open_ = by_status.get(TradeStatus.PENDING.value, 0) + by_status.get(TradeStatus.INVOICED.value, 0)
        considered = paid + failed + open_

        return {
            "total_members": total_members,
            "total_chapters": total_chapters,
            "total_revenue": total_revenue,
            "member_growth": growth_percent(total_members, members_before),
            "chapter_growth": growth_percent(total_chapters, chapters_before),
            "revenue_growth": growth_percent(recent_revenue, previous_revenue),
            "successful_payments": _percent(paid, considered),
            "pending_payments": _percent(open_, considered),
            "failed_payments": _percent(failed, considered),
            "daily_active_users": await self._metrics.active_users_since(now - timedelta(hours=24)),
            "metrics_submitted": await self._metrics.count_since(today_utc() - _GROWTH_WINDOW),
            "reports_generated": await self._reports.count(),
        }

    async def top_chapters(self, limit: int = 10) -> list[dict[str, Any]]:
        chapters = await self.list_chapters()
        chapters.sort(key=lambda c: (-c["total_revenue"], c["name"]))
        return chapters[:limit]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def list_users(
        self,
        *,
        role: str | None = None,
        chapter_id: str | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Paged users; ``chapter_id="none"`` selects unaffiliated users."""
        unaffiliated = chapter_id is not None and chapter_id.lower() in _DETACH_VALUES
        rows, total = await self._profiles.list(
            role=_validate_role(role) if role else None,
            chapter_id=None if unaffiliated else chapter_id,
            unaffiliated=unaffiliated,
            search=search,
            limit=limit,
            offset=offset,
        )
        chapters = await self._chapters.get_many(r.chapter_id for r in rows)
        return [
            profile_to_dict(r, chapter_name=chapters[r.chapter_id].name if r.chapter_id in chapters else None)
            for r in rows
        ], total

    async def create_user(
        self,
        *,
        email: str,
        full_name: str,
        role: str = ProfileRole.MEMBER.value,
        chapter_id: str | None = None,
        business_name: str | None = None,
        business_description: str | None = None,
        phone: str | None = None,
        settings: APISettings,
        email_client: EmailClient,
    ) -> dict[str, Any]:
        """Create an identity and its profile, then email a password link.

        The profile insert runs under a savepoint; if it fails the
        identity is removed so no login exists without a profile.

        Raises
        ------
        ValueError
            Invalid email, name or role.
        ConflictError
            The email is already registered.
        ChapterNotFoundError
            *chapter_id* does not exist.
        UserCreationError
            The profile could not be written.
        """
        email = email.lower().strip()
        if not email or "@" not in email:
            raise ValueError("A valid email address is required")
        if not full_name or not full_name.strip():
            raise ValueError("Full name is required")
        role = _validate_role(role)
        if chapter_id and await self._chapters.get(chapter_id) is None:
            raise ChapterNotFoundError(chapter_id)
        if await self._profiles.get_by_email(email) is not None or await self._identities.get_by_email(email):
            raise ConflictError("A user with this email already exists")

        identity = await self._identities.create(email)
        try:
            async with self._session.begin_nested():
                profile = await self._profiles.create(
                    profile_id=identity.id,
                    email=email,
                    full_name=full_name,
                    role=role,
                    chapter_id=chapter_id or None,
                    business_name=business_name,
                    business_description=business_description,
                    phone=phone,
                )
        except SQLAlchemyError as exc:
            logger.error("Profile insert for %s failed; removing identity %s", email, identity.id, exc_info=True)
            await self._identities.delete(identity.id)
            raise UserCreationError("User creation failed") from exc

        await self._audit.log(
            AuditAction.USER_CREATED,
            "profiles",
            profile.id,
            new_values={"email": email, "role": role, "chapter_id": profile.chapter_id},
        )

        invite_sent = True
        try:
            await AuthService(self._session).send_invite(profile, settings, email_client)
        except ExternalServiceError as exc:
            invite_sent = False
            logger.warning("Password-set email for %s failed: %s", email, exc)

        result = profile_to_dict(profile)
        result["invite_sent"] = invite_sent
        return result

    async def update_user(self, user_id: str, **fields: Any) -> dict[str, Any]:
        """Partial update.  ``chapter_id`` of ``""`` or ``"none"`` detaches."""
        unknown = set(fields) - _ADMIN_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        profile = await self._profiles.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)

        if "role" in fields:
            fields["role"] = _validate_role(fields["role"])
        if "chapter_id" in fields:
            chapter_id = fields["chapter_id"]
            if chapter_id is None or str(chapter_id).lower() in _DETACH_VALUES:
                fields["chapter_id"] = None
            elif await self._chapters.get(chapter_id) is None:
                raise ChapterNotFoundError(chapter_id)
        if "full_name" in fields and not (fields["full_name"] or "").strip():
            raise ValueError("Full name must not be empty")

        old_values = {k: getattr(profile, k) for k in fields}
        await self._profiles.update(user_id, **fields)
        was_leader = old_values.get("role") == ProfileRole.CHAPTER_LEADER.value
        if was_leader and fields["role"] != ProfileRole.CHAPTER_LEADER.value:
            await self._chapters.clear_leader(user_id)

        await self._audit.log(
            AuditAction.USER_UPDATED,
            "profiles",
            user_id,
            old_values=old_values,
            new_values=dict(fields),
        )
        updated = await self._profiles.get(user_id)
        chapter = await self._chapters.get(updated.chapter_id) if updated and updated.chapter_id else None
        return profile_to_dict(updated, chapter_name=chapter.name if chapter else None)

    async def delete_user(self, user_id: str) -> None:
        """Remove a user who never declared a trade.

        Raises
        ------
        ValueError
            An administrator tried to delete their own account.
        ConflictError
            The user has declared trades, which are kept forever.
        """
        if user_id == self._actor_id:
            raise ValueError("You cannot delete your own account")
        profile = await self._profiles.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)
        trade_count = await self._trades.count_for_user(user_id)
        if trade_count:
            raise ConflictError(f"Cannot delete a user with {trade_count} declared trade(s)")

        await self._chapters.clear_leader(user_id)
        await self._trades.clear_counterpart(user_id)
        removed_metrics = await self._metrics.delete_for_user(user_id)
        await self._identities.delete(user_id)
        await self._profiles.delete(user_id)
        await self._audit.log(
            AuditAction.USER_DELETED,
            "profiles",
            user_id,
            old_values={"email": profile.email, "role": profile.role, "chapter_id": profile.chapter_id},
            new_values={"metrics_removed": removed_metrics},
        )
        logger.info("User %s deleted (%d metric(s) removed)", user_id, removed_metrics)

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    async def list_chapters(self) -> list[dict[str, Any]]:
        """Every chapter with leader, member count, paid revenue and metric count."""
        chapters = await self._chapters.list_all()
        leaders = await self._profiles.get_many(c.leader_id for c in chapters)
        members = await self._profiles.count_by_chapter()
        revenue = await self._trades.paid_amounts_by_chapter()
        metric_counts = await self._metrics.count_by_chapter()
        return [
            self._chapter_to_dict(
                c,
                leader=leaders.get(c.leader_id) if c.leader_id else None,
                member_count=members.get(c.id, 0),
                total_revenue=sum_decimal(revenue.get(c.id, [])),
                metrics_count=metric_counts.get(c.id, 0),
            )
            for c in chapters
        ]

    @staticmethod
    def _chapter_to_dict(chapter: ChapterTable, **stats: Any) -> dict[str, Any]:
        leader = stats.pop("leader", None)
        return {
            "id": chapter.id,
            "name": chapter.name,
            "leader_id": chapter.leader_id,
            "leader": profile_ref(leader),
            "created_at": chapter.created_at,
            "updated_at": chapter.updated_at,
            **stats,
        }

    async def _check_leader(self, leader_id: str | None) -> str | None:
        if not leader_id:
            return None
        leader = await self._profiles.get(leader_id)
        if leader is None:
            raise ProfileNotFoundError(leader_id)
        if leader.role != ProfileRole.CHAPTER_LEADER.value:
            raise ValueError("The chapter leader must have the chapter_leader role")
        return leader.id

    async def create_chapter(self, name: str, leader_id: str | None = None) -> dict[str, Any]:
        if not name or not name.strip():
            raise ValueError("Chapter name is required")
        leader_id = await self._check_leader(leader_id)
        chapter = await self._chapters.create(name, leader_id)
        await self._audit.log(
            AuditAction.CHAPTER_CREATED,
            "chapters",
            chapter.id,
            new_values={"name": chapter.name, "leader_id": leader_id},
        )
        leader = await self._profiles.get(leader_id) if leader_id else None
        return self._chapter_to_dict(
            chapter, leader=leader, member_count=0, total_revenue=sum_decimal([]), metrics_count=0
        )

    async def update_chapter(self, chapter_id: str, **fields: Any) -> dict[str, Any]:
        chapter = await self._chapters.get(chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(chapter_id)
        changes: dict[str, Any] = {}
        if fields.get("name") is not None:
            if not fields["name"].strip():
                raise ValueError("Chapter name must not be empty")
            changes["name"] = fields["name"].strip()
        if "leader_id" in fields:
            changes["leader_id"] = await self._check_leader(fields["leader_id"])

        old_values = {k: getattr(chapter, k) for k in changes}
        if changes:
            await self._chapters.update(chapter_id, **changes)
            await self._audit.log(
                AuditAction.CHAPTER_UPDATED,
                "chapters",
                chapter_id,
                old_values=old_values,
                new_values=changes,
            )
        for chapter_dict in await self.list_chapters():
            if chapter_dict["id"] == chapter_id:
                return chapter_dict
        raise ChapterNotFoundError(chapter_id)

    async def delete_chapter(self, chapter_id: str) -> None:
        """Delete an empty chapter.

        Raises
        ------
        ChapterNotEmptyError
            Members still belong to the chapter; nothing is deleted.
        """
        chapter = await self._chapters.get(chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(chapter_id)
        member_count = await self._profiles.count_in_chapter(chapter_id)
        if member_count > 0:
            raise ChapterNotEmptyError(chapter_id, member_count)
        await self._chapters.delete(chapter_id)
        await self._audit.log(
            AuditAction.CHAPTER_DELETED,
            "chapters",
            chapter_id,
            old_values={"name": chapter.name, "leader_id": chapter.leader_id},
        )
        logger.info("Chapter %s deleted", chapter_id)
