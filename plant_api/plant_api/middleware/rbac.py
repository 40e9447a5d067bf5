"""Role-Based Access Control dependencies.

Defines the three-tier PLANT role hierarchy (MEMBER, CHAPTER_LEADER,
ADMINISTRATOR).  Each role inherits all permissions of the roles below it.

Usage in routers::

    from plant_api.middleware.rbac import Permission, Role, require_permission

    @router.get("/leaderboard")
    async def leaderboard(
        ...,
        _role: Role = Depends(require_permission(Permission.READ_METRICS)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """Profile roles ordered by privilege level."""

    MEMBER = 0
    CHAPTER_LEADER = 1
    ADMINISTRATOR = 2

    @property
    def claim(self) -> str:
        """The string stored in tokens and on ``profiles.role``."""
        return self.name.lower()


# Mapping from the string claim value to the enum member.
_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    # Member self-service
    RECORD_METRICS = "record:metrics"
    READ_METRICS = "read:metrics"
    DECLARE_TRADES = "declare:trades"
    READ_TRADES = "read:trades"
    INITIATE_PAYMENTS = "initiate:payments"
    READ_INVOICES = "read:invoices"
    EXPORT_OWN_DATA = "export:own_data"
    UPDATE_OWN_PROFILE = "update:own_profile"
    READ_CHAPTERS = "read:chapters"

    # Chapter leadership
    VIEW_CHAPTER_DASHBOARD = "view:chapter_dashboard"
    SEND_REMINDERS = "send:reminders"
    MANAGE_CHAPTER_MEMBERS = "manage:chapter_members"

    # Administration
    MANAGE_USERS = "manage:users"
    MANAGE_CHAPTERS = "manage:chapters"
    MANAGE_TRADES = "manage:trades"
    SEND_NOTIFICATIONS = "send:notifications"
    GENERATE_REPORTS = "generate:reports"
    READ_AUDIT = "read:audit"
    VIEW_ADMIN_METRICS = "view:admin_metrics"


# ---------------------------------------------------------------------------
# Role -> Permission mapping (each role inherits from the tier below)
# ---------------------------------------------------------------------------

_MEMBER_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.RECORD_METRICS,
        Permission.READ_METRICS,
        Permission.DECLARE_TRADES,
        Permission.READ_TRADES,
        Permission.INITIATE_PAYMENTS,
        Permission.READ_INVOICES,
        Permission.EXPORT_OWN_DATA,
        Permission.UPDATE_OWN_PROFILE,
        Permission.READ_CHAPTERS,
    }
)

_CHAPTER_LEADER_PERMS: frozenset[Permission] = _MEMBER_PERMS | frozenset(
    {
        Permission.VIEW_CHAPTER_DASHBOARD,
        Permission.SEND_REMINDERS,
        Permission.MANAGE_CHAPTER_MEMBERS,
    }
)

_ADMINISTRATOR_PERMS: frozenset[Permission] = _CHAPTER_LEADER_PERMS | frozenset(
    {
        Permission.MANAGE_USERS,
        Permission.MANAGE_CHAPTERS,
        Permission.MANAGE_TRADES,
        Permission.SEND_NOTIFICATIONS,
        Permission.GENERATE_REPORTS,
        Permission.READ_AUDIT,
        Permission.VIEW_ADMIN_METRICS,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.MEMBER: _MEMBER_PERMS,
    Role.CHAPTER_LEADER: _CHAPTER_LEADER_PERMS,
    Role.ADMINISTRATOR: _ADMINISTRATOR_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the caller's role from ``request.state.role``.

    Unauthenticated public paths get ``MEMBER`` (least privilege).  An
    authenticated request without a role claim is rejected with 401, and
    an unknown role with 403.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        if getattr(request.state, "sub", None) is not None:
            logger.warning(
                "Authenticated request (sub=%s) missing role claim; rejecting",
                getattr(request.state, "sub", "unknown"),
            )
            raise HTTPException(status_code=401, detail="Missing role claim in authenticated token")
        return Role.MEMBER

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


# ---------------------------------------------------------------------------
# FastAPI dependencies: permission and role guards
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`Role` so handlers can branch on it.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: role '{role.claim}' does not have '{permission.value}' permission",
            )
        return role

    return _guard


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum role level."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role < min_role:
            logger.info("Role check failed: role=%s requires %s", role.name, min_role.name)
            raise HTTPException(
                status_code=403,
                detail=f"Requires role '{min_role.claim}' or above",
            )
        return role

    return _guard
