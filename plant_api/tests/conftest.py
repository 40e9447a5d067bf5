"""Shared fixtures for PLANT API tests.

Provides an in-memory SQLite database, a recording email transport, a
simulated MPESA client, an ``httpx`` client bound to the FastAPI app, and
a seeded chapter world used across the router test modules.
"""

from __future__ import annotations

import base64
import json
import os
import re
import uuid
import zlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret.
_TEST_JWT_SECRET = "test-secret-key-for-plant-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from plant_api.config import APISettings, MpesaMode
from plant_api.dependencies import get_db_session, get_email_client, get_mpesa_client, get_settings
from plant_api.main import create_app
from plant_api.middleware.auth import get_token_manager
from plant_api.services import event_bus as event_bus_module
from plant_api.services.email_client import EmailClient
from plant_api.services.mpesa_client import MpesaClient
from plant_core.metrics.periods import today_utc
from plant_core.state.repository import (
    AuthIdentityRepository,
    ChapterRepository,
    MetricRepository,
    ProfileRepository,
    TradeRepository,
)
from plant_core.state.sqlite_adapter import get_local_engine
from plant_core.state.tables import Base, ChapterTable, MetricTable, ProfileTable, TradeTable

DEFAULT_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


def auth_headers(profile_id: str, role: str = "member") -> dict[str, str]:
    """Bearer header for *profile_id* with the given role claim."""
    token = get_token_manager().generate_token(profile_id, role)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# PDF helpers
# ---------------------------------------------------------------------------

_PDF_STREAM = re.compile(rb"stream\r?\n(.*?)endstream", re.S)


def pdf_text(pdf_bytes: bytes) -> str:
    """Decoded content streams of a reportlab PDF, for substring checks."""
    chunks = []
    for raw in _PDF_STREAM.findall(pdf_bytes):
        data = raw.strip()
        if data.endswith(b"~>"):
            try:
                data = base64.a85decode(data, adobe=True)
            except ValueError:
                continue
        try:
            data = zlib.decompress(data)
        except zlib.error:
            pass
        chunks.append(data.decode("latin-1"))
    return "\n".join(chunks)


# ---------------------------------------------------------------------------
# Email outbox
# ---------------------------------------------------------------------------


class Outbox:
    """Records every message posted to the fake email API.

    Addresses in ``reject`` get a 422 back, which the client treats as a
    permanent failure.
    """

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.reject: set[str] = set()
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = json.loads(request.content)
        if any(address in self.reject for address in payload["to"]):
            return httpx.Response(422, json={"message": "Invalid `to` field"})
        self.messages.append(payload)
        return httpx.Response(200, json={"id": f"email-{len(self.messages)}"})

    def to(self, address: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if address in m["to"]]


@pytest.fixture()
def outbox() -> Outbox:
    return Outbox()


@pytest_asyncio.fixture()
async def email_client(outbox: Outbox) -> AsyncIterator[EmailClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(outbox.handler))
    client = EmailClient(api_key="re_test", http_client=http_client, backoff_base=0)
    yield client
    await http_client.aclose()


@pytest.fixture()
def mpesa_client() -> MpesaClient:
    return MpesaClient(mode=MpesaMode.SIMULATED)


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Any) -> APISettings:
    """API settings wired to in-memory SQLite and a temporary invoice store."""
    return APISettings(
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        invoice_storage_path=str(tmp_path / "invoices"),
        email_api_key="re_test",
        notification_batch_pause_seconds=0,
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture()
async def engine() -> AsyncIterator[Any]:
    eng = get_local_engine(":memory:")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: Any) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """A single session for service-level tests.

    The in-memory engine shares one connection, so service tests do all
    their work (seeding included) inside this session.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture()
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Context manager yielding a session that commits on exit.

    Router tests seed through this and close it before issuing requests.
    """

    @asynccontextmanager
    async def _seed() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session
            await session.commit()

    return _seed


@pytest.fixture(autouse=True)
def _reset_event_bus() -> Any:
    event_bus_module._event_bus = None
    yield
    event_bus_module._event_bus = None


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    email_client: EmailClient,
    mpesa_client: MpesaClient,
) -> Any:
    """FastAPI app with every external dependency overridden."""
    application = create_app()

    async def _session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_email_client] = lambda: email_client
    application.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    return application


@pytest_asyncio.fixture()
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


async def make_profile(
    session: AsyncSession,
    *,
    email: str | None = None,
    full_name: str = "Test Member",
    role: str = "member",
    chapter_id: str | None = None,
    business_name: str | None = None,
    phone: str | None = None,
    password: str | None = DEFAULT_PASSWORD,
) -> ProfileTable:
    """Create an auth identity and its profile."""
    email = email or f"member-{uuid.uuid4().hex[:8]}@example.com"
    identity = await AuthIdentityRepository(session).create(email, password)
    return await ProfileRepository(session).create(
        profile_id=identity.id,
        email=email,
        full_name=full_name,
        role=role,
        chapter_id=chapter_id,
        business_name=business_name,
        phone=phone,
    )


async def make_chapter(session: AsyncSession, name: str, leader_id: str | None = None) -> ChapterTable:
    return await ChapterRepository(session).create(name, leader_id)


async def make_metric(
    session: AsyncSession,
    profile: ProfileTable,
    metric_type: str,
    value: Decimal | int | str,
    entry_date: date | None = None,
    description: str | None = None,
) -> MetricTable:
    return await MetricRepository(session).create(
        user_id=profile.id,
        chapter_id=profile.chapter_id,
        metric_type=metric_type,
        value=Decimal(str(value)),
        entry_date=entry_date or today_utc(),
        description=description,
    )


async def make_trade(
    session: AsyncSession,
    profile: ProfileTable,
    amount: Decimal | int | str = "1500.00",
    *,
    description: str = "Catering referral",
    source: ProfileTable | None = None,
    beneficiary: ProfileTable | None = None,
) -> TradeTable:
    return await TradeRepository(session).create(
        user_id=profile.id,
        chapter_id=profile.chapter_id,
        amount=Decimal(str(amount)),
        description=description,
        source_member_id=source.id if source else None,
        beneficiary_member_id=beneficiary.id if beneficiary else None,
    )


# ---------------------------------------------------------------------------
# Seeded world
# ---------------------------------------------------------------------------


@dataclass
class World:
    """Ids of the seeded chapters and people, plus their auth headers."""

    chapter_id: str
    other_chapter_id: str
    admin_id: str
    leader_id: str
    member_id: str
    peer_id: str
    outsider_id: str
    emails: dict[str, str] = field(default_factory=dict)

    @property
    def admin(self) -> dict[str, str]:
        return auth_headers(self.admin_id, "administrator")

    @property
    def leader(self) -> dict[str, str]:
        return auth_headers(self.leader_id, "chapter_leader")

    @property
    def member(self) -> dict[str, str]:
        return auth_headers(self.member_id, "member")

    @property
    def peer(self) -> dict[str, str]:
        return auth_headers(self.peer_id, "member")

    @property
    def outsider(self) -> dict[str, str]:
        return auth_headers(self.outsider_id, "member")


@pytest_asyncio.fixture()
async def world(seed: Any) -> World:
    """Two chapters, an administrator, a leader and three members.

    ``Nairobi Central`` is led by the leader and holds ``member`` and
    ``peer``; ``Mombasa`` holds ``outsider``.
    """
    async with seed() as session:
        admin = await make_profile(session, email="admin@example.com", full_name="Ada Admin", role="administrator")
        leader = await make_profile(
            session,
            email="leader@example.com",
            full_name="Lee Leader",
            role="chapter_leader",
            phone="0711000001",
        )
        chapter = await make_chapter(session, "Nairobi Central", leader.id)
        other = await make_chapter(session, "Mombasa")
        await ProfileRepository(session).update(leader.id, chapter_id=chapter.id)
        member = await make_profile(
            session,
            email="wanjiku@example.com",
            full_name="Wanjiku Kamau",
            chapter_id=chapter.id,
            business_name="Kamau Catering",
            phone="0712345678",
        )
        peer = await make_profile(
            session,
            email="otieno@example.com",
            full_name="Otieno Odhiambo",
            chapter_id=chapter.id,
            business_name="Odhiambo Prints",
            phone="0722000000",
        )
        outsider = await make_profile(
            session,
            email="fatma@example.com",
            full_name="Fatma Said",
            chapter_id=other.id,
            business_name="Said Tours",
        )

    return World(
        chapter_id=chapter.id,
        other_chapter_id=other.id,
        admin_id=admin.id,
        leader_id=leader.id,
        member_id=member.id,
        peer_id=peer.id,
        outsider_id=outsider.id,
        emails={
            "admin": admin.email,
            "leader": leader.email,
            "member": member.email,
            "peer": peer.email,
            "outsider": outsider.email,
        },
    )
