from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from oraya_control import db
from oraya_control.api.billing.stripe_client import reset_payments_client_factory
from oraya_control.api.main import create_app
from oraya_control.api.services.auth import (
    AuthService,
    hash_password,
    reset_auth_service,
)
from oraya_control.api.services.settings import (
    encode_setting_value,
    reset_settings_resolver,
)
from oraya_control.models import (
    AdminAuditLog,
    ApiKey,
    Base,
    License,
    Plan,
    PlatformAdmin,
    PlatformSetting,
    Team,
    TeamMember,
    User,
)

JWT_SECRET = "test-secret-key-for-control-plane-tests"

BILLING_ENV_VARS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_PRO_MONTHLY",
    "STRIPE_PRICE_PRO_YEARLY",
    "APP_URL",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    monkeypatch.setenv("JWT_SECRET_KEY", JWT_SECRET)
    for name in BILLING_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_auth_service()
    reset_settings_resolver()
    reset_payments_client_factory()
    yield
    reset_auth_service()
    reset_settings_resolver()
    reset_payments_client_factory()


@pytest_asyncio.fixture
async def session_maker(tmp_path: Path, monkeypatch):
    db_path = tmp_path / "control-plane.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(db, "_engine", engine)
    monkeypatch.setattr(db, "_sessionmaker", maker)
    try:
        yield maker
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture
def app(session_maker):
    return create_app()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_service() -> AuthService:
    return AuthService(secret_key=JWT_SECRET)


@pytest.fixture
def admin_headers(auth_service):
    """Build bearer headers for a superadmin panel session with ``role``."""

    def _headers(role: str = "superadmin", email: str = "root@oraya.dev") -> dict:
        token = auth_service.create_admin_token(
            admin_id=str(uuid.uuid4()), email=email, role=role
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def user_headers(auth_service):
    def _headers(user: User) -> dict:
        token = auth_service.create_user_token(str(user.id), user.email)
        return {"Authorization": f"Bearer {token}"}

    return _headers


class Seeder:
    """Inserts fixture rows, each call in its own committed session."""

    def __init__(self, maker: async_sessionmaker[AsyncSession]):
        self.maker = maker

    async def _add(self, row: Any) -> Any:
        async with self.maker() as s:
            s.add(row)
            await s.commit()
        return row

    async def user(
        self, email: Optional[str] = None, password: Optional[str] = None, **kw
    ) -> User:
        return await self._add(
            User(
                id=uuid.uuid4(),
                email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
                password_hash=hash_password(password) if password else None,
                **kw,
            )
        )

    async def plan(self, plan_id: str = "pro", **kw) -> Plan:
        kw.setdefault("name", plan_id.title())
        kw.setdefault("features", [])
        return await self._add(Plan(id=plan_id, **kw))

    async def team(self, owner: User, slug: Optional[str] = None, **kw) -> Team:
        return await self._add(
            Team(
                id=uuid.uuid4(),
                name=kw.pop("name", "Acme"),
                slug=slug or f"team-{uuid.uuid4().hex[:8]}",
                owner_id=owner.id,
                **kw,
            )
        )

    async def member(
        self, team: Team, user: User, status: str = "active", role: str = "member"
    ) -> TeamMember:
        return await self._add(
            TeamMember(
                id=uuid.uuid4(),
                team_id=team.id,
                user_id=user.id,
                role=role,
                status=status,
                joined_at=datetime.now(timezone.utc),
            )
        )

    async def license(
        self, user: User, plan_id: str, status: str = "active", **kw
    ) -> License:
        return await self._add(
            License(id=uuid.uuid4(), user_id=user.id, plan_id=plan_id, status=status, **kw)
        )

    async def admin(
        self, email: str, password: str, role: str = "superadmin", **kw
    ) -> PlatformAdmin:
        return await self._add(
            PlatformAdmin(
                id=uuid.uuid4(),
                email=email,
                password_hash=hash_password(password),
                role=role,
                **kw,
            )
        )

    async def api_key(self, user: User, key: Optional[str] = None, **kw) -> ApiKey:
        return await self._add(
            ApiKey(
                id=uuid.uuid4(),
                key=key or f"ora_{uuid.uuid4().hex}",
                user_id=user.id,
                **kw,
            )
        )

    async def setting(
        self,
        key: str,
        value: Any,
        category: str = "billing",
        is_sensitive: bool = False,
    ) -> PlatformSetting:
        return await self._add(
            PlatformSetting(
                key=key,
                value=encode_setting_value(value),
                category=category,
                is_sensitive=is_sensitive,
            )
        )


@pytest.fixture
def seed(session_maker) -> Seeder:
    return Seeder(session_maker)


@pytest.fixture
def audit_rows(session_maker):
    """Fetch committed audit rows, oldest first, filtered by column values."""

    async def _rows(**filters) -> list[AdminAuditLog]:
        stmt = select(AdminAuditLog).order_by(AdminAuditLog.created_at.asc())
        for column, value in filters.items():
            stmt = stmt.where(getattr(AdminAuditLog, column) == value)
        async with session_maker() as s:
            return list((await s.execute(stmt)).scalars().all())

    return _rows
