"""
Shared fixtures: a file-backed SQLite database per test, a controllable
clock, a recording notifier and a seeded organization.

SQLite is file-backed (not in-memory) so concurrent sessions get their
own connections and actually contend for the database lock.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import app.models  # noqa: F401
from app.models.membership import OrganizationMember
from app.models.organization import Organization
from app.models.user import User
from app.services.notifications import Notifier
from app.services.ownership_transfers import OwnershipTransferManager
from orgtree_shared.schemas.common import Role

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple] = []
        self.fail = False

    async def notify(self, kind, to_user_id, context):
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.sent.append((kind, to_user_id, context))
        return True


@dataclass
class SeededOrg:
    org_id: uuid.UUID
    owner: uuid.UUID
    admin: uuid.UUID
    editor: uuid.UUID
    viewer: uuid.UUID
    outsider: uuid.UUID


async def seed_org(session_factory, name: str = "Acme Genealogy") -> SeededOrg:
    """One owner, one admin, one editor, one viewer and a non-member user."""
    org = Organization(name=name, slug=f"{name.lower().replace(' ', '-')}-{uuid.uuid4().hex[:6]}")
    users = {
        key: User(display_name=f"{key.title()} of {name}", email=f"{key}-{uuid.uuid4().hex[:8]}@example.com")
        for key in ("owner", "admin", "editor", "viewer", "outsider")
    }
    async with session_factory() as session:
        session.add(org)
        session.add_all(users.values())
        await session.flush()
        for key in ("owner", "admin", "editor", "viewer"):
            session.add(OrganizationMember(org_id=org.id, user_id=users[key].id, role=Role(key).value))
        await session.commit()
    return SeededOrg(org_id=org.id, **{key: user.id for key, user in users.items()})


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'transfers.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def manager(session_factory, notifier, clock):
    manager = OwnershipTransferManager(
        session_factory, notifier=notifier, clock=clock, expiry_days=7
    )
    yield manager
    await manager.drain_notifications()


@pytest.fixture
async def org(session_factory):
    return await seed_org(session_factory)


async def role_in(session_factory, org_id, user_id):
    async with session_factory() as session:
        member = await session.get(OrganizationMember, (org_id, user_id))
        return Role(member.role) if member else None
