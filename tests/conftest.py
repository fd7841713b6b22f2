from __future__ import annotations
import uuid
from datetime import date, datetime, timedelta, timezone
import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.pool import StaticPool

from phifit.db import Database
from phifit.main import create_app
from phifit.models.competition import Participant
from phifit.models.ledger import LedgerReason
from phifit.models.user import User
from phifit.rate_limit import InMemoryRateLimiter
from phifit.security import hash_pin
from phifit.services import competitions, ledger

PIN = "1234"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def recent_start() -> date:
    # week 0 is open for the next ~6 days
    return (datetime.now(timezone.utc) - timedelta(days=1)).date()


@pytest_asyncio.fixture
async def db():
    database = Database(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def session(db):
    async with db.session() as s:
        yield s


@pytest_asyncio.fixture
async def app(db):
    return create_app(database=db, rate_limiter=InMemoryRateLimiter(max_attempts=5))


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def make_user(session, name: str = "user") -> User:
    user = User(email=f"{name}-{uuid.uuid4().hex[:8]}@ex.com", display_name=name, pin_hash=hash_pin(PIN))
    session.add(user)
    await session.flush()
    return user


async def make_competition(session, organizer: User, *members: User, **kwargs):
    kwargs.setdefault("name", "Spring Shred")
    kwargs.setdefault("start_date", recent_start())
    kwargs.setdefault("number_of_weeks", 4)
    competition = await competitions.create_competition(session, organizer.id, **kwargs)
    for m in members:
        session.add(Participant(competition_id=competition.id, user_id=m.id))
    await session.flush()
    return competition


def grant(session, competition, user: User, tokens: int):
    """Seed a starting balance (no week attached)."""
    ledger.append(
        session, competition_id=competition.id, user_id=user.id, delta=tokens,
        reason=LedgerReason.PERFECT_WEEK_EARNED,
    )


async def register_login(ac: AsyncClient, name: str = "user") -> tuple[dict, dict]:
    email = f"{name}-{uuid.uuid4().hex[:8]}@ex.com"
    r = await ac.post("/auth/register", json={"email": email, "display_name": name, "pin": PIN})
    assert r.status_code == 201, r.text
    r = await ac.post("/auth/login", json={"email": email, "pin": PIN})
    assert r.status_code == 200, r.text
    body = r.json()
    ac.cookies.clear()
    return {"Authorization": f"Bearer {body['access']}"}, body["user"]
