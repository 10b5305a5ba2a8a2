from __future__ import annotations
# ruff: noqa: E402

import os
import sys
import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

API_ROOT = Path(__file__).resolve().parents[1]
REPO_ROOT = Path(__file__).resolve().parents[3]
for path in (API_ROOT, REPO_ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("APP_ENV", "development")

from app.db import build_engine, get_db
from app.main import app
from app.models import Account, Base, User
from app.services import rate_limit
from app.services.invitations import InvitationLifecycle
from app.store import SqlAccountScopeStore
from packages.access import Role

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@dataclass(frozen=True)
class Member:
    id: uuid.UUID
    account_id: uuid.UUID
    role: Role
    subject: str
    email: str

    @property
    def headers(self) -> dict[str, str]:
        return {"X-Auth-Subject": self.subject, "X-Auth-Email": self.email}


@dataclass(frozen=True)
class Tenants:
    account_a: uuid.UUID
    account_b: uuid.UUID
    super_admin: Member
    admin: Member
    editor: Member
    other_editor: Member
    viewer: Member
    outsider: Member


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current


class CountingTokenGenerator:
    def __init__(self) -> None:
        self.issued = 0

    def generate(self) -> str:
        self.issued += 1
        return f"test-token-{self.issued:08d}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def invitation_created(self, invitation, account) -> None:  # type: ignore[no-untyped-def]
        self.sent.append((invitation.email, account.name))


class FakeRedis:
    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.expirations: dict[str, int] = {}

    def incr(self, key: str) -> int:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key: str, ttl: int) -> bool:
        self.expirations[key] = ttl
        return True

    def ping(self) -> bool:
        return True


class RecordingStore(SqlAccountScopeStore):
    """Remembers the timeout each transaction was opened with."""

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.timeouts: list[int | None] = []

    def _apply_timeout(self, timeout_ms: int | None) -> None:
        self.timeouts.append(timeout_ms)
        super()._apply_timeout(timeout_ms)


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = build_engine("sqlite+pysqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def file_sessions(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    # Separate connections to one file, for interleaving two transactions.
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture()
def store(db_session: Session) -> SqlAccountScopeStore:
    return SqlAccountScopeStore(db_session)


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def lifecycle(store: SqlAccountScopeStore, clock: FixedClock, notifier: RecordingNotifier) -> InvitationLifecycle:
    return InvitationLifecycle(
        store,
        clock=clock,
        token_generator=CountingTokenGenerator(),
        notifier=notifier,
        ttl_days=7,
    )


def _member(session: Session, account: Account, role: Role, subject: str) -> Member:
    user = User(external_auth_id=subject, email=f"{subject}@example.com", account_id=account.id, role=role)
    session.add(user)
    session.flush()
    return Member(id=user.id, account_id=account.id, role=role, subject=subject, email=user.email)


@pytest.fixture()
def tenants(db_session: Session) -> Tenants:
    account_a = Account(name="Acme Marketing")
    account_b = Account(name="Globex Growth")
    db_session.add_all([account_a, account_b])
    db_session.flush()
    seeded = Tenants(
        account_a=account_a.id,
        account_b=account_b.id,
        super_admin=_member(db_session, account_a, Role.SUPER_ADMIN, "alice"),
        admin=_member(db_session, account_a, Role.ADMIN, "adam"),
        editor=_member(db_session, account_a, Role.EDITOR, "erin"),
        other_editor=_member(db_session, account_a, Role.EDITOR, "eddie"),
        viewer=_member(db_session, account_a, Role.VIEWER, "vera"),
        outsider=_member(db_session, account_b, Role.SUPER_ADMIN, "olga"),
    )
    db_session.commit()
    return seeded


@pytest.fixture()
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(rate_limit, "get_redis_client", lambda: fake)
    return fake


@pytest.fixture()
def api(session_factory: sessionmaker[Session], fake_redis: FakeRedis) -> Generator[object, None, None]:
    def _get_db() -> Generator[Session, None, None]:
        with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    yield app
    app.dependency_overrides.clear()
