"""
Shared fixtures.

Every store-level and HTTP test runs against both persistence backends:
SQLAlchemy on an in-memory SQLite database, and the process-local memory store.
"""

import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterator

import pytest

# Must be set before directrent modules are imported.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.pop("PAYSTACK_SECRET_KEY", None)

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, update  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from directrent.db import session_scope  # noqa: E402
from directrent.entitlements import EntitlementRecord  # noqa: E402
from directrent.main import app, get_store  # noqa: E402
from directrent.models import Base, User  # noqa: E402
from directrent.rate_limit import limiter  # noqa: E402
from directrent.security import create_access_token  # noqa: E402
from directrent.storage.base import ContactStore, Listing, UserAccount  # noqa: E402
from directrent.storage.memory import MemoryContactStore  # noqa: E402
from directrent.storage.sql import SqlContactStore  # noqa: E402
from directrent.tiers import SubscriptionTier  # noqa: E402

# Placeholder hash; store-level tests never log in.
PASSWORD_HASH = "$2b$12$0123456789012345678901uQKXG2a3nN3JfYwqV1g3P3Jr4h0w1Zy"

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixtureMemoryStore(MemoryContactStore):
    """Memory store with direct writes for arranging test state."""

    def put_entitlement(self, record: EntitlementRecord) -> None:
        with self._lock:
            if record.user_id not in self._users:
                raise KeyError(record.user_id)
            self._records[record.user_id] = record

    def grant_count(self) -> int:
        with self._lock:
            return len(self._grants)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, class_=Session, expire_on_commit=False, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(params=["sql", "memory"])
def backend(request) -> str:
    return request.param


@pytest.fixture
def store(backend, db_session) -> ContactStore:
    if backend == "sql":
        return SqlContactStore(db_session)
    return FixtureMemoryStore()


@pytest.fixture
def client(backend, session_factory) -> Iterator[TestClient]:
    memory = FixtureMemoryStore()

    def _override_store():
        if backend == "memory":
            yield memory
            return
        with session_scope(session_factory) as db:
            yield SqlContactStore(db)

    app.dependency_overrides[get_store] = _override_store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def api_store(backend, session_factory, client) -> Iterator[ContactStore]:
    """Direct store access to the same data the `client` fixture serves."""
    override = app.dependency_overrides[get_store]
    gen = override()
    yield next(gen)
    gen.close()


# -----------------------
# Helpers
# -----------------------
def make_user(store: ContactStore, phone: str = "+233241234567", *, role: str = "tenant", name: str = "Ama Mensah") -> UserAccount:
    user = store.create_user(phone=phone, full_name=name, password_hash=PASSWORD_HASH, role=role)
    commit(store)
    return user


def make_listing(store: ContactStore, owner: UserAccount, title: str = "2 bedroom flat, East Legon") -> Listing:
    listing = store.create_property(owner_id=owner.id, title=title, price=1500, city="Accra", neighborhood="East Legon")
    commit(store)
    return listing


def set_entitlement(store: ContactStore, user_id: int, **fields) -> None:
    if isinstance(store, FixtureMemoryStore):
        store.put_entitlement(replace(store.get_entitlement(user_id), **fields))
        return
    values = dict(fields)
    if "subscription_tier" in values:
        values["subscription_tier"] = SubscriptionTier(values["subscription_tier"]).value
    if "version" in values:
        values["entitlement_version"] = values.pop("version")
    store.db.execute(update(User).where(User.id == user_id).values(**values))
    store.db.commit()


def commit(store: ContactStore) -> None:
    if isinstance(store, SqlContactStore):
        store.db.commit()


def auth_headers(user: UserAccount) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id=user.id, role=user.role)}"}
