"""Shared fixtures: in-memory SQLite database, seeded tenant, user factory, clock."""
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qms_core.authorization import AuthorizationEngine
from qms_core.models import Base, Tenant, User
from qms_core.permissions import default_catalog, seed_roles


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


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
def db(db_engine):
    session = sessionmaker(bind=db_engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 9, 0, 0))


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def tenant(db):
    tenant = Tenant(id=uuid4(), name="Acme Manufacturing", slug="acme")
    db.add(tenant)
    db.flush()
    return tenant


@pytest.fixture
def other_tenant(db):
    tenant = Tenant(id=uuid4(), name="Globex", slug="globex")
    db.add(tenant)
    db.flush()
    return tenant


@pytest.fixture
def roles(db, tenant, catalog):
    return {role.name: role for role in seed_roles(db, tenant.id, catalog)}


@pytest.fixture
def make_user(db, tenant, roles):
    """Factory: make_user("alice", "Auditor", manager=bob)."""

    def _make(name, *role_names, manager=None, org_unit_id=None, tenant_id=None, is_active=True):
        user = User(
            id=uuid4(),
            tenant_id=tenant_id or tenant.id,
            email=f"{name}-{uuid4().hex[:8]}@example.com",
            full_name=name.title(),
            manager_id=manager.id if manager is not None else None,
            org_unit_id=org_unit_id,
            is_active=is_active,
        )
        user.roles = [roles[role_name] for role_name in role_names]
        db.add(user)
        db.flush()
        return user

    return _make


@pytest.fixture
def authz(db, catalog, clock):
    return AuthorizationEngine(db, catalog, clock=clock)
