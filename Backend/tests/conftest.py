import os

os.environ.setdefault("TRUSTCORE_JWT_SECRET", "test-secret-do-not-use-in-production")
os.environ.setdefault("TRUSTCORE_BCRYPT_ROUNDS", "4")

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from trustcore.database import create_engine, create_session_factory, init_models
from trustcore.models.directory import Organization, User
from trustcore.schemas.notification import NotificationEffect
from trustcore.services.lockout_service import LockoutService
from trustcore.services.login_service import LoginService
from trustcore.services.password_policy import PasswordPolicyService
from trustcore.services.password_service import PasswordChangeService
from trustcore.services.permission_service import PermissionResolver
from trustcore.services.role_admin_service import RoleAdministrationService
from trustcore.services.security_admin_service import SecurityAdminService
from trustcore.services.stats_service import SecurityStatsService
from trustcore.stores.alert_store import AlertStore
from trustcore.stores.directory import SqlOrganizationDirectory, SqlUserDirectory
from trustcore.stores.password_history_store import PasswordHistoryStore
from trustcore.stores.permission_store import PermissionStore
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.stores.security_policy_store import SecurityPolicyStore
from trustcore.utils.security import hash_password

# Wednesday
START = datetime(2024, 3, 13, 12, 0, 0, tzinfo=timezone.utc)

ADMIN_PASSWORD = "Admin-Passw0rd"
USER_PASSWORD = "User-Passw0rd"


class FrozenClock:
    """Clock for tests. Every reading moves time forward by ``tick`` so events written in sequence stay ordered."""

    def __init__(self, start: datetime = START, tick: timedelta = timedelta(milliseconds=1)):
        self.now = start
        self.tick = tick

    def __call__(self) -> datetime:
        self.now += self.tick
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSink:
    def __init__(self):
        self.sent: List[NotificationEffect] = []

    async def send(self, effect: NotificationEffect) -> None:
        self.sent.append(effect)


@dataclass
class Seed:
    org_id: uuid.UUID
    other_org_id: uuid.UUID
    admin_id: uuid.UUID
    user_id: uuid.UUID
    second_admin_id: uuid.UUID
    outsider_id: uuid.UUID


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'trustcore.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def seed(session_factory) -> Seed:
    ids = Seed(*(uuid.uuid4() for _ in range(6)))
    admin_hash = hash_password(ADMIN_PASSWORD)
    user_hash = hash_password(USER_PASSWORD)
    async with session_factory() as session:
        session.add_all([
            Organization(id=ids.org_id, name="Acme", is_active=True, created_at=START, updated_at=START),
            Organization(id=ids.other_org_id, name="Globex", is_active=True, created_at=START, updated_at=START),
        ])
        await session.flush()
        session.add_all([
            User(id=ids.admin_id, org_id=ids.org_id, email="admin@acme.io", password_hash=admin_hash,
                 name="Ada Admin", role="admin", is_active=True, created_at=START, updated_at=START),
            User(id=ids.second_admin_id, org_id=ids.org_id, email="ops@acme.io", password_hash=admin_hash,
                 name="Oscar Ops", role="admin", is_active=True, created_at=START, updated_at=START),
            User(id=ids.user_id, org_id=ids.org_id, email="user@acme.io", password_hash=user_hash,
                 name="Uma User", role="user", is_active=True, created_at=START, updated_at=START),
            User(id=ids.outsider_id, org_id=ids.other_org_id, email="someone@globex.io", password_hash=user_hash,
                 name="Gus Globex", role="user", is_active=True, created_at=START, updated_at=START),
        ])
        await session.commit()
    return ids


# -------------------------
# Stores
# -------------------------

@pytest.fixture
def permission_store(session_factory, clock):
    return PermissionStore(session_factory, clock=clock)


@pytest.fixture
def policies(session_factory, clock):
    return SecurityPolicyStore(session_factory, clock=clock)


@pytest.fixture
def events(session_factory, clock):
    return SecurityEventLog(session_factory, clock=clock, cleanup_batch_size=3)


@pytest.fixture
def alerts(session_factory, clock):
    return AlertStore(session_factory, clock=clock)


@pytest.fixture
def history(session_factory, clock):
    return PasswordHistoryStore(session_factory, clock=clock)


@pytest.fixture
def users(session_factory, clock):
    return SqlUserDirectory(session_factory, clock=clock)


@pytest.fixture
def organizations(session_factory, clock):
    return SqlOrganizationDirectory(session_factory, clock=clock)


# -------------------------
# Services
# -------------------------

@pytest.fixture
def resolver(permission_store, users):
    return PermissionResolver(permission_store, users)


@pytest.fixture
def role_admin(permission_store, events):
    return RoleAdministrationService(permission_store, events)


@pytest.fixture
def lockout(policies, events, alerts, users, clock):
    return LockoutService(policies, events, alerts, users, clock=clock)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def login_service(users, policies, lockout, events, sink, clock):
    return LoginService(users, policies, lockout, events, notifier=sink, clock=clock)


@pytest.fixture
def password_policy(policies, history):
    return PasswordPolicyService(policies, history)


@pytest.fixture
def password_change(users, password_policy, events, clock):
    return PasswordChangeService(users, password_policy, events, clock=clock)


@pytest.fixture
def stats(events, policies, users, clock):
    return SecurityStatsService(events, policies, users, clock=clock, top_n=3)


@pytest.fixture
def security_admin(resolver, policies, events, lockout, stats, organizations):
    return SecurityAdminService(resolver, policies, events, lockout, stats, organizations)
