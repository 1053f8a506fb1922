import asyncio
import inspect
import os
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List

import pytest

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret')
os.environ.setdefault('CAREBRIDGE_DATABASE_URL', 'sqlite+pysqlite:///:memory:')
os.environ.setdefault('USE_OFFLINE_MODEL', '1')
os.environ.setdefault('LOG_LEVEL', 'WARNING')

from fastapi.testclient import TestClient  # noqa: E402

from carebridge.auth import create_access_token  # noqa: E402
from carebridge.care_team import CareTeamService  # noqa: E402
from carebridge.db import Database, DatabaseSettings, create_engine_from_settings  # noqa: E402
from carebridge.db import database as shared_database  # noqa: E402
from carebridge.db.models import Clinician, Patient, User  # noqa: E402
from carebridge.notifications_service import NotificationService  # noqa: E402
from carebridge.time_utils import utc_now  # noqa: E402
from carebridge.ws_notifications import SessionRegistry  # noqa: E402

try:
    import pytest_asyncio  # type: ignore  # noqa: F401
except ImportError:

    @pytest.hookimpl(tryfirst=True)
    def pytest_pyfunc_call(pyfuncitem):
        """Run ``async def`` tests via ``asyncio.run`` when pytest-asyncio is missing."""

        if inspect.iscoroutinefunction(pyfuncitem.obj):
            testargs = {
                name: pyfuncitem.funcargs[name]
                for name in pyfuncitem._fixtureinfo.argnames
            }
            asyncio.run(pyfuncitem.obj(**testargs))
            return True
        return None


class FakeSocket:
    """Stand-in transport recording frames written by the registry."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: List[Dict[str, object]] = []
        self.fail = fail
        self.closed = False

    async def send_json(self, payload: Dict[str, object]) -> None:
        if self.fail:
            raise RuntimeError('socket closed')
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.closed = True


@dataclass
class CareTeam:
    """A linked clinician/patient pair plus an administrator."""

    admin: User
    clinician_user: User
    clinician: Clinician
    patient_user: User
    patient: Patient


@pytest.fixture
def database() -> Iterator[Database]:
    """Point the shared database at a fresh in-memory SQLite engine."""

    engine = create_engine_from_settings(DatabaseSettings(url='sqlite+pysqlite:///:memory:'))
    shared_database.configure(engine)
    shared_database.create_all()
    try:
        yield shared_database
    finally:
        shared_database.drop_all()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def notifications(database: Database) -> NotificationService:
    return NotificationService(database)


@pytest.fixture
def fake_socket() -> Callable[..., FakeSocket]:
    return FakeSocket


@pytest.fixture
def make_user(database: Database) -> Callable[..., User]:
    """Insert a user directly, skipping bcrypt for speed."""

    def _make(username: str, role: str = 'patient') -> User:
        with database.session_scope() as session:
            user = User(
                username=username,
                email=f'{username}@example.test',
                password_hash='!',
                role=role,
                profile_completed=False,
                created_at=utc_now(),
            )
            session.add(user)
            session.flush()
        return user

    return _make


@pytest.fixture
def care_team(database: Database, make_user) -> CareTeam:
    admin = make_user('admin', 'admin')
    clinician_user = make_user('dr_lee', 'clinician')
    patient_user = make_user('pat', 'patient')
    service = CareTeamService(database)
    clinician = service.create_clinician_profile(clinician_user.id, 'Dr. Lee', specialty='Cardiology')
    patient = service.create_patient_profile(
        patient_user.id,
        'Pat Doe',
        chronic_conditions='Type 2 diabetes',
        clinician_invite_code=clinician.invite_code,
    )
    return CareTeam(
        admin=admin,
        clinician_user=clinician_user,
        clinician=clinician,
        patient_user=patient_user,
        patient=patient,
    )


@pytest.fixture
def auth_headers() -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        return {'Authorization': f'Bearer {create_access_token(user)}'}

    return _headers


@pytest.fixture
def client(database: Database) -> Iterator[TestClient]:
    from carebridge import main

    with TestClient(main.app) as test_client:
        yield test_client
