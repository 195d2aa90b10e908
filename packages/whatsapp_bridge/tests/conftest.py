"""
Pytest fixtures for WhatsApp bridge tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from hotelcore.settings import Settings
from whatsapp_bridge.persistence.models import Guest, WhatsAppBase
from whatsapp_bridge.service.pipeline import create_bridge
from whatsapp_bridge.transport.stub import StubTransport


def sqlite_file_engine(path, begin: str = "BEGIN"):
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql(begin)

    return engine


@pytest.fixture
def engine(tmp_path):
    """SQLite file shared by every session and worker thread of a test."""
    engine = sqlite_file_engine(tmp_path / "bridge.db")
    WhatsAppBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def concurrent_session_factory(engine, tmp_path):
    """
    Sessions for writers racing from several threads on the test database.

    SQLite allows one writer at a time. Transactions take the write lock up
    front so racing writers wait for each other instead of failing.
    """
    racing_engine = sqlite_file_engine(tmp_path / "bridge.db", begin="BEGIN IMMEDIATE")
    yield sessionmaker(bind=racing_engine, autocommit=False, autoflush=False)
    racing_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    """Settings for tests, independent of the environment."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        DEFAULT_COUNTRY_CODE="55",
        DEFAULT_SESSION_NAME="Principal",
        SESSION_QR_MAX_ATTEMPTS=3,
        SESSION_CONNECT_TIMEOUT_SECONDS=30.0,
        AUTOSTART_TENANTS=[],
    )


@pytest.fixture
def stub_transport():
    return StubTransport()


class RecordingSubscriber:
    """Realtime subscriber that keeps every event it receives."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[dict] = []

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.events.append(data)

    def of_type(self, kind: str) -> list[dict]:
        return [e["payload"] for e in self.events if e["type"] == kind]


@pytest.fixture
def subscriber():
    return RecordingSubscriber()


@pytest_asyncio.fixture
async def bridge(settings, stub_transport, session_factory):
    """Bridge wired to the stub transport; sessions are closed after the test."""
    bridge = create_bridge(settings, transport=stub_transport, session_factory=session_factory)
    yield bridge
    await bridge.sessions.shutdown()


@pytest.fixture
def make_guest(db):
    """Create reservation guests; later calls get later creation times."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    created = []

    def _make(phone: str, name: str = "Hóspede", tenant_id: str = "H1", contact_id=None) -> Guest:
        guest = Guest(
            tenant_id=tenant_id,
            name=name,
            phone=phone,
            whatsapp_contact_id=contact_id,
            created_at=base + timedelta(minutes=len(created)),
        )
        db.add(guest)
        db.commit()
        created.append(guest)
        return guest

    return _make


@pytest.fixture
def make_subscriber():
    return RecordingSubscriber
