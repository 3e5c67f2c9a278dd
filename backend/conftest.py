"""
Common test fixtures for the WhatsApp CRM backend test suite.

Provides:
- In-memory SQLite database session
- A fake WhatsApp gateway and a recording websocket notifier
- A WhatsAppRuntime wired to the fakes
- FastAPI TestClient with DB and runtime overrides
- Helper fixtures for contacts, lead statuses and activity types
"""
import os
import tempfile

# Ensure settings are test-friendly before any wacrm imports.
# These must be set before importing anything from wacrm.core.config
# because `settings` is created at module level.
_TMP_ROOT = tempfile.mkdtemp(prefix="wacrm-tests-")
os.environ.setdefault("SECRET_KEY", "a" * 64)
os.environ.setdefault("SESSION_ENCRYPTION_KEY", "b" * 32)
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "testpassword1234")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECURITY_ENABLED", "false")
os.environ.setdefault("AUTO_START_DEFAULT_SESSION", "false")
os.environ.setdefault("SESSION_BACKUP_ENABLED", "false")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("AUTH_DIR", os.path.join(_TMP_ROOT, "auth"))
os.environ.setdefault("JOBS_DIR", os.path.join(_TMP_ROOT, "jobs"))
os.environ.setdefault("MEDIA_DIR", os.path.join(_TMP_ROOT, "media"))

import itertools

import pytest
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool
from fastapi.testclient import TestClient

from wacrm.core.exceptions import TransportException
from wacrm.services.websocket_manager import ConnectionManager


class FakeGateway:
    """In-process stand-in for the Baileys gateway sidecar."""

    def __init__(self):
        self.started = []
        self.logged_out = []
        self.sent = []
        self.history_requests = []
        self.not_on_whatsapp = set()
        self.failing_jids = set()
        self.groups = {}
        self.media = (b"\x89PNG fake media", "image/png")
        self._ids = itertools.count(1)

    async def start_session(self, session_id, auth_path, webhook_url=None):
        self.started.append((session_id, auth_path, webhook_url))
        return {}

    async def logout(self, session_id):
        self.logged_out.append(session_id)

    async def send_text(self, session_id, jid, text):
        if jid in self.failing_jids:
            raise TransportException(f"send to {jid} rejected")
        self.sent.append((session_id, jid, text))
        return {"key": {"id": f"OUT{next(self._ids):04d}", "remoteJid": jid, "fromMe": True}}

    async def on_whatsapp(self, session_id, jid):
        return jid not in self.not_on_whatsapp

    async def fetch_history(self, session_id, jid, count=50, oldest_key=None, oldest_timestamp=None):
        self.history_requests.append((session_id, jid, count, oldest_key, oldest_timestamp))
        return {"requested": count}

    async def download_media(self, session_id, raw_message):
        return self.media

    async def group_metadata(self, session_id, group_jid):
        if group_jid not in self.groups:
            raise TransportException(f"unknown group {group_jid}")
        return self.groups[group_jid]

    async def close(self):
        pass


class RecordingNotifier(ConnectionManager):
    """ConnectionManager that also keeps every emitted frame."""

    def __init__(self):
        super().__init__()
        self.frames = []

    async def broadcast(self, message):
        self.frames.append(message)
        await super().broadcast(message)

    def events(self, name=None):
        return [f for f in self.frames if name is None or f["event"] == name]


async def _no_sleep(seconds):
    return None


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine with all tables."""
    from wacrm import models  # noqa: F401

    _engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(_engine)
    return _engine


@pytest.fixture
def session(engine):
    """Provide a transactional database session for tests."""
    with Session(engine) as s:
        yield s


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(tmp_path, gateway, notifier, session_factory):
    """WhatsAppRuntime wired to the fake gateway and temp directories."""
    from wacrm.services.runtime import WhatsAppRuntime
    from wacrm.services.session_backup_service import SessionBackupService

    auth_dir = str(tmp_path / "auth")
    return WhatsAppRuntime(
        gateway=gateway,
        notifier=notifier,
        session_factory=session_factory,
        auth_dir=auth_dir,
        jobs_dir=str(tmp_path / "jobs"),
        media_dir=str(tmp_path / "media"),
        backups=SessionBackupService(session_factory, auth_dir=auth_dir, enabled=False),
        broadcast_sleep=_no_sleep,
        reconnect_delay=0,
    )


@pytest.fixture
def client(session, runtime):
    """
    FastAPI TestClient with the DB session dependency overridden
    to use the in-memory test database and the fake runtime.
    """
    from wacrm.main import app
    from wacrm.core.db import get_session

    def _override_get_session():
        yield session

    app.dependency_overrides[get_session] = _override_get_session
    app.state.runtime = runtime
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    del app.state.runtime


@pytest.fixture
def open_session(runtime):
    """Register a connected WhatsApp session called "default"."""
    from wacrm.services.session_manager import WASession, STATE_OPEN

    wa_session = WASession(id="default", auth_path=str(runtime.sessions.auth_path("default")), state=STATE_OPEN)
    runtime.sessions.sessions["default"] = wa_session
    return wa_session


@pytest.fixture
def seeded_session(session):
    """Default lead statuses and activity types for session "default"."""
    from wacrm.db.init_db import seed_session_defaults

    seed_session_defaults(session, "default")
    return "default"


@pytest.fixture
def sample_contact(session):
    """Create and return a single test Contact persisted in the DB."""
    from wacrm.models.contact import Contact

    contact = Contact(
        session_id="default",
        phone="6281234567890",
        name="Budi",
        whatsapp_jid="6281234567890@s.whatsapp.net",
    )
    session.add(contact)
    session.commit()
    session.refresh(contact)
    return contact
