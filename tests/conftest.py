import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="ticketgate-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["JWT_SECRET"] = "test_secret"
os.environ["PUBLIC_SITE_URL"] = "https://tickets.example.org"
os.environ["EVENT_KEY"] = "default"
os.environ["VIP_PARTY_SIZE"] = "5"
os.environ["VIP_PRICE"] = "10000"
os.environ.pop("MAIL_API_KEY", None)
os.environ.pop("ARTIFACT_DIR", None)

import httpx
import pytest
import pytest_asyncio

from ticketgate.config import get_settings
from ticketgate.db import Base, SessionLocal, engine
from ticketgate.idempotency import get_redis
from ticketgate.main import app
from ticketgate.notify import get_notifier
from ticketgate.storage import get_artifact_store
from tests.helpers import ADMIN_PASS, ADMIN_USER, FakeRedis, RecordingNotifier, login


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    # no artifact store configured: approval falls back to inline QR images
    return None


@pytest_asyncio.fixture(scope="function")
async def client(fake_redis, notifier, store):
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_artifact_store] = lambda: store
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver", timeout=10.0) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_headers(client, db):
    from ticketgate.auth import create_admin

    create_admin(db, ADMIN_USER, ADMIN_PASS)
    token = await login(client, ADMIN_USER, ADMIN_PASS)
    return {"Authorization": f"Bearer {token}"}
