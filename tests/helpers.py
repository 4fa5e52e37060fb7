import asyncio

import httpx
from redis.exceptions import WatchError
from sqlalchemy import select

from ticketgate.models import Ticket
from ticketgate.notify import DeliveryError

ADMIN_USER = "gate"
ADMIN_PASS = "gate-pass-123"


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the app uses."""

    def __init__(self):
        self.data = {}
        self.versions = {}

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = str(value)
        self._touch(key)
        return True

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self._touch(key)
        return True

    async def hgetall(self, key):
        return dict(self.data.get(key, {}))

    async def hset(self, key, mapping):
        self.data.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        self._touch(key)
        return len(mapping)

    async def expire(self, key, seconds):
        return key in self.data

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                self._touch(k)
                removed += 1
        return removed


class FakePipeline:
    """WATCH/MULTI/EXEC over FakeRedis: queued writes are dropped if a watched key changed."""

    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.watched = {}
        self.queue = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()

    def reset(self):
        self.watched = {}
        self.queue = []

    async def watch(self, *keys):
        for k in keys:
            self.watched[k] = self.redis.versions.get(k, 0)

    async def hgetall(self, key):
        # give other tasks a chance to run between read and write, like a network round trip
        await asyncio.sleep(0)
        return await self.redis.hgetall(key)

    def multi(self):
        self.queue = []

    def hset(self, key, mapping):
        self.queue.append(("hset", key, mapping))
        return self

    def expire(self, key, seconds):
        self.queue.append(("expire", key, seconds))
        return self

    async def execute(self):
        try:
            if any(self.redis.versions.get(k, 0) != v for k, v in self.watched.items()):
                raise WatchError("watched key changed")
            return [await getattr(self.redis, name)(*args) for name, *args in self.queue]
        finally:
            self.reset()


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def deliver(self, ticket, artifact):
        if self.fail:
            raise DeliveryError("SMTP 550 mailbox unavailable")
        self.sent.append((ticket.id, artifact))


class GatedNotifier(RecordingNotifier):
    """Holds every delivery until `release` is set."""

    def __init__(self, fail: bool = False):
        super().__init__(fail)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def deliver(self, ticket, artifact):
        self.entered.set()
        await self.release.wait()
        await super().deliver(ticket, artifact)


class RecordingStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads = {}

    def upload(self, data: bytes, name: str) -> str:
        if self.fail:
            raise OSError("bucket unreachable")
        self.uploads[name] = data
        return f"https://cdn.example.org/qrcodes/{name}"


async def login(client: httpx.AsyncClient, username: str, password: str) -> str:
    r = await client.post("/admin/login", json={"username": username, "password": password})
    r.raise_for_status()
    data = r.json()
    assert "access_token" in data, data
    return data["access_token"]


async def create_ticket(client: httpx.AsyncClient, name="Asha Rai", email="asha@example.com",
                        phone="9800000001", ticket_type="normal", quantity=1):
    r = await client.post("/tickets", json={
        "name": name, "email": email, "phone": phone, "ticket_type": ticket_type, "quantity": quantity,
    })
    assert r.status_code == 201, r.text
    return r.json()


def latest_ticket(db) -> Ticket:
    db.expire_all()
    return db.execute(select(Ticket).order_by(Ticket.ticket_number.desc())).scalars().first()


async def approve(client: httpx.AsyncClient, headers: dict, ticket_id: str):
    return await client.post(f"/admin/tickets/{ticket_id}/approve", headers=headers)


async def verify(client: httpx.AsyncClient, headers: dict, token: str, count=None, extra: dict | None = None):
    body = {"token": token}
    if count is not None:
        body["count"] = count
    return await client.post("/admin/verify", json=body, headers={**headers, **(extra or {})})
