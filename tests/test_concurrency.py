import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from ticketgate import admission, ledger
from ticketgate.admission import AdmissionResult, admit
from ticketgate.db import SessionLocal
from ticketgate.models import TicketStatus
from tests.helpers import latest_ticket, verify


def _approved(db, settings, quantity):
    t = ledger.create_ticket(
        db, ledger.NewTicket(name="Race", email="race@example.com", phone="9833333333", quantity=quantity), settings
    )
    t.status = TicketStatus.APPROVED
    return ledger.save(db, t)


def _scan_all(token: str, workers: int, count, max_attempts: int = 5):
    barrier = threading.Barrier(workers)

    def one():
        s = SessionLocal()
        try:
            barrier.wait()
            out = admit(s, token, count, max_attempts=max_attempts)
            return out.result, out.entered
        finally:
            s.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda _: one(), range(workers)))


def test_concurrent_scans_one_wins(db, settings):
    t = _approved(db, settings, quantity=1)

    results = _scan_all(t.token, workers=12, count=1)
    admitted = [r for r in results if r[0] == AdmissionResult.CHECKED_IN]
    exhausted = [r for r in results if r[0] == AdmissionResult.NO_REMAINING]

    assert len(admitted) == 1, results
    assert len(exhausted) == 11, results

    db.refresh(t)
    assert (t.remaining, t.scan_count, t.status) == (0, 1, TicketStatus.CHECKEDIN)


def test_concurrent_scans_never_over_admit(db, settings):
    t = _approved(db, settings, quantity=5)

    # every round of conflicts lets at least one scan through, so 8 attempts covers 8 workers
    results = _scan_all(t.token, workers=8, count=1, max_attempts=8)
    entered = sum(n for _, n in results)

    assert entered == 5, results
    assert sum(1 for r, _ in results if r == AdmissionResult.NO_REMAINING) == 3

    db.refresh(t)
    assert t.remaining == 0
    assert t.scan_count == 5
    assert t.status == TicketStatus.CHECKEDIN


@pytest.mark.asyncio
async def test_concurrent_gate_requests_one_wins(client, admin_headers, db, settings):
    _approved(db, settings, quantity=1)
    token = latest_ticket(db).token

    responses = await asyncio.gather(*[verify(client, admin_headers, token, 1) for _ in range(10)])
    bodies = [r.json() for r in responses]
    statuses = [b["status"] for b in bodies]

    assert statuses.count("checked_in") == 1, bodies
    assert statuses.count("no_remaining") == 9, bodies

    t = latest_ticket(db)
    assert (t.remaining, t.scan_count) == (0, 1)


def test_contention_gives_up_after_bounded_attempts(db, settings, monkeypatch):
    t = _approved(db, settings, quantity=3)
    attempts = []

    def always_lose(session, ticket, decision):
        attempts.append(decision.admit)
        return False

    monkeypatch.setattr(admission, "_apply", always_lose)
    out = admit(db, t.token, 2, max_attempts=4)

    assert out.result == AdmissionResult.CONFLICT
    assert out.entered == 0
    assert attempts == [2, 2, 2, 2]

    db.refresh(t)
    assert (t.remaining, t.scan_count, t.status) == (3, 0, TicketStatus.APPROVED)


@pytest.mark.asyncio
async def test_gate_reports_conflict_and_allows_rescan(client, admin_headers, db, settings, monkeypatch):
    _approved(db, settings, quantity=2)
    token = latest_ticket(db).token

    monkeypatch.setattr(admission, "_apply", lambda session, ticket, decision: False)
    r = await verify(client, admin_headers, token, 1, extra={"Idempotency-Key": "busy-1"})
    assert r.status_code == 409
    assert r.json()["status"] == "conflict"

    monkeypatch.undo()
    t = latest_ticket(db)
    assert (t.remaining, t.scan_count) == (2, 0)

    # a conflict is not cached: the same key retried later goes through
    r = await verify(client, admin_headers, token, 1, extra={"Idempotency-Key": "busy-1"})
    assert r.json()["status"] == "checked_in"
