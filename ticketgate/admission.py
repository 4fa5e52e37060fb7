"""Gate admission for multi-person tickets.

A ticket admits ``quantity`` people over one or more scans. Each scan either
asks the operator how many people are present, admits some of them, or is
rejected. Counter updates are compare-and-swap writes on ``remaining`` so two
scanners working the same QR code can never admit more people than were paid
for.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import ledger
from .models import Ticket, TicketStatus

logger = logging.getLogger(__name__)


class AdmissionResult(str, enum.Enum):
    CHECKED_IN = "checked_in"
    AWAITING_COUNT = "awaiting_count"
    NO_REMAINING = "no_remaining"
    CANCELLED = "cancelled"
    NOT_APPROVED = "not_approved"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class TicketSnapshot:
    status: TicketStatus
    remaining: int
    scan_count: int
    last_scan_at: datetime | None = None

    @classmethod
    def of(cls, ticket: Ticket) -> "TicketSnapshot":
        return cls(ticket.status, ticket.remaining, ticket.scan_count, ticket.last_scan_at)


@dataclass(frozen=True)
class Decision:
    result: AdmissionResult
    message: str
    admit: int = 0
    requested: int | None = None
    original_remaining: int = 0


@dataclass
class AdmissionOutcome:
    result: AdmissionResult
    message: str
    ticket: Ticket | None = None
    entered: int = 0
    requested: int | None = None

    @property
    def admitted(self) -> bool:
        return self.result == AdmissionResult.CHECKED_IN


def parse_count(count) -> int | None:
    """Positive integer head count, or None when the caller gave nothing usable."""
    if count is None or isinstance(count, bool):
        return None
    if isinstance(count, float):
        if not count.is_integer():
            return None
        count = int(count)
    try:
        n = int(str(count).strip())
    except ValueError:
        return None
    return n if n > 0 else None


def _format_scan_time(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def _success_message(admit: int, requested: int | None, original: int) -> str:
    left = original - admit
    if original == 1:
        return "Ticket scanned successfully. Let 1 person enter."
    if requested is not None and requested > original:
        return f"Only {admit} people remaining on this ticket. Let {admit} people enter. No people remaining."
    if admit < original:
        return f"Enter only {admit} people - ticket scanned successfully. {left} remaining."
    return f"Ticket scanned successfully. Let {admit} people enter. No people remaining."


def decide(snap: TicketSnapshot, count=None) -> Decision:
    """Pure transition function: what a scan of this ticket should do right now."""
    if snap.status == TicketStatus.CANCELLED:
        return Decision(AdmissionResult.CANCELLED, "Ticket is cancelled. Entry not permitted.")

    if snap.remaining <= 0:
        last = _format_scan_time(snap.last_scan_at)
        msg = "Ticket already scanned - no people remaining."
        if last:
            msg = f"Ticket already scanned - no people remaining. Last scan time: {last}."
        return Decision(AdmissionResult.NO_REMAINING, msg)

    if snap.status != TicketStatus.APPROVED:
        return Decision(AdmissionResult.NOT_APPROVED, "Ticket has not been approved. Entry not permitted.")

    requested = parse_count(count)
    if requested is None:
        if snap.remaining != 1:
            if snap.scan_count > 0:
                msg = f"Already scanned. People remaining: {snap.remaining}"
            else:
                msg = "Enter number of people to check in."
            return Decision(AdmissionResult.AWAITING_COUNT, msg, original_remaining=snap.remaining)
        admit = 1
    else:
        admit = min(requested, snap.remaining)

    return Decision(
        AdmissionResult.CHECKED_IN,
        _success_message(admit, requested, snap.remaining),
        admit=admit,
        requested=requested,
        original_remaining=snap.remaining,
    )


def _apply(db: Session, ticket: Ticket, decision: Decision) -> bool:
    """Conditional write of the counters; False when another scan got there first."""
    observed = decision.original_remaining
    left = observed - decision.admit
    stmt = (
        update(Ticket)
        .where(
            Ticket.id == ticket.id,
            Ticket.status == TicketStatus.APPROVED,
            Ticket.remaining == observed,
        )
        .values(
            remaining=left,
            scan_count=Ticket.scan_count + decision.admit,
            last_scan_at=datetime.now(timezone.utc),
            status=TicketStatus.CHECKEDIN if left == 0 else TicketStatus.APPROVED,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def admit(db: Session, token: str, count=None, event_key: str | None = None,
          max_attempts: int = 5) -> AdmissionOutcome:
    """Scan ``token`` at the gate, admitting ``count`` people when given."""
    max_attempts = max(max_attempts, 1)
    for attempt in range(1, max_attempts + 1):
        db.expire_all()
        ticket = ledger.find_by_token(db, token, event_key)
        if ticket is None:
            return AdmissionOutcome(AdmissionResult.NOT_FOUND, "Invalid QR")

        decision = decide(TicketSnapshot.of(ticket), count)
        if decision.result != AdmissionResult.CHECKED_IN:
            logger.info("admission refused ticket_id=%s result=%s", ticket.id, decision.result.value)
            return AdmissionOutcome(decision.result, decision.message, ticket=ticket)

        if _apply(db, ticket, decision):
            db.refresh(ticket)
            logger.info("admitted ticket_id=%s entered=%s remaining=%s status=%s",
                        ticket.id, decision.admit, ticket.remaining, ticket.status.value)
            return AdmissionOutcome(
                AdmissionResult.CHECKED_IN,
                decision.message,
                ticket=ticket,
                entered=decision.admit,
                requested=decision.requested,
            )

        logger.info("admission conflict ticket_id=%s attempt=%s", ticket.id, attempt)

    logger.warning("admission gave up after %s attempts token_prefix=%s", max_attempts, token[:8])
    return AdmissionOutcome(
        AdmissionResult.CONFLICT,
        "Ticket is being scanned elsewhere. Please scan again.",
        ticket=ticket,
    )
