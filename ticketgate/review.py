"""Operator review: pending tickets become admissible only once the holder has their QR."""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from . import ledger
from .config import Settings
from .credentials import qr_data_url, render_qr_png, verification_url
from .models import Ticket, TicketStatus
from .notify import CredentialArtifact

logger = logging.getLogger(__name__)

# an approval that crashed mid-delivery stops blocking the ticket after this long
CLAIM_TIMEOUT = timedelta(minutes=5)


class ReviewResult(str, enum.Enum):
    APPROVED = "approved"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    DELIVERY_FAILED = "delivery_failed"


@dataclass
class ReviewOutcome:
    result: ReviewResult
    message: str
    ticket: Ticket | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.result in (ReviewResult.APPROVED, ReviewResult.CANCELLED)


@dataclass
class _Approval:
    ticket: Ticket
    claimed_at: datetime
    artifact: CredentialArtifact


def _set_status_if(db: Session, ticket_id: str, allowed: tuple[TicketStatus, ...], **values) -> bool:
    result = db.execute(
        update(Ticket)
        .where(Ticket.id == ticket_id, Ticket.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _claim(db: Session, ticket_id: str) -> datetime | None:
    """Mark a pending ticket as being approved; None when someone else holds it."""
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Ticket)
        .where(
            Ticket.id == ticket_id,
            Ticket.status == TicketStatus.PENDING,
            or_(Ticket.review_claimed_at.is_(None), Ticket.review_claimed_at < now - CLAIM_TIMEOUT),
        )
        .values(review_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return now if result.rowcount == 1 else None


def _settle(db: Session, approval: _Approval, **values) -> bool:
    # only the claim holder may write, and only while the ticket is still pending
    result = db.execute(
        update(Ticket)
        .where(
            Ticket.id == approval.ticket.id,
            Ticket.status == TicketStatus.PENDING,
            Ticket.review_claimed_at == approval.claimed_at,
        )
        .values(review_claimed_at=None, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _store_credential(ticket: Ticket, payload: str, store) -> str:
    png = render_qr_png(payload)
    if store is not None:
        try:
            return store.upload(png, f"ticket-{ticket.token}.png")
        except Exception:
            logger.exception("credential upload failed ticket_id=%s, using inline image", ticket.id)
    return qr_data_url(png)


def _blocked_message(ticket: Ticket) -> str:
    if ticket.status == TicketStatus.CANCELLED:
        return "Ticket is cancelled"
    if ticket.status in (TicketStatus.APPROVED, TicketStatus.CHECKEDIN):
        return "Ticket already approved"
    return "Ticket approval already in progress"


def _begin_approval(db: Session, ticket_id: str, event_key: str | None, store, settings: Settings):
    ticket = ledger.find_by_id(db, (ticket_id or "").strip(), event_key)
    if ticket is None:
        return ReviewOutcome(ReviewResult.NOT_FOUND, "Ticket not found"), None

    claimed_at = _claim(db, ticket.id)
    db.refresh(ticket)
    if claimed_at is None:
        return ReviewOutcome(ReviewResult.INVALID_STATE, _blocked_message(ticket), ticket=ticket), None

    verify_url = verification_url(ticket.token, settings.public_site_url)
    image_url = _store_credential(ticket, verify_url, store)
    return None, _Approval(ticket, claimed_at, CredentialArtifact(image_url=image_url, verify_url=verify_url))


def _finish_approval(db: Session, approval: _Approval, error: Exception | None) -> ReviewOutcome:
    ticket = approval.ticket
    values = {}
    if not approval.artifact.image_url.startswith("data:"):
        values["qr_image_url"] = approval.artifact.image_url

    if error is not None:
        # the ticket never left pending; release it with no trace of a send
        _settle(db, approval, email_sent=False, sent_at=None, **values)
        db.refresh(ticket)
        logger.error("ticket email failed ticket_id=%s error=%s", ticket.id, error)
        return ReviewOutcome(
            ReviewResult.DELIVERY_FAILED,
            "Email failed to send - ticket returned to pending",
            ticket=ticket,
            error=str(error) or error.__class__.__name__,
        )

    applied = _settle(
        db, approval,
        status=TicketStatus.APPROVED, email_sent=True, sent_at=datetime.now(timezone.utc), **values,
    )
    db.refresh(ticket)
    if not applied:
        logger.warning("ticket changed during approval ticket_id=%s status=%s", ticket.id, ticket.status.value)
        return ReviewOutcome(
            ReviewResult.INVALID_STATE,
            f"Ticket changed during approval (now {ticket.status.value})",
            ticket=ticket,
        )

    logger.info("ticket approved ticket_id=%s number=%s", ticket.id, ticket.ticket_number)
    return ReviewOutcome(ReviewResult.APPROVED, "Ticket approved and email sent", ticket=ticket)


async def approve_ticket(db: Session, ticket_id: str, event_key: str | None,
                         notifier, store, settings: Settings) -> ReviewOutcome:
    outcome, approval = await run_in_threadpool(_begin_approval, db, ticket_id, event_key, store, settings)
    if approval is None:
        return outcome

    try:
        await notifier.deliver(approval.ticket, approval.artifact)
    except Exception as e:
        return await run_in_threadpool(_finish_approval, db, approval, e)
    return await run_in_threadpool(_finish_approval, db, approval, None)


def cancel_ticket(db: Session, ticket_id: str, event_key: str | None) -> ReviewOutcome:
    ticket = ledger.find_by_id(db, (ticket_id or "").strip(), event_key)
    if ticket is None:
        return ReviewOutcome(ReviewResult.NOT_FOUND, "Ticket not found")

    applied = _set_status_if(
        db, ticket.id, (TicketStatus.PENDING, TicketStatus.APPROVED),
        status=TicketStatus.CANCELLED, review_claimed_at=None,
    )
    db.refresh(ticket)
    if not applied:
        if ticket.status == TicketStatus.CANCELLED:
            msg = "Ticket already cancelled"
        else:
            msg = "Ticket already checked in"
        return ReviewOutcome(ReviewResult.INVALID_STATE, msg, ticket=ticket)

    logger.info("ticket cancelled ticket_id=%s", ticket.id)
    return ReviewOutcome(ReviewResult.CANCELLED, "Ticket cancelled", ticket=ticket)
