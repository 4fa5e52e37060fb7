import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .credentials import new_token
from .models import Ticket, TicketStatus, TicketType

logger = logging.getLogger(__name__)

ALLOWED_LIMITS = {10, 20, 50, 100}
DEFAULT_LIMIT = 10
NUMBER_ATTEMPTS = 5

STATUS_ORDER = case(
    {
        TicketStatus.PENDING: 0,
        TicketStatus.APPROVED: 1,
        TicketStatus.CANCELLED: 2,
        TicketStatus.CHECKEDIN: 3,
    },
    value=Ticket.status,
)

VIEW_STATUSES = {
    "review": (TicketStatus.PENDING, TicketStatus.APPROVED, TicketStatus.CANCELLED),
    "book": (TicketStatus.APPROVED, TicketStatus.CHECKEDIN),
}


class TicketValidationError(ValueError):
    pass


@dataclass
class NewTicket:
    name: str
    email: str
    phone: str
    ticket_type: TicketType = TicketType.NORMAL
    quantity: int | None = None


def _next_ticket_number(db: Session, start: int) -> int:
    current = db.execute(select(func.max(Ticket.ticket_number))).scalar()
    return start if current is None else max(current + 1, start)


def create_ticket(db: Session, data: NewTicket, settings: Settings, today: date | None = None) -> Ticket:
    name = (data.name or "").strip()
    email = (data.email or "").strip()
    phone = (data.phone or "").strip()
    if not name or not email or not phone:
        raise TicketValidationError("Name, email and phone are required")

    if data.ticket_type == TicketType.VIP:
        quantity = settings.vip_party_size
        unit_price = settings.vip_price
        price = settings.vip_price
        vip_seats = settings.vip_party_size
    else:
        quantity = data.quantity if isinstance(data.quantity, int) and data.quantity >= 1 else 1
        unit_price = settings.price_schedule.unit_price_for(today or date.today())
        price = unit_price * quantity
        vip_seats = 0

    # ticket numbers are max+1; two concurrent creates collide on the unique index and retry
    for attempt in range(1, NUMBER_ATTEMPTS + 1):
        ticket = Ticket(
            ticket_number=_next_ticket_number(db, settings.ticket_number_start),
            token=new_token(),
            name=name,
            email=email,
            phone=phone,
            ticket_type=data.ticket_type,
            quantity=quantity,
            unit_price=Decimal(unit_price),
            price=Decimal(price),
            remaining=quantity,
            scan_count=0,
            vip_seats=vip_seats,
            status=TicketStatus.PENDING,
            email_sent=False,
            sent_at=None,
            event_key=settings.event_key,
        )
        db.add(ticket)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("ticket number collision attempt=%s", attempt)
            continue
        db.refresh(ticket)
        logger.info("ticket created ticket_id=%s number=%s type=%s quantity=%s",
                    ticket.id, ticket.ticket_number, ticket.ticket_type.value, ticket.quantity)
        return ticket

    raise RuntimeError("could not allocate a ticket number")


def find_by_token(db: Session, token: str, event_key: str | None = None) -> Ticket | None:
    if not token:
        return None
    q = select(Ticket).where(Ticket.token == token)
    if event_key:
        q = q.where(Ticket.event_key == event_key)
    return db.execute(q).scalar_one_or_none()


def find_by_id(db: Session, ticket_id: str, event_key: str | None = None) -> Ticket | None:
    if not ticket_id:
        return None
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        return None
    if event_key and ticket.event_key and ticket.event_key != event_key:
        return None
    return ticket


def save(db: Session, ticket: Ticket) -> Ticket:
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket


# -------------------------
# Listing / reporting
# -------------------------
@dataclass
class TicketQuery:
    page: int = 1
    limit: int = DEFAULT_LIMIT
    status: str = ""
    view: str = ""
    quick: str = ""
    search: str = ""


@dataclass
class TicketPage:
    items: list[Ticket]
    total: int
    page: int
    limit: int
    total_pages: int
    summary: dict | None = None


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filters(event_key: str, q: TicketQuery) -> list:
    conds = [Ticket.event_key == event_key]

    status = q.status.lower()
    if status and status != "all":
        try:
            conds.append(Ticket.status == TicketStatus(status))
        except ValueError:
            raise TicketValidationError(f"Unknown status: {q.status}")
    elif q.view.lower() in VIEW_STATUSES:
        conds.append(Ticket.status.in_(VIEW_STATUSES[q.view.lower()]))

    quick = q.quick.lower()
    if quick == "remaining":
        conds.append(Ticket.remaining > 0)
    elif quick == "scanned":
        conds.append(Ticket.remaining == 0)
        conds.append(Ticket.scan_count > 0)

    term = q.search.strip().lower()
    if term:
        pattern = f"%{_escape_like(term)}%"
        conds.append(or_(
            func.lower(Ticket.name).like(pattern, escape="\\"),
            func.lower(Ticket.email).like(pattern, escape="\\"),
            func.lower(Ticket.phone).like(pattern, escape="\\"),
        ))
    return conds


def list_tickets(db: Session, event_key: str, q: TicketQuery) -> TicketPage:
    page = max(q.page, 1)
    limit = q.limit if q.limit in ALLOWED_LIMITS else DEFAULT_LIMIT
    conds = _filters(event_key, q)

    total = db.execute(select(func.count()).select_from(Ticket).where(*conds)).scalar_one()
    items = db.execute(
        select(Ticket)
        .where(*conds)
        .order_by(STATUS_ORDER, Ticket.created_at.desc(), Ticket.ticket_number.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).scalars().all()

    summary = None
    if q.view.lower() == "book":
        row = db.execute(
            select(
                func.coalesce(func.sum(Ticket.quantity), 0),
                func.coalesce(func.sum(Ticket.remaining), 0),
                func.coalesce(func.sum(Ticket.scan_count), 0),
                func.coalesce(func.sum(Ticket.price), 0),
            ).where(*conds)
        ).one()
        summary = {
            "total_people": int(row[0]),
            "total_remaining": int(row[1]),
            "total_scanned": int(row[2]),
            "total_value": float(row[3]),
        }

    return TicketPage(
        items=list(items),
        total=total,
        page=page,
        limit=limit,
        total_pages=max((total + limit - 1) // limit, 1),
        summary=summary,
    )


def settlement_summary(db: Session, event_key: str, rate: Decimal) -> dict:
    row = db.execute(
        select(func.coalesce(func.sum(Ticket.price), 0), func.count())
        .select_from(Ticket)
        .where(
            Ticket.event_key == event_key,
            Ticket.status.in_((TicketStatus.APPROVED, TicketStatus.CHECKEDIN)),
        )
    ).one()
    total = Decimal(str(row[0]))
    settle = (total * rate / Decimal(100)).quantize(Decimal("0.01"))
    return {
        "total_price": float(total),
        "approved_count": int(row[1]),
        "settle_amount": float(settle),
        "rate": float(rate),
    }
