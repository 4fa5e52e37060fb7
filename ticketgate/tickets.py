import logging
import re

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from . import ledger
from .admission import parse_count
from .config import Settings, get_settings
from .credentials import render_qr_png, verification_url
from .db import get_db
from .models import Ticket, TicketType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tickets", tags=["tickets"])


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 4:
        return "****"
    return "*" * (len(digits) - 4) + digits[-4:]


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return "***"
    user, domain = email.split("@", 1)
    if len(user) <= 2:
        masked = user[:1] + "*"
    else:
        masked = user[0] + "*" * (len(user) - 2) + user[-1]
    return f"{masked}@{domain}"


def _iso(value):
    return value.isoformat() if value is not None else None


def sanitize_ticket(ticket: Ticket, settings: Settings) -> dict:
    """Operator view of a ticket. The raw token is never included; the QR payload carries it."""
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "name": ticket.name,
        "email": ticket.email,
        "phone": ticket.phone,
        "ticket_type": ticket.ticket_type.value,
        "quantity": ticket.quantity,
        "unit_price": float(ticket.unit_price),
        "price": float(ticket.price),
        "remaining": ticket.remaining,
        "scan_count": ticket.scan_count,
        "vip_seats": ticket.vip_seats,
        "status": ticket.status.value,
        "email_sent": ticket.email_sent,
        "sent_at": _iso(ticket.sent_at),
        "whatsapp_sent": ticket.whatsapp_sent,
        "qr_image_url": ticket.qr_image_url,
        "qr_payload": verification_url(ticket.token, settings.public_site_url),
        "event_key": ticket.event_key,
        "last_scan_at": _iso(ticket.last_scan_at),
        "created_at": _iso(ticket.created_at),
        "updated_at": _iso(ticket.updated_at),
    }


class CreateTicketReq(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    ticket_type: TicketType = TicketType.NORMAL
    quantity: int | str | None = None

    @field_validator("ticket_type", mode="before")
    @classmethod
    def _lower_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


@router.post("", status_code=201)
def create_ticket(req: CreateTicketReq, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    try:
        ledger.create_ticket(
            db,
            ledger.NewTicket(
                name=req.name,
                email=req.email,
                phone=req.phone,
                ticket_type=req.ticket_type,
                quantity=parse_count(req.quantity),
            ),
            settings,
        )
    except ledger.TicketValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    # the token is only ever delivered by email after review
    return {"success": True, "message": "Ticket booked and sent for review"}


@router.get("/{token}")
def get_ticket(token: str, db: Session = Depends(get_db)):
    ticket = ledger.find_by_token(db, token)
    if ticket is None:
        return JSONResponse(status_code=404, content={"error": "Invalid Ticket"})
    return {
        "id": ticket.id,
        "name": ticket.name,
        "email": mask_email(ticket.email),
        "phone": mask_phone(ticket.phone),
        "status": ticket.status.value,
        "remaining": ticket.remaining,
        "scan_count": ticket.scan_count,
    }


@router.get("/{token}/qr.png")
def get_ticket_qr(token: str, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    ticket = ledger.find_by_token(db, token)
    if ticket is None:
        return JSONResponse(status_code=404, content={"error": "Ticket not found"})
    png = render_qr_png(verification_url(ticket.token, settings.public_site_url))
    return Response(content=png, media_type="image/png", headers={"Cache-Control": "public, max-age=300"})
