import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Integer, Numeric, String, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class TicketStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    CHECKEDIN = "checkedin"


class TicketType(str, enum.Enum):
    NORMAL = "normal"
    VIP = "vip"


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        validate_strings=True,
        length=16,
        values_callable=lambda e: [m.value for m in e],
    )


def _uuid() -> str:
    return str(uuid.uuid4())


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    ticket_number: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    name: Mapped[str] = mapped_column(String(255), index=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    phone: Mapped[str] = mapped_column(String(32), index=True)

    ticket_type: Mapped[TicketType] = mapped_column(_enum_column(TicketType), default=TicketType.NORMAL)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    remaining: Mapped[int] = mapped_column(Integer, default=0)
    scan_count: Mapped[int] = mapped_column(Integer, default=0)
    vip_seats: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[TicketStatus] = mapped_column(
        _enum_column(TicketStatus), default=TicketStatus.PENDING, index=True
    )
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    whatsapp_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    qr_image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # set while an operator approval is uploading/delivering; cleared when it settles
    review_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    event_key: Mapped[str] = mapped_column(String(64), index=True, default="default")

    last_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_tickets_quantity_positive"),
        CheckConstraint("remaining >= 0", name="ck_tickets_remaining_non_negative"),
        CheckConstraint("remaining + scan_count = quantity", name="ck_tickets_counters_balance"),
    )

    def __repr__(self) -> str:
        return f"<Ticket #{self.ticket_number} {self.status.value} {self.remaining}/{self.quantity}>"


class Admin(Base):
    __tablename__ = "admins"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    event_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    admin_id: Mapped[str] = mapped_column(ForeignKey("admins.id", ondelete="CASCADE"), index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
