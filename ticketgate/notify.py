import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx
from jinja2 import Environment

from .config import Settings, get_settings
from .models import Ticket, TicketType

logger = logging.getLogger(__name__)

_env = Environment(autoescape=True)

TICKET_EMAIL = _env.from_string("""\
<div style="font-family: Arial, sans-serif;color:#111;">
  <h2 style="margin-bottom:8px;">Your Ticket #{{ ticket.ticket_number }}</h2>
  <p>Hello {{ ticket.name }},</p>
  <p>Please present this QR code at the event entrance.</p>
  <p style="text-align:center;">
    <img src="{{ image_url }}" alt="Ticket QR" style="max-width:280px;border:1px solid #e5e7eb;border-radius:8px;" />
  </p>
  <table style="width:100%;max-width:520px;border-collapse:collapse;font-size:14px;">
    <tr><td>Ticket Type</td><td>{{ label }}</td></tr>
    <tr><td>Quantity</td><td>{{ ticket.quantity }}</td></tr>
    {% if ticket.ticket_type.value == "vip" %}<tr><td>Seats Included</td><td>{{ ticket.vip_seats }} people</td></tr>{% endif %}
    <tr><td>Unit Price</td><td>Rs. {{ "{:,.0f}".format(ticket.unit_price) }}</td></tr>
    <tr><td>Total Price</td><td>Rs. {{ "{:,.0f}".format(ticket.price) }}</td></tr>
  </table>
  <p style="font-size:13px;color:#4b5563;">Do not share this QR code publicly. It grants entry for the number of people listed above.</p>
  <p style="font-size:13px;color:#4b5563;">If the image does not load, open: {{ verify_url }}</p>
</div>
""")


class DeliveryError(Exception):
    pass


@dataclass
class CredentialArtifact:
    """What the ticket holder receives: a link to the QR image (or an inline data URL)."""
    image_url: str
    verify_url: str


def render_ticket_email(ticket: Ticket, artifact: CredentialArtifact) -> str:
    label = f"VIP Table ({ticket.vip_seats} Persons)" if ticket.ticket_type == TicketType.VIP else "Normal Ticket"
    return TICKET_EMAIL.render(
        ticket=ticket, label=label, image_url=artifact.image_url, verify_url=artifact.verify_url
    )


class HttpEmailChannel:
    """Transactional email over an HTTP API (Brevo-style ``/v3/smtp/email`` payload)."""

    def __init__(self, api_url: str, api_key: str, sender: str, timeout: float = 10.0):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def deliver(self, ticket: Ticket, artifact: CredentialArtifact) -> None:
        payload = {
            "sender": {"email": self.sender},
            "to": [{"email": ticket.email, "name": ticket.name}],
            "subject": f"Your ticket #{ticket.ticket_number}",
            "htmlContent": render_ticket_email(ticket, artifact),
        }
        headers = {"accept": "application/json", "api-key": self.api_key}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"email transport error: {e}") from e
        if r.status_code >= 400:
            raise DeliveryError(f"email rejected ({r.status_code}): {r.text[:200]}")


class LogChannel:
    """Development fallback when no mail API key is configured: nothing leaves the process."""

    async def deliver(self, ticket: Ticket, artifact: CredentialArtifact) -> None:
        logger.info("[dev-mail] ticket_id=%s to=%s image=%s", ticket.id, ticket.email, artifact.image_url[:80])


def build_notifier(settings: Settings):
    if settings.mail_api_key:
        return HttpEmailChannel(settings.mail_api_url, settings.mail_api_key, settings.mail_from)
    logger.warning("MAIL_API_KEY not set, ticket emails are only logged")
    return LogChannel()


@lru_cache
def get_notifier():
    return build_notifier(get_settings())
