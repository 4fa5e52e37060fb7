import base64
import io
import json
import uuid
from urllib.parse import parse_qs, quote, urlsplit

import qrcode


def new_token() -> str:
    return str(uuid.uuid4())


def verification_url(token: str, base_url: str) -> str:
    """URL the credential QR opens; the gate scanner reads the token back out of it."""
    return f"{base_url.rstrip('/')}/?token={quote(token, safe='')}"


def extract_token(scan: str | None) -> str | None:
    """Decode whatever a scanner read: a raw token, a verification URL or ``{"token": ...}``."""
    if not scan:
        return None
    scan = scan.strip()
    if not scan:
        return None

    if scan.startswith("{"):
        try:
            data = json.loads(scan)
        except ValueError:
            return scan
        token = data.get("token") if isinstance(data, dict) else None
        if token is None:
            return None
        return str(token).strip() or None

    if "://" in scan or scan.startswith("/?") or scan.startswith("?"):
        values = parse_qs(urlsplit(scan).query).get("token")
        if values and values[0].strip():
            return values[0].strip()
        return None

    return scan


def render_qr_png(payload: str) -> bytes:
    img = qrcode.make(payload)
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


def qr_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")
