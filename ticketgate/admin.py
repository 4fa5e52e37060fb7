import logging

from fastapi import APIRouter, Cookie, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from . import auth, ledger
from .admission import AdmissionResult, admit
from .auth import AdminIdentity, optional_admin, require_admin
from .config import Settings, get_settings
from .credentials import extract_token
from .db import get_db
from .idempotency import get_cached_response, get_redis, set_cached_response
from .models import Admin
from .notify import get_notifier
from .rate_limit import login_allowed, login_succeeded
from .review import ReviewResult, approve_ticket, cancel_ticket
from .security import mint_access_token
from .storage import get_artifact_store
from .tickets import sanitize_ticket

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

REFRESH_COOKIE = "refresh_token"
COOKIE_PATH = "/admin"


def _error(status_code: int, message: str, /, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


# -------------------------
# Login / refresh / logout
# -------------------------
class LoginReq(BaseModel):
    username: str = ""
    password: str = ""


def _set_refresh_cookie(resp: Response, token: str, settings: Settings) -> None:
    resp.set_cookie(
        REFRESH_COOKIE,
        token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path=COOKIE_PATH,
        httponly=True,
        secure=settings.production,
        samesite="none" if settings.production else "lax",
    )


def _issue_tokens(db: Session, admin: Admin, settings: Settings) -> JSONResponse:
    access = mint_access_token(
        admin.id, admin.username, auth.admin_event_key(admin, settings),
        settings.jwt_secret, settings.access_token_ttl_minutes,
    )
    refresh = auth.issue_refresh_token(db, admin.id, settings.refresh_token_ttl_days)
    resp = JSONResponse(content={"access_token": access})
    _set_refresh_cookie(resp, refresh.token, settings)
    return resp


@router.post("/login")
async def login(
    req: LoginReq,
    request: Request,
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    if not req.username or not req.password:
        return _error(400, "Username and password required")

    ip = request.client.host if request.client else "unknown"
    if not await login_allowed(redis, ip, settings):
        return _error(429, "Too many login attempts. Please try again later.")

    admin = auth.authenticate(db, req.username, req.password)
    if admin is None:
        logger.info("login failed username=%s ip=%s", req.username, ip)
        return _error(401, "Invalid credentials")

    await login_succeeded(redis, ip)
    return _issue_tokens(db, admin, settings)


@router.post("/refresh")
def refresh(
    refresh_token: str | None = Cookie(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not refresh_token:
        return _error(401, "Refresh token required")

    record = auth.find_refresh_token(db, refresh_token)
    if record is None:
        replayed = auth.find_revoked_refresh_token(db, refresh_token)
        if replayed is not None:
            # a rotated-out token came back: every session of that operator is suspect
            revoked = auth.revoke_all_admin_tokens(db, replayed.admin_id)
            logger.warning("refresh token replay admin_id=%s revoked=%s", replayed.admin_id, revoked)
        return _error(401, "Invalid or expired refresh token")
    # rotation: each refresh token is good for exactly one refresh
    if not auth.revoke_refresh_token(db, refresh_token):
        return _error(401, "Invalid or expired refresh token")

    admin = db.get(Admin, record.admin_id)
    if admin is None:
        return _error(401, "Admin not found for token")
    return _issue_tokens(db, admin, settings)


@router.post("/logout")
def logout(
    refresh_token: str | None = Cookie(default=None),
    admin: AdminIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if refresh_token:
        auth.revoke_refresh_token(db, refresh_token)
    resp = JSONResponse(content={"message": "Logged out successfully"})
    resp.delete_cookie(REFRESH_COOKIE, path=COOKIE_PATH)
    return resp


# -------------------------
# Review
# -------------------------
@router.get("/tickets")
def list_tickets(
    page: int = 1,
    limit: int = ledger.DEFAULT_LIMIT,
    status: str = "",
    view: str = "",
    quick_filter: str = "",
    search: str = "",
    admin: AdminIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    query = ledger.TicketQuery(page=page, limit=limit, status=status, view=view, quick=quick_filter, search=search)
    try:
        result = ledger.list_tickets(db, admin.event_key, query)
    except ledger.TicketValidationError as e:
        return _error(400, str(e))

    out = {
        "items": [sanitize_ticket(t, settings) for t in result.items],
        "total_count": result.total,
        "total_pages": result.total_pages,
        "page": result.page,
        "limit": result.limit,
    }
    if result.summary is not None:
        out["summary"] = result.summary
    return out


REVIEW_STATUS = {
    ReviewResult.NOT_FOUND: 404,
    ReviewResult.INVALID_STATE: 400,
}


def _review_response(outcome, settings: Settings):
    if outcome.result in REVIEW_STATUS:
        return _error(REVIEW_STATUS[outcome.result], outcome.message)
    body = {
        "message": outcome.message,
        "ticket": sanitize_ticket(outcome.ticket, settings),
    }
    if outcome.error:
        body["error"] = outcome.error
    return body


@router.post("/tickets/{ticket_id}/approve")
async def approve(
    ticket_id: str,
    admin: AdminIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier),
    store=Depends(get_artifact_store),
    settings: Settings = Depends(get_settings),
):
    outcome = await approve_ticket(db, ticket_id, admin.event_key, notifier, store, settings)
    return _review_response(outcome, settings)


@router.post("/tickets/{ticket_id}/cancel")
def cancel(
    ticket_id: str,
    admin: AdminIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return _review_response(cancel_ticket(db, ticket_id, admin.event_key), settings)


@router.get("/settlements")
def settlements(
    admin: AdminIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return ledger.settlement_summary(db, admin.event_key, settings.settlement_rate)


# -------------------------
# Gate verification
# -------------------------
async def _scan_body(request: Request) -> dict:
    """Scanner payload as a dict; anything unreadable counts as an empty scan."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@router.post("/verify")
async def verify(
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    admin: AdminIdentity | None = Depends(optional_admin),
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    # anyone but an operator gets the public site, whatever they scanned
    if admin is None:
        return PlainTextResponse(f"{settings.public_site_url}/")

    body = await _scan_body(request)
    raw = body.get("token")
    token = extract_token(raw) if isinstance(raw, str) else None
    if not token:
        return _error(400, "Token required")

    cache_key = f"verify:{admin.id}:{idempotency_key}" if idempotency_key else None
    if cache_key:
        cached = await get_cached_response(redis, cache_key)
        if cached:
            return cached

    outcome = await run_in_threadpool(
        admit, db, token, body.get("count"), admin.event_key, settings.admit_max_attempts
    )

    if outcome.result == AdmissionResult.NOT_FOUND:
        return _error(404, "Invalid QR", message="Invalid QR")
    if outcome.result == AdmissionResult.CONFLICT:
        return _error(409, outcome.message, status=outcome.result.value, message=outcome.message)

    resp = {
        "status": outcome.result.value,
        "message": outcome.message,
        "ticket": sanitize_ticket(outcome.ticket, settings),
    }
    if outcome.admitted:
        resp["entered"] = outcome.entered
        resp["requested"] = outcome.requested
    if cache_key:
        await set_cached_response(redis, cache_key, resp)
    return resp
