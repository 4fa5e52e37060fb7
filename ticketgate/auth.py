import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header, HTTPException
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .models import Admin, RefreshToken
from .security import check_password, hash_password, verify_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminIdentity:
    id: str
    username: str
    event_key: str


def admin_event_key(admin: Admin, settings: Settings) -> str:
    return admin.event_key or settings.event_key


# -------------------------
# Admin accounts
# -------------------------
def create_admin(db: Session, username: str, password: str, event_key: str | None = None) -> Admin:
    """Create an operator, or reset the password and scope of an existing one."""
    admin = db.execute(select(Admin).where(Admin.username == username)).scalar_one_or_none()
    if admin is None:
        admin = Admin(username=username)
        db.add(admin)
    admin.password_hash = hash_password(password)
    admin.event_key = event_key
    db.commit()
    db.refresh(admin)
    return admin


def authenticate(db: Session, username: str, password: str) -> Admin | None:
    admin = db.execute(select(Admin).where(Admin.username == username)).scalar_one_or_none()
    if admin is None or not check_password(password, admin.password_hash):
        return None
    return admin


# -------------------------
# Refresh tokens
# -------------------------
def issue_refresh_token(db: Session, admin_id: str, ttl_days: int) -> RefreshToken:
    rt = RefreshToken(
        token=str(uuid.uuid4()),
        admin_id=admin_id,
        expires_at=datetime.now(timezone.utc) + timedelta(days=ttl_days),
        revoked=False,
    )
    db.add(rt)
    db.commit()
    return rt


def find_refresh_token(db: Session, token: str) -> RefreshToken | None:
    return db.execute(
        select(RefreshToken).where(
            RefreshToken.token == token,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > datetime.now(timezone.utc),
        )
    ).scalar_one_or_none()


def find_revoked_refresh_token(db: Session, token: str) -> RefreshToken | None:
    return db.execute(
        select(RefreshToken).where(RefreshToken.token == token, RefreshToken.revoked.is_(True))
    ).scalar_one_or_none()


def revoke_refresh_token(db: Session, token: str) -> bool:
    """Revoke once; False when it was already revoked (a replayed refresh)."""
    result = db.execute(
        update(RefreshToken)
        .where(RefreshToken.token == token, RefreshToken.revoked.is_(False))
        .values(revoked=True)
    )
    db.commit()
    return result.rowcount == 1


def revoke_all_admin_tokens(db: Session, admin_id: str) -> int:
    result = db.execute(
        update(RefreshToken)
        .where(RefreshToken.admin_id == admin_id, RefreshToken.revoked.is_(False))
        .values(revoked=True)
    )
    db.commit()
    return result.rowcount


def cleanup_expired_tokens(db: Session) -> int:
    result = db.execute(delete(RefreshToken).where(RefreshToken.expires_at < datetime.now(timezone.utc)))
    db.commit()
    return result.rowcount


# -------------------------
# FastAPI dependencies
# -------------------------
def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


def optional_admin(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> AdminIdentity | None:
    token = _bearer(authorization)
    if token is None:
        return None
    try:
        payload = verify_access_token(token, settings.jwt_secret)
    except ValueError:
        return None
    return AdminIdentity(payload["sub"], payload.get("username", ""), payload["event_key"])


def require_admin(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> AdminIdentity:
    token = _bearer(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail={"error": "Unauthorized", "code": "NO_TOKEN"})
    try:
        payload = verify_access_token(token, settings.jwt_secret)
    except ValueError as e:
        raise HTTPException(status_code=401, detail={"error": "Token expired or invalid", "code": str(e)})
    return AdminIdentity(payload["sub"], payload.get("username", ""), payload["event_key"])
