from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from ticketgate.auth import create_admin, find_refresh_token, issue_refresh_token
from ticketgate.models import RefreshToken
from ticketgate.worker import purge_once


def test_purge_removes_only_expired_tokens(db):
    admin = create_admin(db, "night-shift", "pw-123456")
    live = issue_refresh_token(db, admin.id, ttl_days=7)
    stale = RefreshToken(
        token="stale-token",
        admin_id=admin.id,
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        revoked=False,
    )
    db.add(stale)
    db.commit()

    assert purge_once() == 1

    assert db.scalar(select(RefreshToken).where(RefreshToken.token == "stale-token")) is None
    assert find_refresh_token(db, live.token) is not None
