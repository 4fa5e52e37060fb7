import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("ascii")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except ValueError:
        return False


def mint_access_token(admin_id: str, username: str, event_key: str, secret: str, ttl_minutes: int = 60) -> str:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    payload = {
        "sub": admin_id,
        "username": username,
        "type": "access",
        "event_key": event_key,
        "jti": str(uuid.uuid4()),
        "exp": exp,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_access_token(token: str, secret: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise ValueError("TOKEN_EXPIRED")
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    if payload.get("type") != "access":
        raise ValueError("INVALID_TOKEN_TYPE")

    # Required claims
    for k in ["sub", "event_key", "exp"]:
        if k not in payload:
            raise ValueError("INVALID_TOKEN")

    return payload
