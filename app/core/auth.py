import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi import Header, HTTPException

from app.billing.accounts import Actor
from config.settings import get_settings


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _sign(payload_part: str) -> str:
    settings = get_settings()
    sig = hmac.new(settings.auth_secret.encode("utf-8"), payload_part.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(sig)


def create_access_token(
    *,
    user_id: str,
    email: str | None = None,
    ttl_seconds: int | None = None,
) -> str:
    """Issue a signed token. Production tokens come from the identity service; used by tests and tooling."""
    settings = get_settings()
    if ttl_seconds is None:
        exp_at = datetime.now(timezone.utc) + timedelta(hours=max(1, settings.auth_token_ttl_hours))
    else:
        exp_at = datetime.now(timezone.utc) + timedelta(seconds=max(60, int(ttl_seconds)))
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": int(exp_at.timestamp()),
        "jti": str(uuid4()),
    }
    payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_part = _b64url_encode(payload_raw)
    return f"{payload_part}.{_sign(payload_part)}"


def decode_access_token(token: str) -> dict:
    try:
        payload_part, sig_part = token.split(".", 1)
        if not hmac.compare_digest(_sign(payload_part), sig_part):
            raise HTTPException(status_code=401, detail="Invalid token signature")
        payload = json.loads(_b64url_decode(payload_part))
        exp = int(payload.get("exp", 0))
        if exp < int(datetime.now(timezone.utc).timestamp()):
            raise HTTPException(status_code=401, detail="Token expired")
        if not payload.get("sub"):
            raise HTTPException(status_code=401, detail="Token has no subject")
        return payload
    except HTTPException:
        raise
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_actor(
    authorization: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
) -> Actor:
    """Signed-in user from the bearer token, else the anonymous session id."""
    if authorization and authorization.startswith("Bearer "):
        payload = decode_access_token(authorization.removeprefix("Bearer ").strip())
        return Actor(user_id=str(payload["sub"]), email=payload.get("email"))
    anonymous_id = (x_anonymous_id or "").strip()
    if anonymous_id:
        if len(anonymous_id) > 128:
            raise HTTPException(status_code=400, detail="Invalid anonymous id")
        return Actor(anonymous_id=anonymous_id)
    raise HTTPException(status_code=401, detail="Missing bearer token or anonymous id")


def get_current_user(
    authorization: str | None = Header(default=None),
) -> Actor:
    """Signed-in users only (checkout, portal, merge)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    payload = decode_access_token(authorization.removeprefix("Bearer ").strip())
    return Actor(user_id=str(payload["sub"]), email=payload.get("email"))
