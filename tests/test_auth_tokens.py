"""Bearer token verification and actor resolution."""

import pytest
from fastapi import HTTPException

from app.core.auth import create_access_token, decode_access_token, get_current_actor, get_current_user


def test_token_roundtrip() -> None:
    token = create_access_token(user_id="u-1", email="u1@example.test")
    payload = decode_access_token(token)
    assert payload["sub"] == "u-1"
    assert payload["email"] == "u1@example.test"


def test_token_signed_with_other_secret_rejected(monkeypatch) -> None:
    token = create_access_token(user_id="u-1")
    monkeypatch.setenv("AUTH_SECRET", "another-secret")
    with pytest.raises(HTTPException) as exc:
        decode_access_token(token)
    assert exc.value.status_code == 401


def test_expired_token_rejected(monkeypatch) -> None:
    token = create_access_token(user_id="u-1", ttl_seconds=60)
    monkeypatch.setattr("app.core.auth.datetime", _FrozenFuture)
    with pytest.raises(HTTPException) as exc:
        decode_access_token(token)
    assert exc.value.detail == "Token expired"


def test_bearer_token_wins_over_anonymous_header() -> None:
    token = create_access_token(user_id="u-2")
    actor = get_current_actor(authorization=f"Bearer {token}", x_anonymous_id="anon-1")
    assert actor.user_id == "u-2"
    assert actor.is_anonymous is False


def test_anonymous_header() -> None:
    actor = get_current_actor(authorization=None, x_anonymous_id=" anon-7 ")
    assert actor.anonymous_id == "anon-7"


def test_no_identity_rejected() -> None:
    with pytest.raises(HTTPException) as exc:
        get_current_actor(authorization=None, x_anonymous_id=None)
    assert exc.value.status_code == 401


def test_user_only_dependency_rejects_missing_token() -> None:
    with pytest.raises(HTTPException):
        get_current_user(authorization=None)


class _FrozenFuture:
    """datetime stand-in whose now() is a day ahead."""

    @staticmethod
    def now(tz=None):
        from datetime import datetime, timedelta
        return datetime.now(tz) + timedelta(days=1)
