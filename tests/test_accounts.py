"""Account creation, welcome credits and anonymous-session merge."""

import pytest

from app.billing.accounts import Actor, get_account_id, merge_anonymous_into_user
from app.billing.errors import LedgerValidationError
from app.billing.grants import GrantType, grant_credits
from app.billing.usage import ChargeKind, charge, get_balance


def test_actor_requires_an_identity() -> None:
    with pytest.raises(LedgerValidationError):
        Actor()


def test_actor_keys() -> None:
    assert Actor(user_id="u1").key == "user:u1"
    assert Actor(anonymous_id="a1").key == "anon:a1"
    assert Actor(anonymous_id="a1").is_anonymous is True


def test_account_is_created_once() -> None:
    actor = Actor(user_id="u-once")
    assert get_account_id(actor) == get_account_id(actor)


def test_welcome_credits_granted_once(monkeypatch) -> None:
    monkeypatch.setenv("USER_INITIAL_CREDITS", "15")
    actor = Actor(user_id="u-welcome")

    get_account_id(actor)
    get_account_id(actor)

    assert get_balance(actor)["credits"] == 15


def test_anonymous_welcome_credits(monkeypatch) -> None:
    monkeypatch.setenv("ANONYMOUS_INITIAL_CREDITS", "9")
    anon = Actor(anonymous_id="anon-welcome")

    assert get_balance(anon)["credits"] == 9


def test_merge_moves_balance_once() -> None:
    anon = Actor(anonymous_id="anon-merge")
    anon_account = get_account_id(anon)
    grant_credits(anon_account, GrantType.TOPUP, "fund:anon-merge", 7)
    user = Actor(user_id="u-merge")
    grant_credits(get_account_id(user), GrantType.TOPUP, "fund:u-merge", 10)

    first = merge_anonymous_into_user("anon-merge", user)
    second = merge_anonymous_into_user("anon-merge", user)

    assert first.merged is True
    assert first.credits_transferred == 7
    assert second.merged is False
    assert get_balance(user)["credits"] == 17
    assert get_balance(anon)["credits"] == 0


def test_merge_of_unknown_session_is_noop() -> None:
    result = merge_anonymous_into_user("anon-missing", Actor(user_id="u-x"))
    assert result.merged is False
    assert result.credits_transferred == 0


def test_merge_target_must_be_signed_in() -> None:
    with pytest.raises(LedgerValidationError):
        merge_anonymous_into_user("anon-a", Actor(anonymous_id="anon-b"))


def test_merged_anonymous_session_cannot_be_charged() -> None:
    anon = Actor(anonymous_id="anon-spent")
    grant_credits(get_account_id(anon), GrantType.TOPUP, "fund:anon-spent", 10)
    merge_anonymous_into_user("anon-spent", Actor(user_id="u-spent"))

    result = charge(anon, "t-after-merge", ChargeKind.USER_SEND, 2)

    assert result.blocked is True
