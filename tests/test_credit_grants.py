"""Credit Grant Ledger: idempotency on event id and on period key."""

import threading

import pytest

from app.billing.errors import AccountNotFound, LedgerValidationError
from app.billing.grants import GrantType, apply_grant, grant_credits, list_grants
from app.core.db import SessionLocal, run_in_transaction


def test_same_event_id_grants_once(make_account, load_account) -> None:
    account_id = make_account()

    first = grant_credits(account_id, GrantType.TOPUP, "evt_topup_1", 100)
    second = grant_credits(account_id, GrantType.TOPUP, "evt_topup_1", 100)

    assert first.granted is True
    assert first.balance == 100
    assert second.granted is False
    assert second.reason == "duplicate_event"
    assert load_account(account_id).credit_balance == 100


def test_same_period_key_grants_once_across_event_ids(make_account, load_account) -> None:
    account_id = make_account(plan="starter")

    first = grant_credits(account_id, GrantType.PLAN_RENEWAL, "evt_inv_a", 300, period_key="P1")
    second = grant_credits(account_id, GrantType.PLAN_RENEWAL, "evt_inv_b", 300, period_key="P1")

    assert first.granted is True
    assert second.granted is False
    assert second.reason == "duplicate_period"
    account = load_account(account_id)
    assert account.credit_balance == 300
    assert account.last_grant_period_key == "P1"


def test_period_key_is_scoped_to_grant_type(make_account, load_account) -> None:
    account_id = make_account()

    grant_credits(account_id, GrantType.PLAN_START, "evt_a", 300, period_key="K")
    result = grant_credits(account_id, GrantType.PLAN_RENEWAL, "evt_b", 300, period_key="K")

    assert result.granted is True
    assert load_account(account_id).credit_balance == 600


def test_grants_are_additive(make_account, load_account) -> None:
    account_id = make_account(credit_balance=42)

    grant_credits(account_id, GrantType.TOPUP, "evt_add", 100)

    assert load_account(account_id).credit_balance == 142


@pytest.mark.parametrize("amount", [0, -5, 2.5, True])
def test_invalid_amount_is_rejected(make_account, load_account, amount) -> None:
    account_id = make_account()

    with pytest.raises(LedgerValidationError):
        grant_credits(account_id, GrantType.TOPUP, "evt_bad", amount)
    assert load_account(account_id).credit_balance == 0


def test_empty_event_id_is_rejected(make_account) -> None:
    account_id = make_account()
    with pytest.raises(LedgerValidationError):
        grant_credits(account_id, GrantType.TOPUP, "  ", 100)


def test_unknown_account_raises() -> None:
    with pytest.raises(AccountNotFound):
        grant_credits(999_999, GrantType.TOPUP, "evt_orphan", 100)


def test_grant_rows_record_balance_after(make_account) -> None:
    account_id = make_account(credit_balance=10)
    grant_credits(account_id, GrantType.TOPUP, "evt_row_1", 100)
    grant_credits(account_id, GrantType.TOPUP, "evt_row_2", 200)

    db = SessionLocal()
    try:
        rows = list_grants(db, account_id)
        assert sorted(r.balance_after for r in rows) == [110, 310]
        assert {r.grant_type for r in rows} == {"topup"}
    finally:
        db.close()


def test_concurrent_duplicate_deliveries_grant_once(make_account, load_account) -> None:
    account_id = make_account()
    results = []
    errors = []

    def deliver() -> None:
        try:
            results.append(grant_credits(account_id, GrantType.TOPUP, "evt_race", 100))
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=deliver) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert sum(1 for r in results if r.granted) == 1
    assert load_account(account_id).credit_balance == 100


def test_failure_after_grant_rolls_back_balance_and_row(make_account, load_account) -> None:
    account_id = make_account(credit_balance=5)

    def _grant_then_fail(db):
        apply_grant(db, account_id, GrantType.TOPUP, "evt_topup_abort", 100)
        raise RuntimeError("later write failed")

    with pytest.raises(RuntimeError):
        run_in_transaction(_grant_then_fail)

    assert load_account(account_id).credit_balance == 5
    db = SessionLocal()
    try:
        assert list_grants(db, account_id) == []
    finally:
        db.close()

    # Redelivery of the same event is not treated as a duplicate.
    assert grant_credits(account_id, GrantType.TOPUP, "evt_topup_abort", 100).granted is True
    assert load_account(account_id).credit_balance == 105
