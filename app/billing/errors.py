"""Billing error taxonomy.

Duplicate deliveries, duplicate periods, repeated turn charges and
insufficient credits are not errors; they are ordinary return values of the
ledgers. Only the conditions below raise.
"""


class BillingError(Exception):
    """Base class for ledger / webhook failures."""


class SignatureInvalid(BillingError):
    """Webhook payload failed signature verification. Nothing was mutated."""


class MalformedEvent(BillingError):
    """Verified payload could not be parsed into a provider event."""


class AccountUnresolved(BillingError):
    """Event metadata does not map to a known account."""


class AccountNotFound(BillingError):
    """A ledger operation referenced an account id that does not exist."""


class PriceUnmapped(BillingError):
    """Price id is absent from the price→plan table."""

    def __init__(self, price_id: str | None) -> None:
        super().__init__(f"price id {price_id!r} is not mapped to a plan")
        self.price_id = price_id


class LedgerValidationError(BillingError, ValueError):
    """Grant or charge arguments are invalid (amount, idempotency key, actor)."""


class BillingNotConfigured(BillingError):
    """Stripe keys / price ids needed for an outbound call are missing."""


class ProviderError(BillingError):
    """An outbound Stripe API call failed."""
