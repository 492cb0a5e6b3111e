"""Ledger service – Application Configuration.

Pydantic Settings, loaded from .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000
    host_url: str = "http://localhost:3000"  # Frontend base URL for checkout redirects
    cors_allowed_origins: str = "http://localhost:3000"

    # --- Auth (tokens are issued by the identity service, verified here) ---
    auth_secret: str = "change-me-long-random-secret"
    auth_token_ttl_hours: int = 12

    # --- Stripe ---
    stripe_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    # JSON object {"starter": "price_...", ...} or "starter:price_...,plus:price_..."
    stripe_plan_price_ids: str = ""
    stripe_topup_price_id: str = ""

    # --- Plan allotments (credits per billing period) ---
    plan_credits_starter: int = 300
    plan_credits_plus: int = 800
    plan_credits_pro: int = 1600
    # "full" = grant the new plan's whole allotment on upgrade, "delta" = only the difference
    upgrade_grant_policy: str = "full"

    # --- Usage costs (credits) ---
    cost_user_message: int = 2
    cost_assistant_reply: int = 2
    cost_image_surcharge: int = 15

    # --- Starting balances / free allowance ---
    user_initial_credits: int = 15
    anonymous_initial_credits: int = 9
    free_credits_amount: int = 15
    free_credits_interval_hours: int = 48
    free_credits_scheduler_enabled: bool = True

    # --- Top-ups ---
    topup_credits_per_unit: int = 100
    topup_max_units: int = 15

    # --- Store ---
    transaction_max_retries: int = 3

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
