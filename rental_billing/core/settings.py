from __future__ import annotations

import os
from dataclasses import dataclass

def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")

@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")

    # Billing records
    billing_table_name: str = os.environ.get("BILLING_TABLE_NAME", "billing")
    billing_subscription_index: str = os.environ.get("BILLING_SUBSCRIPTION_INDEX", "subscription_ref-index")

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    stripe_price_plus: str = os.environ.get("STRIPE_PRICE_PLUS", "")
    stripe_price_file: str = os.environ.get("STRIPE_PRICE_FILE", "")
    stripe_price_founder: str = os.environ.get("STRIPE_PRICE_FOUNDER", "")
    stripe_default_currency: str = os.environ.get("STRIPE_DEFAULT_CURRENCY", "eur").lower()

    # Redirects
    public_base_url: str = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    frontend_url: str = os.environ.get("FRONTEND_URL", "http://localhost:8081").rstrip("/")
    stripe_success_url: str = os.environ.get("STRIPE_SUCCESS_URL", "")
    stripe_cancel_url: str = os.environ.get("STRIPE_CANCEL_URL", "")
    stripe_portal_return_url: str = os.environ.get("STRIPE_PORTAL_RETURN_URL", "")

    # Observability
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")
    audit_log_enabled: bool = _flag("AUDIT_LOG_ENABLED", "1")

    @property
    def success_url(self) -> str:
        return self.stripe_success_url or f"{self.frontend_url}/payments/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def cancel_url(self) -> str:
        return self.stripe_cancel_url or f"{self.frontend_url}/payments/cancelled"

    @property
    def portal_return_url(self) -> str:
        return self.stripe_portal_return_url or f"{self.frontend_url}/profile/subscriptions"


S = Settings()
