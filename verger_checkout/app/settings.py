# app/settings.py
from __future__ import annotations
from typing import List, Optional
from pydantic import Field, AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import os

def _parse_cors(v: Optional[str | List[str]]) -> List[str]:
    """
    Accept JSON array (e.g. '["http://localhost:3000"]') or
    comma-separated string ('http://localhost:3000,http://127.0.0.1:3000').
    """
    if v is None:
        return ["http://localhost:3000", "http://127.0.0.1:3000"]
    if isinstance(v, list):
        return v
    s = v.strip()
    if not s:
        return ["http://localhost:3000", "http://127.0.0.1:3000"]
    # try JSON first
    try:
        parsed = json.loads(s)
        if isinstance(parsed, list) and all(isinstance(x, str) for x in parsed):
            return parsed
    except ValueError:
        pass
    # fallback: comma separated
    return [p.strip() for p in s.split(",") if p.strip()]

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",   # ignore unknown env keys instead of raising
    )

    # --- API ---
    api_host: str = Field(default="127.0.0.1", validation_alias=AliasChoices("API_HOST",))
    api_port: int = Field(default=8000,        validation_alias=AliasChoices("API_PORT",))
    cors_origins_raw: Optional[str | List[str]] = Field(
        default=None, validation_alias=AliasChoices("CORS_ORIGINS",)
    )
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL",))
    log_json: bool = Field(default=False, validation_alias=AliasChoices("LOG_JSON",))

    # --- Storage ---
    database_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("DATABASE_URL",)
    )
    database_pool_min: int = Field(default=2, validation_alias=AliasChoices("DATABASE_POOL_MIN",))
    database_pool_max: int = Field(default=10, validation_alias=AliasChoices("DATABASE_POOL_MAX",))
    redis_url: str = Field(
        default="redis://localhost:6379/0", validation_alias=AliasChoices("REDIS_URL",)
    )
    # 3 days: long enough for a slow payer, short enough to not hoard carts
    pending_checkout_ttl_seconds: int = Field(
        default=259200, validation_alias=AliasChoices("PENDING_CHECKOUT_TTL_SECONDS",)
    )

    # --- Checkout rules ---
    default_currency: str = Field(default="EUR", validation_alias=AliasChoices("DEFAULT_CURRENCY",))
    amount_tolerance: float = Field(default=0.01, validation_alias=AliasChoices("AMOUNT_TOLERANCE",))
    require_delivery_time_slot: bool = Field(
        default=False, validation_alias=AliasChoices("REQUIRE_DELIVERY_TIME_SLOT",)
    )
    verify_catalog_prices: bool = Field(
        default=False, validation_alias=AliasChoices("VERIFY_CATALOG_PRICES",)
    )

    # --- Stripe (card) ---
    stripe_secret_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("STRIPE_SECRET_KEY",)
    )
    stripe_webhook_secret: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("STRIPE_WEBHOOK_SECRET",)
    )
    stripe_timeout_seconds: float = Field(
        default=20.0, validation_alias=AliasChoices("STRIPE_TIMEOUT_SECONDS",)
    )

    # --- PayPal (wallet) ---
    paypal_client_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("PAYPAL_CLIENT_ID",)
    )
    # older deployments set PAYPAL_SECRET
    paypal_client_secret: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("PAYPAL_CLIENT_SECRET", "PAYPAL_SECRET")
    )
    paypal_environment: str = Field(
        default="sandbox", validation_alias=AliasChoices("PAYPAL_ENVIRONMENT", "PAYPAL_MODE")
    )
    paypal_return_url: str = Field(
        default="http://localhost:3000/checkout/paypal/return",
        validation_alias=AliasChoices("PAYPAL_RETURN_URL",),
    )
    paypal_cancel_url: str = Field(
        default="http://localhost:3000/checkout/paypal/cancel",
        validation_alias=AliasChoices("PAYPAL_CANCEL_URL",),
    )
    paypal_token_timeout_seconds: float = Field(
        default=10.0, validation_alias=AliasChoices("PAYPAL_TOKEN_TIMEOUT_SECONDS",)
    )
    paypal_order_timeout_seconds: float = Field(
        default=30.0, validation_alias=AliasChoices("PAYPAL_ORDER_TIMEOUT_SECONDS",)
    )
    brand_name: str = Field(default="Les Délices du Verger", validation_alias=AliasChoices("BRAND_NAME",))

    # --- Receipts ---
    resend_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("RESEND_API_KEY",)
    )
    receipt_from_email: str = Field(
        default="commandes@delicesduverger.fr",
        validation_alias=AliasChoices("RECEIPT_FROM_EMAIL",),
    )

    # --- Firebase (payment event journal) ---
    payment_events_journal: bool = Field(
        default=False, validation_alias=AliasChoices("PAYMENT_EVENTS_JOURNAL",)
    )
    firebase_project_id: str = Field(
        default="verger",
        validation_alias=AliasChoices("FIREBASE_PROJECT_ID",)
    )
    google_application_credentials: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_APPLICATION_CREDENTIALS",)
    )

    # --- Admin ---
    admin_username: str = Field(default="admin", validation_alias=AliasChoices("ADMIN_USERNAME",))
    admin_password: str = Field(default="admin123", validation_alias=AliasChoices("ADMIN_PASSWORD",))
    admin_token: str = Field(default="ok-admin", validation_alias=AliasChoices("ADMIN_TOKEN",))

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors(self.cors_origins_raw)

# singleton
settings = Settings()

# Make sure GOOGLE_APPLICATION_CREDENTIALS is exported for firebase_admin
if settings.google_application_credentials:
    os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = settings.google_application_credentials
