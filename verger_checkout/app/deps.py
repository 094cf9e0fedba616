# app/deps.py
"""
FastAPI dependency providers.

Everything is built once from `settings`; tests swap any of these through
`app.dependency_overrides`.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from .db.catalog import Catalog
from .db.orders_store import OrderStore
from .schemas.orders import PaymentMethod
from .services.checkout import CheckoutConfig, CheckoutOrchestrator
from .services.events import PaymentEventJournal
from .services.paypal_gateway import PayPalGateway
from .services.pending_checkouts import PendingCheckoutCache
from .services.receipts import ReceiptSender
from .services.stripe_gateway import StripeGateway
from .settings import settings


def get_checkout_config() -> CheckoutConfig:
    return CheckoutConfig.from_settings(settings)


@lru_cache
def get_order_store() -> OrderStore:
    return OrderStore()


@lru_cache
def get_catalog() -> Catalog:
    return Catalog()


@lru_cache
def get_pending_cache() -> PendingCheckoutCache:
    return PendingCheckoutCache(ttl_seconds=settings.pending_checkout_ttl_seconds)


@lru_cache
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        timeout=settings.stripe_timeout_seconds,
    )


@lru_cache
def get_paypal_gateway() -> PayPalGateway:
    return PayPalGateway(
        settings.paypal_client_id,
        settings.paypal_client_secret,
        environment=settings.paypal_environment,
        return_url=settings.paypal_return_url,
        cancel_url=settings.paypal_cancel_url,
        brand_name=settings.brand_name,
        token_timeout=settings.paypal_token_timeout_seconds,
        order_timeout=settings.paypal_order_timeout_seconds,
    )


@lru_cache
def get_receipt_sender() -> ReceiptSender:
    return ReceiptSender(settings.resend_api_key, settings.receipt_from_email, settings.brand_name)


@lru_cache
def get_event_journal() -> Optional[PaymentEventJournal]:
    if not settings.payment_events_journal:
        return None
    return PaymentEventJournal(project_id=settings.firebase_project_id)


@lru_cache
def get_orchestrator() -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        config=get_checkout_config(),
        orders=get_order_store(),
        pending=get_pending_cache(),
        gateways={
            PaymentMethod.card: get_stripe_gateway(),
            PaymentMethod.wallet: get_paypal_gateway(),
        },
        notifier=get_receipt_sender(),
        catalog=get_catalog(),
        journal=get_event_journal(),
    )
