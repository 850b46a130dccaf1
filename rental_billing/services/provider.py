from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import stripe

from rental_billing.core.errors import PortalNotConfigured, ProviderLookupFailed, ProviderNotConfigured
from rental_billing.core.settings import Settings

logger = logging.getLogger(__name__)


class Product(str, Enum):
    PLUS = "plus"
    FILE = "file"
    FOUNDER = "founder"

    @classmethod
    def parse(cls, value: Any) -> Optional["Product"]:
        try:
            return cls(value)
        except ValueError:
            return None


def _plain(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def ref_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return _plain(value).get("id") or None


@dataclass(frozen=True)
class CheckoutSessionView:
    id: str
    status: Optional[str]
    payment_status: Optional[str]
    product: Optional[Product]
    user_sub: Optional[str]
    subscription_ref: Optional[str]
    customer: Optional[str]

    @property
    def completed(self) -> bool:
        return self.payment_status == "paid" or self.status == "complete"

    @classmethod
    def from_stripe(cls, obj: Any) -> "CheckoutSessionView":
        data = _plain(obj)
        metadata = data.get("metadata") or {}
        return cls(
            id=str(data.get("id") or ""),
            status=data.get("status"),
            payment_status=data.get("payment_status"),
            product=Product.parse(metadata.get("product")),
            user_sub=data.get("client_reference_id") or metadata.get("userId") or None,
            subscription_ref=ref_id(data.get("subscription")),
            customer=ref_id(data.get("customer")),
        )


@dataclass(frozen=True)
class SubscriptionView:
    id: str
    status: Optional[str]
    cancel_at_period_end: bool
    canceled_at: Optional[int]
    current_period_end: Optional[int]
    customer: Optional[str]
    created: Optional[int]

    @property
    def active_not_canceling(self) -> bool:
        return self.status == "active" and not self.cancel_at_period_end

    @property
    def canceling(self) -> bool:
        return self.cancel_at_period_end or self.status == "canceled"

    @classmethod
    def from_stripe(cls, obj: Any) -> "SubscriptionView":
        data = _plain(obj)
        canceled_at = data.get("canceled_at")
        period_end = data.get("current_period_end")
        created = data.get("created")
        return cls(
            id=str(data.get("id") or ""),
            status=data.get("status"),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=int(canceled_at) if canceled_at else None,
            current_period_end=int(period_end) if period_end else None,
            customer=ref_id(data.get("customer")),
            created=int(created) if created else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "cancel_at_period_end": self.cancel_at_period_end,
            "canceled_at": self.canceled_at,
            "current_period_end": self.current_period_end,
            "created": self.created,
        }


def _lookup_error(exc: stripe.StripeError, what: str) -> ProviderLookupFailed:
    logger.warning("stripe %s lookup failed: %s", what, exc)
    if isinstance(exc, stripe.InvalidRequestError) and (exc.http_status == 404 or exc.code == "resource_missing"):
        return ProviderLookupFailed.not_found(f"{what.capitalize()} not found at billing provider")
    return ProviderLookupFailed(f"Billing provider request failed ({what})")


class StripeGateway:
    """The outbound Stripe calls this service makes, with a per-call api key."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def create_checkout_session(self, **params: Any) -> Dict[str, Optional[str]]:
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            raise _lookup_error(exc, "checkout session") from exc
        data = _plain(session)
        return {"id": data.get("id"), "url": data.get("url")}

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionView:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key, expand=["subscription"])
        except stripe.StripeError as exc:
            raise _lookup_error(exc, "checkout session") from exc
        return CheckoutSessionView.from_stripe(session)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionView:
        try:
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise _lookup_error(exc, "subscription") from exc
        return SubscriptionView.from_stripe(sub)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> SubscriptionView:
        try:
            sub = stripe.Subscription.modify(subscription_id, api_key=self.api_key, cancel_at_period_end=cancel)
        except stripe.StripeError as exc:
            raise _lookup_error(exc, "subscription") from exc
        return SubscriptionView.from_stripe(sub)

    def cancel_subscription(self, subscription_id: str) -> SubscriptionView:
        try:
            sub = stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise _lookup_error(exc, "subscription") from exc
        return SubscriptionView.from_stripe(sub)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self.api_key,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.InvalidRequestError as exc:
            if "No configuration provided" in str(exc):
                raise PortalNotConfigured() from exc
            raise _lookup_error(exc, "billing portal") from exc
        except stripe.StripeError as exc:
            raise _lookup_error(exc, "billing portal") from exc
        return str(_plain(session).get("url") or "")


@dataclass(frozen=True)
class ProviderConfigured:
    gateway: StripeGateway


@dataclass(frozen=True)
class ProviderDisabled:
    reason: str


Provider = Union[ProviderConfigured, ProviderDisabled]


def build_provider(settings: Settings) -> Provider:
    if not settings.stripe_secret_key:
        return ProviderDisabled("STRIPE_SECRET_KEY is not set")
    return ProviderConfigured(StripeGateway(settings.stripe_secret_key))


def require_gateway(provider: Provider) -> StripeGateway:
    if isinstance(provider, ProviderConfigured):
        return provider.gateway
    logger.info("billing provider disabled: %s", provider.reason)
    raise ProviderNotConfigured()
