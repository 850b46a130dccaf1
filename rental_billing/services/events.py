"""Provider webhook ingestion: signature check and decoding.

Decoding happens once, at the boundary, into a closed union of event kinds.
Anything not listed becomes ``Unrecognized`` and is acknowledged without
side effects.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import stripe

from rental_billing.core.errors import InvalidRequest, ProviderNotConfigured, SignatureInvalid
from rental_billing.services.provider import Product, ref_id

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.payment_succeeded"
INVOICE_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str
    product: Optional[Product]
    user_sub: Optional[str]
    subscription_ref: Optional[str]
    type: str = CHECKOUT_COMPLETED


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    subscription_ref: Optional[str]
    cancel_at_period_end: bool
    canceled_at: Optional[int]
    type: str = SUBSCRIPTION_UPDATED


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    subscription_ref: Optional[str]
    type: str = INVOICE_PAID


@dataclass(frozen=True)
class SubscriptionEnded:
    event_id: str
    subscription_ref: Optional[str]
    type: str


@dataclass(frozen=True)
class Unrecognized:
    event_id: str
    type: str


BillingEvent = Union[CheckoutCompleted, SubscriptionUpdated, InvoicePaid, SubscriptionEnded, Unrecognized]


def verify_signature(payload: bytes, sig_header: Optional[str], secret: str, tolerance: int) -> None:
    """Check ``Stripe-Signature`` against the exact bytes that were received."""
    if not secret:
        raise ProviderNotConfigured("Stripe webhook secret not configured")
    if not sig_header:
        raise SignatureInvalid("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), sig_header, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("webhook signature rejected: %s", exc)
        raise SignatureInvalid() from exc


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    sub = ref_id(invoice.get("subscription"))
    if sub:
        return sub
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return ref_id(details.get("subscription"))


def decode_event(payload: bytes) -> BillingEvent:
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise InvalidRequest("Malformed event payload") from exc
    if not isinstance(data, dict):
        raise InvalidRequest("Malformed event payload")

    event_id = str(data.get("id") or "")
    event_type = str(data.get("type") or "")
    obj: Dict[str, Any] = (data.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        return CheckoutCompleted(
            event_id=event_id,
            session_id=str(obj.get("id") or ""),
            product=Product.parse(metadata.get("product")),
            user_sub=obj.get("client_reference_id") or metadata.get("userId") or None,
            subscription_ref=ref_id(obj.get("subscription")),
        )
    if event_type == SUBSCRIPTION_UPDATED:
        canceled_at = obj.get("canceled_at")
        return SubscriptionUpdated(
            event_id=event_id,
            subscription_ref=ref_id(obj.get("id")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=int(canceled_at) if canceled_at else None,
        )
    if event_type == INVOICE_PAID:
        return InvoicePaid(event_id=event_id, subscription_ref=_invoice_subscription(obj))
    if event_type == INVOICE_FAILED:
        return SubscriptionEnded(event_id=event_id, subscription_ref=_invoice_subscription(obj), type=INVOICE_FAILED)
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionEnded(event_id=event_id, subscription_ref=ref_id(obj.get("id")), type=SUBSCRIPTION_DELETED)
    return Unrecognized(event_id=event_id, type=event_type)


def parse_webhook(payload: bytes, sig_header: Optional[str], secret: str, tolerance: int) -> BillingEvent:
    verify_signature(payload, sig_header, secret, tolerance)
    return decode_event(payload)
