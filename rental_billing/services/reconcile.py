from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, assert_never

from rental_billing.core.errors import (
    InvalidSession,
    NoCreditsAvailable,
    ProviderLookupFailed,
    RecordNotFound,
    SessionNotCompleted,
    SessionOwnershipMismatch,
)
from rental_billing.core.settings import Settings
from rental_billing.core.time import now_ts
from rental_billing.metrics import record_sync
from rental_billing.services.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    SubscriptionEnded,
    SubscriptionUpdated,
    Unrecognized,
)
from rental_billing.services.provider import (
    Product,
    Provider,
    ProviderConfigured,
    StripeGateway,
    SubscriptionView,
    require_gateway,
)
from rental_billing.services.store import (
    CREDIT_BALANCE,
    FOUNDER_FLAG,
    FOUNDER_SINCE,
    LAST_PAYMENT_AT,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED_AT,
    SUBSCRIPTION_PROVIDER_REF,
    SUBSCRIPTION_SINCE,
    BillingRecord,
    BillingStore,
    Mutation,
)

logger = logging.getLogger(__name__)

# Inline prices used when no Stripe price id is configured (EUR cents).
FALLBACK_PRICES: Dict[Product, Dict[str, Any]] = {
    Product.PLUS: {"unit_amount": 999, "recurring": {"interval": "month"}, "name": "Homiio+ Subscription"},
    Product.FILE: {"unit_amount": 500, "recurring": None, "name": "Contract Review"},
    Product.FOUNDER: {"unit_amount": 1000, "recurring": None, "name": "Founder Supporter"},
}


def product_mutation(product: Product, *, now: int, subscription_ref: Optional[str] = None) -> Mutation:
    if product is Product.PLUS:
        fields: Dict[str, Any] = {
            SUBSCRIPTION_ACTIVE: True,
            SUBSCRIPTION_SINCE: now,
            LAST_PAYMENT_AT: now,
        }
        if subscription_ref:
            fields[SUBSCRIPTION_PROVIDER_REF] = subscription_ref
        return Mutation(set_fields=fields)
    if product is Product.FILE:
        return Mutation(set_fields={LAST_PAYMENT_AT: now}, increments={CREDIT_BALANCE: 1})
    if product is Product.FOUNDER:
        return Mutation(set_fields={FOUNDER_FLAG: True, FOUNDER_SINCE: now, LAST_PAYMENT_AT: now})
    assert_never(product)


@dataclass(frozen=True)
class SyncPlan:
    action: str
    set_fields: Dict[str, Any] = field(default_factory=dict)
    remove: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.set_fields or self.remove)


def plan_subscription_sync(record: BillingRecord, sub: SubscriptionView, now: int) -> SyncPlan:
    """Map provider subscription state onto the local record.

    Returns a no-op plan when the two already agree, so applying the result
    twice is the same as applying it once.
    """
    if sub.cancel_at_period_end and sub.canceled_at:
        if record.subscription_active or record.subscription_canceled_at is None:
            return SyncPlan(
                "mark_canceled_at_period_end",
                {SUBSCRIPTION_ACTIVE: False, SUBSCRIPTION_CANCELED_AT: sub.canceled_at},
            )
        return SyncPlan("no_action")

    if sub.active_not_canceling:
        if not record.subscription_active or record.subscription_canceled_at is not None:
            fields: Dict[str, Any] = {SUBSCRIPTION_ACTIVE: True}
            if record.subscription_since is None:
                fields[SUBSCRIPTION_SINCE] = now
            remove = (SUBSCRIPTION_CANCELED_AT,) if record.subscription_canceled_at is not None else ()
            return SyncPlan("mark_active", fields, remove)
        return SyncPlan("no_action")

    if sub.status in ("canceled", "unpaid"):
        if record.subscription_active or record.subscription_canceled_at is None:
            return SyncPlan("mark_canceled", {SUBSCRIPTION_ACTIVE: False, SUBSCRIPTION_CANCELED_AT: now})
        return SyncPlan("no_action")

    return SyncPlan("no_action")


class BillingService:
    def __init__(self, store: BillingStore, provider: Provider, settings: Settings) -> None:
        self.store = store
        self.provider = provider
        self.settings = settings

    @property
    def gateway(self) -> StripeGateway:
        return require_gateway(self.provider)

    # -- reads -------------------------------------------------------------

    def _record_or_404(self, user_sub: str, message: str = "Billing record not found") -> BillingRecord:
        record = self.store.get(user_sub)
        if record is None:
            raise RecordNotFound(message)
        return record

    def _subscribed_record(self, user_sub: str, message: str) -> BillingRecord:
        record = self.store.get(user_sub)
        if record is None or not record.subscription_provider_ref:
            raise RecordNotFound(message, code="SUBSCRIPTION_NOT_FOUND")
        return record

    def get_entitlements(self, user_sub: str) -> Dict[str, Any]:
        record = self.store.get(user_sub) or BillingRecord(user_sub=user_sub)
        return record.to_dict()

    # -- guarded grants ----------------------------------------------------

    def grant(self, user_sub: str, session_id: str, product: Product, subscription_ref: Optional[str] = None) -> bool:
        mutation = product_mutation(product, now=now_ts(), subscription_ref=subscription_ref)
        return self.store.apply_once(user_sub, session_id, mutation)

    # -- webhook dispatch --------------------------------------------------

    def handle_event(self, event: BillingEvent) -> bool:
        """Apply one decoded provider event. Returns whether state changed."""
        if isinstance(event, CheckoutCompleted):
            if not event.user_sub or event.product is None or not event.session_id:
                logger.warning(
                    "checkout %s missing user or product (user=%s product=%s)",
                    event.session_id, event.user_sub, event.product,
                )
                return False
            return self.grant(event.user_sub, event.session_id, event.product, event.subscription_ref)

        if isinstance(event, SubscriptionUpdated):
            if not event.subscription_ref or not (event.cancel_at_period_end and event.canceled_at):
                return False
            n = self.store.set_fields_by_subscription(
                event.subscription_ref,
                {SUBSCRIPTION_ACTIVE: False, SUBSCRIPTION_CANCELED_AT: event.canceled_at},
            )
            logger.info("subscription %s set to cancel at period end (%d records)", event.subscription_ref, n)
            return n > 0

        if isinstance(event, InvoicePaid):
            if not event.subscription_ref:
                return False
            n = self.store.set_fields_by_subscription(
                event.subscription_ref,
                {LAST_PAYMENT_AT: now_ts()},
                only_if_active=True,
            )
            return n > 0

        if isinstance(event, SubscriptionEnded):
            if not event.subscription_ref:
                return False
            n = self.store.set_fields_by_subscription(
                event.subscription_ref,
                {SUBSCRIPTION_ACTIVE: False, SUBSCRIPTION_CANCELED_AT: now_ts()},
            )
            logger.info("subscription %s ended via %s (%d records)", event.subscription_ref, event.type, n)
            return n > 0

        if isinstance(event, Unrecognized):
            logger.info("ignoring unhandled webhook event type %s", event.type)
            return False

        assert_never(event)

    # -- confirmation and sync ---------------------------------------------

    def confirm_checkout_session(self, user_sub: str, session_id: str) -> Dict[str, Any]:
        session = self.gateway.retrieve_checkout_session(session_id)
        if not session.completed:
            logger.info(
                "session %s not completed (status=%s payment_status=%s)",
                session_id, session.status, session.payment_status,
            )
            raise SessionNotCompleted()
        if session.product is None or not session.user_sub:
            raise InvalidSession()
        if session.user_sub != user_sub:
            raise SessionOwnershipMismatch()

        applied = self.grant(user_sub, session.id or session_id, session.product, session.subscription_ref)
        return {"applied": applied, "product": session.product.value, "entitlements": self.get_entitlements(user_sub)}

    def sync_subscription_status(self, user_sub: str) -> Dict[str, Any]:
        gateway = self.gateway
        record = self._record_or_404(user_sub, "No billing record found")
        if not record.subscription_provider_ref:
            raise ProviderLookupFailed.not_found("No subscription ID found")

        try:
            sub = gateway.retrieve_subscription(record.subscription_provider_ref)
        except ProviderLookupFailed:
            record_sync("provider_error")
            raise

        plan = plan_subscription_sync(record, sub, now_ts())
        if plan.changed:
            self.store.set_fields(user_sub, plan.set_fields, plan.remove)
            logger.info("sync %s for user %s: %s", sub.id, user_sub, plan.action)
        record_sync("changed" if plan.changed else "unchanged")

        return {
            "entitlements": self.get_entitlements(user_sub),
            "sync_info": {
                "provider_status": sub.status,
                "cancel_at_period_end": sub.cancel_at_period_end,
                "canceled_at": sub.canceled_at,
                "status_changed": plan.changed,
                "action": plan.action,
                "set_fields": plan.set_fields,
                "removed_fields": list(plan.remove),
            },
        }

    # -- provider-backed user actions ---------------------------------------

    def create_checkout_session(self, user_sub: str, product: Product) -> Dict[str, Optional[str]]:
        gateway = self.gateway
        price_ids = {
            Product.PLUS: self.settings.stripe_price_plus,
            Product.FILE: self.settings.stripe_price_file,
            Product.FOUNDER: self.settings.stripe_price_founder,
        }
        price_id = price_ids[product]
        if price_id:
            line_item: Dict[str, Any] = {"price": price_id, "quantity": 1}
        else:
            fallback = FALLBACK_PRICES[product]
            price_data: Dict[str, Any] = {
                "currency": self.settings.stripe_default_currency,
                "unit_amount": fallback["unit_amount"],
                "product_data": {"name": fallback["name"]},
            }
            if fallback["recurring"]:
                price_data["recurring"] = fallback["recurring"]
            line_item = {"price_data": price_data, "quantity": 1}

        return gateway.create_checkout_session(
            mode="subscription" if product is Product.PLUS else "payment",
            line_items=[line_item],
            client_reference_id=user_sub,
            metadata={"product": product.value, "userId": user_sub},
            success_url=self.settings.success_url,
            cancel_url=self.settings.cancel_url,
        )

    def create_portal_session(self, user_sub: str) -> str:
        gateway = self.gateway
        record = self._subscribed_record(user_sub, "Subscription not found")
        sub = gateway.retrieve_subscription(record.subscription_provider_ref)
        if not sub.customer:
            raise ProviderLookupFailed("Subscription has no customer")
        return gateway.create_portal_session(sub.customer, self.settings.portal_return_url)

    def cancel_subscription(self, user_sub: str, *, immediate: bool = False) -> Dict[str, Any]:
        gateway = self.gateway
        record = self._subscribed_record(user_sub, "No subscription found to cancel")
        ref = record.subscription_provider_ref
        if immediate:
            sub = gateway.cancel_subscription(ref)
            fields = {SUBSCRIPTION_ACTIVE: False, SUBSCRIPTION_CANCELED_AT: sub.canceled_at or now_ts()}
        else:
            sub = gateway.set_cancel_at_period_end(ref, True)
            fields = {SUBSCRIPTION_CANCELED_AT: sub.canceled_at or now_ts()}
        self.store.set_fields(user_sub, fields)
        return {"entitlements": self.get_entitlements(user_sub), "subscription": sub.to_dict()}

    def reactivate_subscription(self, user_sub: str) -> Dict[str, Any]:
        gateway = self.gateway
        record = self._subscribed_record(user_sub, "No subscription found to reactivate")
        sub = gateway.set_cancel_at_period_end(record.subscription_provider_ref, False)
        fields: Dict[str, Any] = {SUBSCRIPTION_ACTIVE: True}
        if record.subscription_since is None:
            fields[SUBSCRIPTION_SINCE] = now_ts()
        self.store.set_fields(user_sub, fields, (SUBSCRIPTION_CANCELED_AT,))
        return {"entitlements": self.get_entitlements(user_sub), "subscription": sub.to_dict()}

    def consume_credit(self, user_sub: str) -> Dict[str, Any]:
        record = self.store.get(user_sub)
        if record is not None and record.subscription_active:
            return {"consumed": False, "remaining": "unlimited"}
        remaining = self.store.consume_credit(user_sub)
        if remaining is None:
            raise NoCreditsAvailable()
        return {"consumed": True, "remaining": remaining}

    # -- manual overrides --------------------------------------------------

    def manual_activate(self, user_sub: str, session_id: str, product: Product = Product.PLUS) -> Dict[str, Any]:
        applied = self.grant(user_sub, session_id, product)
        if applied:
            message = f"{product.value} entitlement activated"
        else:
            message = "Session already processed"
        return {"applied": applied, "message": message, "entitlements": self.get_entitlements(user_sub)}

    def manual_cancel(self, user_sub: str) -> Dict[str, Any]:
        # Deactivation is idempotent on its own; no ledger entry is written.
        fields = {SUBSCRIPTION_ACTIVE: False, SUBSCRIPTION_CANCELED_AT: now_ts()}
        if not self.store.set_fields(user_sub, fields):
            raise RecordNotFound("No subscription found to cancel")
        return {"entitlements": self.get_entitlements(user_sub)}

    # -- diagnostics (read-only) -------------------------------------------

    def debug_status(self, user_sub: str) -> Dict[str, Any]:
        record = self._record_or_404(user_sub)
        return {
            "billing": record.to_dict(),
            "processed_events_count": len(record.processed_events),
            "message": "Plus subscription is active" if record.subscription_active else "Plus subscription is not active",
        }

    def debug_subscription(self, user_sub: str) -> Dict[str, Any]:
        gateway = self.gateway
        record = self._record_or_404(user_sub, "No billing record found")
        info: Dict[str, Any] = {
            "database": {
                "user_sub": record.user_sub,
                "subscription_active": record.subscription_active,
                "subscription_provider_ref": record.subscription_provider_ref,
                "subscription_canceled_at": record.subscription_canceled_at,
                "subscription_since": record.subscription_since,
                "last_payment_at": record.last_payment_at,
            },
            "provider": None,
            "comparison": None,
        }
        if not record.subscription_provider_ref:
            return info

        try:
            sub = gateway.retrieve_subscription(record.subscription_provider_ref)
        except ProviderLookupFailed as exc:
            info["provider"] = {"error": exc.detail, "code": exc.code}
            info["comparison"] = {"error": "Cannot compare - provider error"}
            return info

        plan = plan_subscription_sync(record, sub, now_ts())
        info["provider"] = sub.to_dict()
        info["comparison"] = {
            "database_active": record.subscription_active,
            "provider_active": sub.active_not_canceling,
            "provider_canceled": sub.canceling,
            "needs_sync": plan.changed,
            "sync_action": plan.action,
        }
        return info

    def config_check(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "has_stripe": isinstance(self.provider, ProviderConfigured),
            "has_webhook_secret": bool(s.stripe_webhook_secret),
            "has_price_plus": bool(s.stripe_price_plus),
            "has_price_file": bool(s.stripe_price_file),
            "has_price_founder": bool(s.stripe_price_founder),
            "webhook_url": f"{s.public_base_url}/api/billing/webhook",
            "success_url": s.success_url,
            "cancel_url": s.cancel_url,
        }
