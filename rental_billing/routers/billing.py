from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from rental_billing.auth.deps import get_authenticated_user_sub
from rental_billing.core.errors import BillingError, WebhookProcessingFailed
from rental_billing.core.settings import S
from rental_billing.core.tables import T
from rental_billing.metrics import record_webhook_event
from rental_billing.models import CancelReq, CheckoutReq, CheckoutResp, ConfirmReq, ManualActivateReq, PortalResp
from rental_billing.services.audit import audit_event
from rental_billing.services.events import Unrecognized, parse_webhook
from rental_billing.services.provider import build_provider
from rental_billing.services.reconcile import BillingService
from rental_billing.services.store import BillingStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    store = BillingStore(T.billing, subscription_index=S.billing_subscription_index)
    return BillingService(store, build_provider(S), S)


def ok(**body: Any) -> Dict[str, Any]:
    return {"success": True, **body}


@router.post("/webhook")
async def billing_webhook(req: Request, svc: BillingService = Depends(get_billing_service)) -> Dict[str, Any]:
    payload = await req.body()
    sig: Optional[str] = req.headers.get("stripe-signature")

    try:
        event = parse_webhook(
            payload,
            sig,
            svc.settings.stripe_webhook_secret,
            svc.settings.stripe_webhook_tolerance_seconds,
        )
    except BillingError:
        record_webhook_event("unverified", "rejected")
        raise

    try:
        applied = svc.handle_event(event)
    except Exception as exc:
        logger.exception("webhook %s (%s) failed", event.event_id, event.type)
        record_webhook_event(event.type, "failed")
        raise WebhookProcessingFailed() from exc

    if isinstance(event, Unrecognized):
        outcome = "ignored"
    else:
        outcome = "applied" if applied else "noop"
    record_webhook_event(event.type, outcome)
    logger.info("webhook %s (%s): %s", event.event_id, event.type, outcome)
    return ok(received=True, type=event.type, applied=applied)


@router.get("/entitlements")
def get_entitlements(
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    return ok(entitlements=svc.get_entitlements(user_sub))


@router.post("/checkout", response_model=CheckoutResp)
def create_checkout(
    body: CheckoutReq,
    req: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> CheckoutResp:
    session = svc.create_checkout_session(user_sub, body.product)
    audit_event("billing.checkout.created", user_sub, req, product=body.product.value, session_id=session.get("id"))
    return CheckoutResp(id=session.get("id"), url=session.get("url"))


@router.post("/confirm")
def confirm_checkout(
    body: ConfirmReq,
    req: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    result = svc.confirm_checkout_session(user_sub, body.session_id)
    audit_event(
        "billing.checkout.confirmed",
        user_sub,
        req,
        session_id=body.session_id,
        product=result["product"],
        applied=result["applied"],
    )
    return ok(**result)


@router.post("/credits/consume")
def consume_credit(
    req: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    result = svc.consume_credit(user_sub)
    if result["consumed"]:
        audit_event("billing.credit.consumed", user_sub, req, remaining=result["remaining"])
    return ok(**result)


@router.post("/portal", response_model=PortalResp)
def create_portal(
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> PortalResp:
    return PortalResp(url=svc.create_portal_session(user_sub))


@router.post("/subscription/cancel")
def cancel_subscription(
    req: Request,
    body: Optional[CancelReq] = None,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    immediate = bool(body and body.immediate)
    result = svc.cancel_subscription(user_sub, immediate=immediate)
    audit_event("billing.subscription.canceled", user_sub, req, immediate=immediate)
    message = "Subscription canceled immediately" if immediate else "Subscription will be canceled at the end of the current period"
    return ok(message=message, **result)


@router.post("/subscription/reactivate")
def reactivate_subscription(
    req: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    result = svc.reactivate_subscription(user_sub)
    audit_event("billing.subscription.reactivated", user_sub, req)
    return ok(message="Subscription reactivated successfully", **result)


@router.post("/subscription/sync")
def sync_subscription(
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    return ok(message="Subscription status synced successfully", **svc.sync_subscription_status(user_sub))


@router.post("/manual/activate")
def manual_activate(
    body: ManualActivateReq,
    req: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    result = svc.manual_activate(user_sub, body.session_id, body.product)
    audit_event(
        "billing.manual.activate",
        user_sub,
        req,
        session_id=body.session_id,
        product=body.product.value,
        applied=result["applied"],
    )
    return ok(**result)


@router.post("/manual/cancel")
def manual_cancel(
    req: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    result = svc.manual_cancel(user_sub)
    audit_event("billing.manual.cancel", user_sub, req)
    return ok(message="Subscription canceled", **result)


@router.get("/debug/status")
def debug_status(
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    return ok(**svc.debug_status(user_sub))


@router.get("/debug/subscription")
def debug_subscription(
    user_sub: str = Depends(get_authenticated_user_sub),
    svc: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    return ok(debug=svc.debug_subscription(user_sub))


@router.get("/config-check")
def config_check(svc: BillingService = Depends(get_billing_service)) -> Dict[str, Any]:
    return ok(config=svc.config_check())
