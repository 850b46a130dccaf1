from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import stripe
from fakes import make_settings

from rental_billing.core.errors import PortalNotConfigured, ProviderLookupFailed, ProviderNotConfigured
from rental_billing.services.provider import (
    CheckoutSessionView,
    Product,
    ProviderConfigured,
    ProviderDisabled,
    StripeGateway,
    SubscriptionView,
    build_provider,
    require_gateway,
)


def test_build_provider_from_settings() -> None:
    provider = build_provider(make_settings())
    assert isinstance(provider, ProviderConfigured)
    assert provider.gateway.api_key == "sk_test"

    disabled = build_provider(make_settings(stripe_secret_key=""))
    assert isinstance(disabled, ProviderDisabled)
    with pytest.raises(ProviderNotConfigured):
        require_gateway(disabled)


def test_checkout_view_reads_expanded_subscription() -> None:
    view = CheckoutSessionView.from_stripe(
        {
            "id": "cs_1",
            "status": "complete",
            "payment_status": "paid",
            "client_reference_id": None,
            "metadata": {"product": "founder", "userId": "user-1"},
            "subscription": {"id": "sub_1", "object": "subscription"},
            "customer": "cus_1",
        }
    )
    assert view.completed
    assert view.product is Product.FOUNDER
    assert view.user_sub == "user-1"
    assert view.subscription_ref == "sub_1"


def test_subscription_view_flags() -> None:
    sub = SubscriptionView.from_stripe({"id": "sub_1", "status": "active", "cancel_at_period_end": True, "canceled_at": 10})
    assert not sub.active_not_canceling
    assert sub.canceling
    assert sub.to_dict()["canceled_at"] == 10


def test_retrieve_session_passes_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    retrieve = MagicMock(return_value={"id": "cs_1", "status": "open", "payment_status": "unpaid"})
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)
    view = StripeGateway("sk_live").retrieve_checkout_session("cs_1")
    retrieve.assert_called_once_with("cs_1", api_key="sk_live", expand=["subscription"])
    assert not view.completed


def test_missing_subscription_maps_to_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    err = stripe.InvalidRequestError("No such subscription", "id", code="resource_missing", http_status=404)
    monkeypatch.setattr(stripe.Subscription, "retrieve", MagicMock(side_effect=err))
    with pytest.raises(ProviderLookupFailed) as exc:
        StripeGateway("sk_test").retrieve_subscription("sub_x")
    assert exc.value.status_code == 404
    assert exc.value.code == "PROVIDER_NOT_FOUND"


def test_provider_outage_maps_to_bad_gateway(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(stripe.Subscription, "retrieve", MagicMock(side_effect=stripe.APIConnectionError("timeout")))
    with pytest.raises(ProviderLookupFailed) as exc:
        StripeGateway("sk_test").retrieve_subscription("sub_1")
    assert exc.value.status_code == 502


def test_portal_without_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    err = stripe.InvalidRequestError("No configuration provided and your test mode default configuration has not been created.", None)
    monkeypatch.setattr(stripe.billing_portal.Session, "create", MagicMock(side_effect=err))
    with pytest.raises(PortalNotConfigured):
        StripeGateway("sk_test").create_portal_session("cus_1", "https://app.example.com")


def test_cancel_at_period_end_modifies_subscription(monkeypatch: pytest.MonkeyPatch) -> None:
    modify = MagicMock(return_value={"id": "sub_1", "status": "active", "cancel_at_period_end": True, "canceled_at": 50})
    monkeypatch.setattr(stripe.Subscription, "modify", modify)
    sub = StripeGateway("sk_test").set_cancel_at_period_end("sub_1", True)
    modify.assert_called_once_with("sub_1", api_key="sk_test", cancel_at_period_end=True)
    assert sub.canceled_at == 50
