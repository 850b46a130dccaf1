from __future__ import annotations

import unittest

from fakes import FakeBillingTable

from rental_billing.services.store import (
    CREDIT_BALANCE,
    LAST_PAYMENT_AT,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED_AT,
    BillingRecord,
    BillingStore,
    Mutation,
)


def credit_purchase() -> Mutation:
    return Mutation(set_fields={LAST_PAYMENT_AT: 1000}, increments={CREDIT_BALANCE: 1})


class TestGuardedApply(unittest.TestCase):
    def setUp(self) -> None:
        self.table = FakeBillingTable()
        self.store = BillingStore(self.table, subscription_index="subscription_ref-index")

    def test_first_apply_creates_record(self):
        self.assertTrue(self.store.apply_once("user-1", "sess_1", credit_purchase()))
        record = self.store.get("user-1")
        self.assertEqual(record.credit_balance, 1)
        self.assertEqual(record.processed_events, frozenset({"sess_1"}))
        self.assertEqual(record.last_payment_at, 1000)
        self.assertIsNotNone(record.created_at)

    def test_replays_apply_once(self):
        results = [self.store.apply_once("user-1", "sess_1", credit_purchase()) for _ in range(5)]
        self.assertEqual(results, [True, False, False, False, False])
        self.assertEqual(self.store.get("user-1").credit_balance, 1)

    def test_distinct_events_accumulate(self):
        self.store.apply_once("user-1", "sess_1", credit_purchase())
        self.store.apply_once("user-1", "sess_2", credit_purchase())
        record = self.store.get("user-1")
        self.assertEqual(record.credit_balance, 2)
        self.assertEqual(record.processed_events, frozenset({"sess_1", "sess_2"}))

    def test_same_event_for_other_user_is_independent(self):
        self.store.apply_once("user-1", "sess_1", credit_purchase())
        self.assertTrue(self.store.apply_once("user-2", "sess_1", credit_purchase()))

    def test_created_at_survives_later_writes(self):
        self.table.seed(user_sub="user-1", created_at=5, processed_events={"old"})
        self.store.apply_once("user-1", "sess_1", credit_purchase())
        self.assertEqual(self.store.get("user-1").created_at, 5)


class TestUnguardedWrites(unittest.TestCase):
    def setUp(self) -> None:
        self.table = FakeBillingTable()
        self.store = BillingStore(self.table, subscription_index="subscription_ref-index")

    def test_set_fields_requires_existing_record(self):
        self.assertFalse(self.store.set_fields("ghost", {SUBSCRIPTION_ACTIVE: False}))
        self.assertIsNone(self.store.get("ghost"))

    def test_set_fields_and_remove(self):
        self.table.seed(user_sub="user-1", subscription_active=False, subscription_canceled_at=10)
        self.assertTrue(self.store.set_fields("user-1", {SUBSCRIPTION_ACTIVE: True}, (SUBSCRIPTION_CANCELED_AT,)))
        record = self.store.get("user-1")
        self.assertTrue(record.subscription_active)
        self.assertIsNone(record.subscription_canceled_at)

    def test_only_if_active_skips_inactive_record(self):
        self.table.seed(user_sub="user-1", subscription_active=False)
        self.assertFalse(self.store.set_fields("user-1", {LAST_PAYMENT_AT: 99}, only_if_active=True))
        self.assertIsNone(self.store.get("user-1").last_payment_at)

    def test_set_fields_by_subscription_follows_pages(self):
        self.table.page_size = 2
        for n in range(5):
            self.table.seed(user_sub=f"user-{n}", subscription_provider_ref="sub_1", subscription_active=True)
        self.table.seed(user_sub="other", subscription_provider_ref="sub_2", subscription_active=True)

        updated = self.store.set_fields_by_subscription("sub_1", {SUBSCRIPTION_ACTIVE: False})

        self.assertEqual(updated, 5)
        self.assertEqual(self.table.query_calls, 3)
        self.assertTrue(self.store.get("other").subscription_active)
        self.assertFalse(self.store.get("user-4").subscription_active)

    def test_set_fields_by_unknown_subscription_is_noop(self):
        self.assertEqual(self.store.set_fields_by_subscription("sub_missing", {SUBSCRIPTION_ACTIVE: False}), 0)
        self.assertEqual(self.table.update_calls, 0)


class TestCredits(unittest.TestCase):
    def setUp(self) -> None:
        self.table = FakeBillingTable()
        self.store = BillingStore(self.table, subscription_index="subscription_ref-index")

    def test_consume_decrements_until_empty(self):
        self.table.seed(user_sub="user-1", credit_balance=2)
        self.assertEqual(self.store.consume_credit("user-1"), 1)
        self.assertEqual(self.store.consume_credit("user-1"), 0)
        self.assertIsNone(self.store.consume_credit("user-1"))
        self.assertEqual(self.store.get("user-1").credit_balance, 0)

    def test_consume_without_record(self):
        self.assertIsNone(self.store.consume_credit("ghost"))
        self.assertIsNone(self.store.get("ghost"))


def test_record_defaults_and_serialization() -> None:
    record = BillingRecord.from_item({"user_sub": "u", "processed_events": {"b", "a"}, "credit_balance": 3})
    assert record.subscription_active is False
    assert record.subscription_canceled_at is None
    body = record.to_dict()
    assert body["processed_events"] == ["a", "b"]
    assert body["credit_balance"] == 3
