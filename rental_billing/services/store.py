from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from rental_billing.core.time import now_ts
from rental_billing.metrics import record_guard_write

logger = logging.getLogger(__name__)

PK = "user_sub"
SUBSCRIPTION_ACTIVE = "subscription_active"
SUBSCRIPTION_SINCE = "subscription_since"
SUBSCRIPTION_CANCELED_AT = "subscription_canceled_at"
SUBSCRIPTION_PROVIDER_REF = "subscription_provider_ref"
CREDIT_BALANCE = "credit_balance"
LAST_PAYMENT_AT = "last_payment_at"
PROCESSED_EVENTS = "processed_events"
FOUNDER_FLAG = "founder_flag"
FOUNDER_SINCE = "founder_since"
CREATED_AT = "created_at"
UPDATED_AT = "updated_at"

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


@dataclass(frozen=True)
class BillingRecord:
    user_sub: str
    subscription_active: bool = False
    subscription_since: Optional[int] = None
    subscription_canceled_at: Optional[int] = None
    subscription_provider_ref: Optional[str] = None
    credit_balance: int = 0
    last_payment_at: Optional[int] = None
    processed_events: FrozenSet[str] = frozenset()
    founder_flag: bool = False
    founder_since: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "BillingRecord":
        return cls(
            user_sub=item[PK],
            subscription_active=bool(item.get(SUBSCRIPTION_ACTIVE, False)),
            subscription_since=_int_or_none(item.get(SUBSCRIPTION_SINCE)),
            subscription_canceled_at=_int_or_none(item.get(SUBSCRIPTION_CANCELED_AT)),
            subscription_provider_ref=item.get(SUBSCRIPTION_PROVIDER_REF) or None,
            credit_balance=int(item.get(CREDIT_BALANCE, 0) or 0),
            last_payment_at=_int_or_none(item.get(LAST_PAYMENT_AT)),
            processed_events=frozenset(item.get(PROCESSED_EVENTS) or ()),
            founder_flag=bool(item.get(FOUNDER_FLAG, False)),
            founder_since=_int_or_none(item.get(FOUNDER_SINCE)),
            created_at=_int_or_none(item.get(CREATED_AT)),
            updated_at=_int_or_none(item.get(UPDATED_AT)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_sub": self.user_sub,
            "subscription_active": self.subscription_active,
            "subscription_since": self.subscription_since,
            "subscription_canceled_at": self.subscription_canceled_at,
            "subscription_provider_ref": self.subscription_provider_ref,
            "credit_balance": self.credit_balance,
            "last_payment_at": self.last_payment_at,
            "processed_events": sorted(self.processed_events),
            "founder_flag": self.founder_flag,
            "founder_since": self.founder_since,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Mutation:
    """Fields to SET and counters to ADD in one guarded write."""

    set_fields: Dict[str, Any] = field(default_factory=dict)
    increments: Dict[str, int] = field(default_factory=dict)


class _UpdateBuilder:
    """Accumulates a DynamoDB update expression with placeholder names/values."""

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Any] = {}
        self._name_ph: Dict[str, str] = {}
        self._sets: List[str] = []
        self._adds: List[str] = []
        self._removes: List[str] = []

    def name(self, attr: str) -> str:
        ph = self._name_ph.get(attr)
        if ph is None:
            ph = f"#f{len(self._name_ph) + 1}"
            self._name_ph[attr] = ph
            self.names[ph] = attr
        return ph

    def value(self, value: Any) -> str:
        ph = f":v{len(self.values) + 1}"
        self.values[ph] = value
        return ph

    def set(self, attr: str, value: Any) -> None:
        self._sets.append(f"{self.name(attr)} = {self.value(value)}")

    def set_if_absent(self, attr: str, value: Any) -> None:
        nk = self.name(attr)
        self._sets.append(f"{nk} = if_not_exists({nk}, {self.value(value)})")

    def add(self, attr: str, value: Any) -> None:
        self._adds.append(f"{self.name(attr)} {self.value(value)}")

    def remove(self, attr: str) -> None:
        self._removes.append(self.name(attr))

    def expression(self) -> str:
        parts = []
        if self._sets:
            parts.append("SET " + ", ".join(self._sets))
        if self._adds:
            parts.append("ADD " + ", ".join(self._adds))
        if self._removes:
            parts.append("REMOVE " + ", ".join(self._removes))
        return " ".join(parts)


class BillingStore:
    """DynamoDB-backed BillingRecord persistence.

    Every mutation is a single ``UpdateItem``; conditions are evaluated by
    DynamoDB, never by a read followed by a write.
    """

    def __init__(self, table: Any, *, subscription_index: str) -> None:
        self.table = table
        self.subscription_index = subscription_index

    def get(self, user_sub: str) -> Optional[BillingRecord]:
        item = self.table.get_item(Key={PK: user_sub}).get("Item")
        if not item:
            return None
        return BillingRecord.from_item(item)

    def _update(self, user_sub: str, builder: _UpdateBuilder, condition: Optional[str], **extra: Any) -> Optional[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {
            "Key": {PK: user_sub},
            "UpdateExpression": builder.expression(),
            "ExpressionAttributeNames": builder.names,
            "ExpressionAttributeValues": builder.values,
            **extra,
        }
        if condition:
            kwargs["ConditionExpression"] = condition
        try:
            return self.table.update_item(**kwargs)
        except ClientError as exc:
            if exc.response["Error"]["Code"] == CONDITIONAL_CHECK_FAILED:
                return None
            raise

    def apply_once(self, user_sub: str, event_id: str, mutation: Mutation) -> bool:
        """Apply ``mutation`` unless ``event_id`` is already in the ledger.

        Creates the record when absent. Returns False for a replay.
        """
        ts = now_ts()
        b = _UpdateBuilder()
        for attr, value in mutation.set_fields.items():
            b.set(attr, value)
        b.set_if_absent(CREATED_AT, ts)
        b.set(UPDATED_AT, ts)
        for attr, delta in mutation.increments.items():
            b.add(attr, int(delta))
        b.add(PROCESSED_EVENTS, {event_id})
        ledger = b.name(PROCESSED_EVENTS)
        condition = f"attribute_not_exists({ledger}) OR NOT contains({ledger}, {b.value(event_id)})"

        applied = self._update(user_sub, b, condition) is not None
        record_guard_write("applied" if applied else "duplicate")
        if applied:
            logger.info("applied %s for user %s", event_id, user_sub)
        else:
            logger.info("skipped already processed %s for user %s", event_id, user_sub)
        return applied

    def set_fields(
        self,
        user_sub: str,
        fields: Dict[str, Any],
        remove: Iterable[str] = (),
        *,
        only_if_active: bool = False,
    ) -> bool:
        """Unguarded SET/REMOVE on an existing record.

        Returns False when the record is absent, or inactive with
        ``only_if_active``.
        """
        b = _UpdateBuilder()
        for attr, value in fields.items():
            b.set(attr, value)
        for attr in remove:
            b.remove(attr)
        b.set(UPDATED_AT, now_ts())
        condition = f"attribute_exists({b.name(PK)})"
        if only_if_active:
            condition += f" AND {b.name(SUBSCRIPTION_ACTIVE)} = {b.value(True)}"
        return self._update(user_sub, b, condition) is not None

    def user_subs_for_subscription(self, subscription_ref: str) -> List[str]:
        kwargs: Dict[str, Any] = {
            "IndexName": self.subscription_index,
            "KeyConditionExpression": Key(SUBSCRIPTION_PROVIDER_REF).eq(subscription_ref),
        }
        out: List[str] = []
        while True:
            resp = self.table.query(**kwargs)
            out.extend(it[PK] for it in resp.get("Items", []))
            last = resp.get("LastEvaluatedKey")
            if not last:
                return out
            kwargs["ExclusiveStartKey"] = last

    def set_fields_by_subscription(
        self,
        subscription_ref: str,
        fields: Dict[str, Any],
        *,
        only_if_active: bool = False,
    ) -> int:
        updated = 0
        for user_sub in self.user_subs_for_subscription(subscription_ref):
            if self.set_fields(user_sub, fields, only_if_active=only_if_active):
                updated += 1
        return updated

    def consume_credit(self, user_sub: str) -> Optional[int]:
        """Atomically decrement the credit balance; None when it is already zero."""
        b = _UpdateBuilder()
        b.add(CREDIT_BALANCE, -1)
        b.set(UPDATED_AT, now_ts())
        condition = f"{b.name(CREDIT_BALANCE)} > {b.value(0)}"
        resp = self._update(user_sub, b, condition, ReturnValues="UPDATED_NEW")
        if resp is None:
            return None
        return int(resp.get("Attributes", {}).get(CREDIT_BALANCE, 0))
