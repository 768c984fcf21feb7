"""
Normalization of processor notifications.

The processor reaches the webhook in several shapes, sometimes combined:

- JSON: {"type": "payment", "data": {"id": "123"}}
- JSON: {"action": "payment.created", "data": {"id": "123"}}
- JSON: {"resource": "https://api.../v1/payments/123", "topic": "payment"}
- query: ?type=payment&data.id=123
- query: ?topic=payment&id=123
- query: ?topic=merchant_order&id=999   (same transport, NOT a payment)

`normalize_notification` folds all of them into either a
`PaymentNotification` or an `Unrecognized` value. It never raises.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

PAYMENT_KIND = "payment"

_RE_PAYMENT_RESOURCE = re.compile(r"payments/(\d+)")
_RE_MERCHANT_ORDER_RESOURCE = re.compile(r"merchant_orders/(\d+)")
_RE_NUMERIC = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class PaymentNotification:
    payment_id: str
    kind: str = PAYMENT_KIND


@dataclass(frozen=True)
class Unrecognized:
    reason: str
    kind: Optional[str] = None
    raw_id: Optional[str] = None
    debug: dict = field(default_factory=dict, compare=False)


Notification = Union[PaymentNotification, Unrecognized]


def _first(*values: Any) -> Optional[str]:
    for v in values:
        if v is None or isinstance(v, (dict, list, bool)):
            continue
        s = str(v).strip()
        if s:
            return s
    return None


def normalize_notification(query: Mapping[str, str],
                           body: Any) -> Notification:
    if not isinstance(body, dict):
        body = {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    # query patterns
    q_kind = _first(query.get("type"), query.get("topic"))
    q_id = _first(query.get("data.id"), query.get("id"))

    # body patterns
    b_kind = _first(body.get("type"), body.get("topic"))
    action = body.get("action") if isinstance(body.get("action"), str) else ""
    b_action_kind = action.split(".")[0] if "." in action else None
    b_id = _first(data.get("id"), body.get("id"))

    # resource patterns
    resource = _first(body.get("resource"), data.get("resource"),
                      body.get("href"))
    resource_kind = None
    resource_payment_id = None
    if resource:
        m = _RE_PAYMENT_RESOURCE.search(resource)
        if m:
            resource_payment_id = m.group(1)
            resource_kind = PAYMENT_KIND
        if _RE_MERCHANT_ORDER_RESOURCE.search(resource):
            resource_kind = "merchant_order"

    kind = _first(q_kind, b_kind, b_action_kind, resource_kind)
    kind = kind.lower() if kind else None
    raw_id = _first(q_id, b_id, resource_payment_id)

    debug = {
        "q_kind": q_kind, "q_id": q_id, "b_kind": b_kind, "action": action,
        "b_id": b_id, "resource": resource, "resource_kind": resource_kind,
    }

    if kind and kind != PAYMENT_KIND:
        return Unrecognized("not a payment event", kind, raw_id, debug)
    if not raw_id:
        return Unrecognized("no id", kind, None, debug)
    if not _RE_NUMERIC.fullmatch(raw_id):
        return Unrecognized("non-numeric id", kind, raw_id, debug)
    return PaymentNotification(payment_id=raw_id, kind=kind or PAYMENT_KIND)
