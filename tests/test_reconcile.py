import asyncio

import pytest

from dailyplate.errors import NotFound, ValidationFailed
from dailyplate.model.orm import PENDING, PAID, CANCELED
from dailyplate.reconcile import (
    handle_notification, map_processor_status, reconcile_payment,
    verify_payment,
)

from conftest import seed_order


def payment(order_id, status, pid="1001", **extra):
    return {"id": int(pid), "status": status,
            "external_reference": order_id, **extra}


def reconcile(store, pay, **kw):
    return asyncio.run(reconcile_payment(store, pay, **kw))


def stored(store, order_id):
    return asyncio.run(store.get_order(order_id))


@pytest.mark.parametrize("raw,expected", [
    ("approved", PAID),
    ("APPROVED", PAID),
    ("rejected", CANCELED),
    ("cancelled", CANCELED),
    ("charged_back", CANCELED),
    ("refunded", CANCELED),
    ("pending", PENDING),
    ("in_process", PENDING),
    ("authorized", PENDING),
    ("in_mediation", PENDING),
    (None, PENDING),
    ("", PENDING),
])
def test_status_mapping(raw, expected):
    assert map_processor_status(raw) == expected


def test_approved_moves_pending_to_paid(store):
    oid = seed_order(store)
    out = reconcile(store, payment(oid, "approved"))
    assert out.action == "updated"
    row = stored(store, oid)
    assert row["status"] == PAID
    assert row["mp_payment_id"] == "1001"
    assert row["updated_at"] is not None


def test_same_payment_twice_is_a_noop(store):
    oid = seed_order(store)
    reconcile(store, payment(oid, "approved"))
    first = stored(store, oid)

    out = reconcile(store, payment(oid, "approved"))
    assert out.action == "noop"
    assert stored(store, oid) == first


@pytest.mark.parametrize("late", ["pending", "in_process", "rejected",
                                  "cancelled", "refunded"])
def test_paid_is_never_walked_back(store, late):
    oid = seed_order(store)
    reconcile(store, payment(oid, "approved"))

    out = reconcile(store, payment(oid, late, pid="2002"))
    assert out.ignored
    assert out.reason == "no downgrade"
    row = stored(store, oid)
    assert row["status"] == PAID
    assert row["mp_payment_id"] == "1001"


def test_blocked_downgrade_keeps_payment_id_when_none_stored(store):
    oid = seed_order(store, status=PAID)
    out = reconcile(store, payment(oid, "cancelled", pid="77"))
    assert out.ignored
    row = stored(store, oid)
    assert row["status"] == PAID
    assert row["mp_payment_id"] == "77"


def test_canceled_can_still_become_paid(store):
    oid = seed_order(store)
    reconcile(store, payment(oid, "rejected", pid="10"))
    assert stored(store, oid)["status"] == CANCELED

    out = reconcile(store, payment(oid, "approved", pid="11"))
    assert out.action == "updated"
    row = stored(store, oid)
    assert row["status"] == PAID
    assert row["mp_payment_id"] == "11"


def test_canceled_does_not_go_back_to_pending(store):
    oid = seed_order(store, status=CANCELED, mp_payment_id="10")
    out = reconcile(store, payment(oid, "pending", pid="12"))
    assert out.ignored
    assert stored(store, oid)["status"] == CANCELED


def test_pending_payment_records_payment_id(store):
    oid = seed_order(store)
    out = reconcile(store, payment(oid, "in_process", pid="55"))
    assert out.action == "updated"
    row = stored(store, oid)
    assert row["status"] == PENDING
    assert row["mp_payment_id"] == "55"


def test_missing_external_reference_is_ignored(store):
    out = reconcile(store, {"id": 1, "status": "approved"})
    assert out.ignored
    assert out.reason == "no external_reference"


def test_unknown_order_is_ignored(store):
    out = reconcile(store, payment("does-not-exist", "approved"))
    assert out.ignored
    assert out.reason == "order not found"


def test_concurrent_duplicates_converge(store):
    oid = seed_order(store)
    pay = payment(oid, "approved")

    async def burst():
        return await asyncio.gather(
            *[reconcile_payment(store, pay) for _ in range(5)]
        )

    outcomes = asyncio.run(burst())
    assert all(o.action in ("updated", "noop") for o in outcomes)
    assert any(o.action == "updated" for o in outcomes)
    row = stored(store, oid)
    assert row["status"] == PAID
    assert row["mp_payment_id"] == "1001"


DELIVERY_FIELDS = ("delivery_status", "delivery_notes", "delivered_at")


@pytest.mark.parametrize("status,then", [
    ("approved", "cancelled"),
    ("rejected", "approved"),
])
def test_reconcile_leaves_delivery_fields_alone(store, status, then):
    oid = seed_order(store)
    asyncio.run(store.update_delivery(oid, "IN_TRANSIT", "portao azul",
                                      mark_delivered=True))
    before = stored(store, oid)
    assert before["delivered_at"] is not None

    assert reconcile(store, payment(oid, status)).action == "updated"
    reconcile(store, payment(oid, then, pid="1002"))

    after = stored(store, oid)
    assert after["status"] != PENDING
    for field in DELIVERY_FIELDS:
        assert after[field] == before[field]


# ----------------------------
# webhook pipeline
# ----------------------------
def notify(store, proc, query=None, body=None):
    return asyncio.run(handle_notification(store, proc, query or {}, body,
                                           delays=(0.0, 0.0)))


def test_notification_reconciles(store, mockpay):
    oid = seed_order(store)
    mockpay.add_payment(oid, "approved", "321")
    res = notify(store, mockpay, body={"type": "payment",
                                       "data": {"id": "321"}})
    assert res == {"ok": True}
    assert stored(store, oid)["status"] == PAID


def test_non_payment_notification_does_not_fetch(store, mockpay):
    res = notify(store, mockpay, query={"topic": "merchant_order",
                                        "id": "999"})
    assert res == {"ok": True, "ignored": True,
                   "reason": "not a payment event"}
    assert mockpay.lookups == []


def test_invisible_payment_is_acknowledged(store, mockpay):
    res = notify(store, mockpay, query={"type": "payment", "id": "404"})
    assert res["ignored"] is True
    assert res["reason"] == "payment not found yet"
    assert mockpay.lookups == ["404", "404"]


def test_internal_failure_is_acknowledged(store, mockpay):
    class Broken:
        async def get_order(self, order_id):
            raise RuntimeError("db down")

    mockpay.add_payment("x", "approved", "5")
    res = asyncio.run(handle_notification(
        Broken(), mockpay, {"type": "payment", "id": "5"}, {},
        delays=(0.0,),
    ))
    assert res == {"ok": True, "ignored": True, "reason": "internal error"}


# ----------------------------
# eager verification
# ----------------------------
def test_verify_marks_pending_order_paid(store, mockpay):
    oid = seed_order(store)
    mockpay.add_payment(oid, "approved", "900")
    res = asyncio.run(verify_payment(store, mockpay, oid, "900"))
    assert res == {"ok": True, "status": PAID}


def test_verify_leaves_settled_orders_alone(store, mockpay):
    oid = seed_order(store, status=CANCELED, mp_payment_id="1")
    mockpay.add_payment(oid, "approved", "901")
    res = asyncio.run(verify_payment(store, mockpay, oid, "901"))
    assert res == {"ok": True, "status": CANCELED}


def test_verify_rejects_foreign_payment(store, mockpay):
    oid = seed_order(store)
    mockpay.add_payment("someone-else", "approved", "902")
    with pytest.raises(ValidationFailed):
        asyncio.run(verify_payment(store, mockpay, oid, "902"))
    assert stored(store, oid)["status"] == PENDING


@pytest.mark.parametrize("order_id,payment_id", [
    ("", "1"), ("abc", ""), ("abc", "12x"),
])
def test_verify_validates_input(store, mockpay, order_id, payment_id):
    with pytest.raises(ValidationFailed):
        asyncio.run(verify_payment(store, mockpay, order_id, payment_id))


def test_verify_unknown_order(store, mockpay):
    mockpay.add_payment("ghost", "approved", "903")
    with pytest.raises(NotFound):
        asyncio.run(verify_payment(store, mockpay, "ghost", "903"))
