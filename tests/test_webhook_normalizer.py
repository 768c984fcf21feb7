import pytest

from dailyplate.webhook import (
    PaymentNotification, Unrecognized, normalize_notification,
)


@pytest.mark.parametrize("query,body", [
    ({}, {"type": "payment", "data": {"id": "123"}}),
    ({}, {"action": "payment.created", "data": {"id": "123"}}),
    ({}, {"action": "payment.updated", "data": {"id": 123}}),
    ({}, {"resource": "https://api.mercadopago.com/v1/payments/123",
          "topic": "payment"}),
    ({}, {"resource": "https://api.mercadopago.com/v1/payments/123"}),
    ({"type": "payment", "data.id": "123"}, {}),
    ({"topic": "payment", "id": "123"}, None),
    ({"topic": "Payment", "id": " 123 "}, {}),
])
def test_payment_shapes(query, body):
    assert normalize_notification(query, body) == PaymentNotification("123")


def test_merchant_order_query_is_not_a_payment():
    event = normalize_notification({"topic": "merchant_order", "id": "999"},
                                   {})
    assert isinstance(event, Unrecognized)
    assert event.reason == "not a payment event"
    assert event.kind == "merchant_order"
    assert event.raw_id == "999"


def test_merchant_order_resource_is_not_a_payment():
    event = normalize_notification(
        {}, {"resource": "https://api.mercadopago.com/merchant_orders/999"}
    )
    assert isinstance(event, Unrecognized)
    assert event.reason == "not a payment event"


def test_query_kind_wins_over_body_kind():
    event = normalize_notification({"topic": "merchant_order", "id": "1"},
                                   {"type": "payment", "data": {"id": "2"}})
    assert isinstance(event, Unrecognized)
    assert event.kind == "merchant_order"


def test_query_id_wins_over_body_id():
    event = normalize_notification({"data.id": "111"},
                                   {"type": "payment", "data": {"id": "222"}})
    assert event == PaymentNotification("111")


def test_missing_id():
    event = normalize_notification({}, {"type": "payment", "data": {}})
    assert event == Unrecognized("no id", "payment")


@pytest.mark.parametrize("raw", ["abc", "12a", "-5", "1.5"])
def test_non_numeric_id(raw):
    event = normalize_notification({"type": "payment", "id": raw}, {})
    assert isinstance(event, Unrecognized)
    assert event.reason == "non-numeric id"
    assert event.raw_id == raw


@pytest.mark.parametrize("body", [None, [], "garbage", 42,
                                  {"data": "oops", "action": 7}])
def test_garbage_never_raises(body):
    event = normalize_notification({}, body)
    assert isinstance(event, Unrecognized)
    assert event.reason == "no id"
