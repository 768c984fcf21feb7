import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from dailyplate.auth import AuthProvider
from dailyplate.config import Settings
from dailyplate.helpers import now_ts
from dailyplate.infra import timings
from dailyplate.model import new_store
from dailyplate.model.orm import (
    Product, DailyCapacity, Setting, Profile, RouteDay, PENDING, DELIVERY_NEW,
)
from dailyplate.processor import MockPay
from dailyplate.server import create_app

SECRET = "hook-secret"
DAY = 3  # Wednesday, the only active route day for Campinas

TOKENS = {
    "tok-alice": "alice",
    "tok-bob": "bob",
    "tok-admin": "admin-1",
}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class StaticAuth(AuthProvider):
    def __init__(self, tokens):
        self.tokens = dict(tokens)

    async def user_id(self, token):
        return self.tokens.get(token)


class CountingMockPay(MockPay):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.lookups = []

    async def get_payment(self, payment_id):
        self.lookups.append(str(payment_id))
        return await super().get_payment(payment_id)


def catalog():
    return [
        Product(id=1, nome="Frango", preco=1000, ativo=True),
        Product(id=2, nome="Carne", preco=1500, ativo=True),
        Product(id=3, nome="Descontinuado", preco=900, ativo=False),
    ]


def fixtures():
    rows = [
        Setting(key="frete_valor", value="7.00"),
        RouteDay(cidade="Campinas", dia_semana=DAY, ativo=True,
                 created_at=now_ts()),
        RouteDay(cidade="Valinhos", dia_semana=5, ativo=False,
                 created_at=now_ts()),
        Profile(id="admin-1", nome="Admin", role="admin"),
        Profile(id="alice", nome="Alice", role="customer"),
    ]
    for pid in (1, 2, 3):
        rows.append(DailyCapacity(dia_semana=DAY, product_id=pid,
                                  limite_total=10))
    return rows


def seed_order(store, status=PENDING, user_id="alice", items=((1, 2),),
               dia=DAY, frete=700, mp_payment_id=None, order_id=None):
    """Write an order straight into the store, bypassing admission."""
    lines = [{
        "product_id": pid,
        "quantidade": qty,
        "preco_unit": 1000,
        "subtotal": 1000 * qty,
    } for pid, qty in items]
    subtotal = sum(line["subtotal"] for line in lines)
    order_id = order_id or str(uuid.uuid4())
    fields = {
        "id": order_id,
        "user_id": user_id,
        "cidade": "Campinas",
        "dia_semana": dia,
        "cep": "13010000",
        "rua": "Rua A",
        "numero": "10",
        "complemento": "",
        "subtotal": subtotal,
        "frete": frete,
        "total": subtotal + frete,
        "status": status,
        "created_at": now_ts(),
        "mp_payment_id": mp_payment_id,
        "delivery_status": DELIVERY_NEW,
        "delivery_notes": "",
    }
    return asyncio.run(store.create_order(fields, lines))


def order_payload(**overrides):
    payload = {
        "cep": "13010-000",
        "rua": "Rua A",
        "numero": "10",
        "complemento": "ap 2",
        "cidade": "Campinas",
        "dia_semana": DAY,
        "items": [{"product_id": 1, "quantidade": 2}],
    }
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
def _clean_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'dailyplate.db'}",
        webhook_secret=SECRET,
        site_url="http://localhost:8000",
        processor_backend="mock",
        fetch_delays=(0.0, 0.0, 0.0),
        log_level="WARNING",
        log_json=False,
    )


@pytest.fixture
def store(settings):
    store = new_store(settings.database_url)
    asyncio.run(store.create_schema())
    asyncio.run(store.add_all(catalog()))
    asyncio.run(store.add_all(fixtures()))
    yield store
    asyncio.run(store.close())


@pytest.fixture
def mockpay(settings):
    return CountingMockPay(settings.base_url)


@pytest.fixture
def app(settings, store, mockpay):
    return create_app(settings, store=store, processor=mockpay,
                      auth=StaticAuth(TOKENS))


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
