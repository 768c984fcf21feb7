"""
Capacity-checked order admission.

Capacity counts units on PAID orders only, so two PENDING orders racing
for the last units are both admitted and both may end up paid. The check
and the insert are not serialized against each other either.
"""
from __future__ import annotations
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import structlog

from .config import DEFAULT_FRETE
from .errors import (
    ValidationFailed, CapacityExceeded, CapacityNotConfigured,
)
from .helpers import only_digits, now_ts, parse_money_cents
from .infra.timings import timeit
from .model.orm import PENDING, DELIVERY_NEW
from .model.store import OrderStore

logger = structlog.get_logger(__name__)

FRETE_SETTING = "frete_valor"

# ids and quantities must fit a 32-bit INTEGER column
MAX_INT = 2**31 - 1


@dataclass(frozen=True)
class OrderRequest:
    cep: str
    rua: str
    numero: str
    complemento: str
    cidade: str
    dia_semana: int
    # (product_id, quantidade), one entry per product
    items: Tuple[Tuple[int, int], ...]

    @property
    def product_ids(self) -> List[int]:
        return [pid for pid, _ in self.items]


def _positive_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(value)
        value = int(value)
    n = int(str(value).strip())
    if n <= 0 or n > MAX_INT:
        raise ValueError(value)
    return n


def parse_order_request(payload: Any) -> OrderRequest:
    if not isinstance(payload, dict):
        raise ValidationFailed("invalid data")

    cep = only_digits(payload.get("cep"))
    rua = str(payload.get("rua") or "").strip()
    numero = str(payload.get("numero") or "").strip()
    cidade = str(payload.get("cidade") or "").strip()
    complemento = str(payload.get("complemento") or "").strip()
    items = payload.get("items")

    if not (cep and rua and numero and cidade and payload.get("dia_semana")):
        raise ValidationFailed("invalid data")
    if not isinstance(items, list) or not items:
        raise ValidationFailed("invalid data")
    if len(cep) != 8:
        raise ValidationFailed("invalid CEP (8 digits required)")

    try:
        dia = _positive_int(payload.get("dia_semana"))
    except (TypeError, ValueError):
        raise ValidationFailed("invalid dia_semana")
    if not 1 <= dia <= 7:
        raise ValidationFailed("invalid dia_semana")

    merged: "OrderedDict[int, int]" = OrderedDict()
    for it in items:
        if not isinstance(it, dict):
            raise ValidationFailed("invalid item")
        try:
            pid = _positive_int(it.get("product_id"))
        except (TypeError, ValueError):
            raise ValidationFailed("invalid item (product_id)")
        try:
            qty = _positive_int(it.get("quantidade"))
        except (TypeError, ValueError):
            raise ValidationFailed("invalid item (quantidade)")
        merged[pid] = merged.get(pid, 0) + qty

    return OrderRequest(
        cep=cep, rua=rua, numero=numero, complemento=complemento,
        cidade=cidade, dia_semana=dia, items=tuple(merged.items()),
    )


def check_capacity(
    request: OrderRequest, limits: Dict[int, int], sold: Dict[int, int]
) -> None:
    for pid in request.product_ids:
        if pid not in limits:
            raise CapacityNotConfigured(pid, request.dia_semana)
    for pid, qty in request.items:
        already = sold.get(pid, 0)
        if already + qty > limits[pid]:
            raise CapacityExceeded(pid, max(0, limits[pid] - already))


async def shipping_fee_cents(store: OrderStore) -> int:
    raw = await store.get_setting(FRETE_SETTING)
    return parse_money_cents(raw, parse_money_cents(DEFAULT_FRETE))


async def admit_order(
    store: OrderStore, user_id: str, request: OrderRequest
) -> str:
    """Validate products, route and capacity, then create the order and
    its items (status PENDING) in one transaction. Returns the order id."""
    ids = request.product_ids

    products = await store.get_products(ids)
    if len(products) != len(ids):
        raise ValidationFailed("invalid products")
    if any(not p["ativo"] for p in products.values()):
        raise ValidationFailed("cart has an inactive product")

    if not await store.is_route_active(request.cidade, request.dia_semana):
        raise ValidationFailed("no delivery to this city on this day")

    frete = await shipping_fee_cents(store)

    async with timeit("store.capacity_check"):
        limits = await store.get_capacity(request.dia_semana, ids)
        sold = await store.sold_by_product(request.dia_semana, ids)
    check_capacity(request, limits, sold)

    lines = []
    for pid, qty in request.items:
        unit = int(products[pid]["preco"])
        lines.append({
            "product_id": pid,
            "quantidade": qty,
            "preco_unit": unit,
            "subtotal": unit * qty,
        })
    subtotal = sum(line["subtotal"] for line in lines)

    order_id = str(uuid.uuid4())
    fields = {
        "id": order_id,
        "user_id": user_id,
        "cidade": request.cidade,
        "dia_semana": request.dia_semana,
        "cep": request.cep,
        "rua": request.rua,
        "numero": request.numero,
        "complemento": request.complemento,
        "subtotal": subtotal,
        "frete": frete,
        "total": subtotal + frete,
        "status": PENDING,
        "created_at": now_ts(),
        "delivery_status": DELIVERY_NEW,
        "delivery_notes": "",
    }
    async with timeit("store.create_order"):
        await store.create_order(fields, lines)

    logger.info("order.admitted", order_id=order_id, user_id=user_id,
                dia_semana=request.dia_semana, total=subtotal + frete)
    return order_id
