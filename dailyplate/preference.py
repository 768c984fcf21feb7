from __future__ import annotations
from typing import Any, Dict, Sequence
from urllib.parse import quote

import httpx
import structlog

from .config import Settings
from .errors import (
    NotFound, Conflict, ProcessorRejected, ProcessorUnavailable,
)
from .infra.timings import timeit
from .model.orm import PENDING
from .model.store import OrderStore
from .processor import PaymentProcessor

logger = structlog.get_logger(__name__)

CURRENCY = "BRL"
WEBHOOK_PATH = "/api/mp/webhook"


def is_public_https(url: str) -> bool:
    if not url.startswith("https://"):
        return False
    return "localhost" not in url and "127.0.0.1" not in url


def back_urls(site_url: str, order_id: str) -> Dict[str, str]:
    ref = quote(order_id, safe="")
    return {
        "success": f"{site_url}/pagamento/sucesso?order={ref}",
        "pending": f"{site_url}/pagamento/pendente?order={ref}",
        "failure": f"{site_url}/pagamento/falha?order={ref}",
    }


def notification_url(site_url: str, secret: str) -> str:
    return f"{site_url}{WEBHOOK_PATH}?secret={quote(secret, safe='')}"


def build_preference(
    order_id: str,
    lines: Sequence[Dict[str, Any]],
    frete_cents: int,
    site_url: str,
    webhook_secret: str,
) -> Dict[str, Any]:
    site_url = site_url.rstrip("/")
    items = [{
        "id": str(line["product_id"]),
        "title": str(line.get("nome") or f"Produto {line['product_id']}"),
        "quantity": int(line["quantidade"]),
        "unit_price": int(line["preco_unit"]) / 100,
        "currency_id": CURRENCY,
    } for line in lines]

    # shipping is charged as its own line
    if frete_cents > 0:
        items.append({
            "id": "FRETE",
            "title": "Frete",
            "quantity": 1,
            "unit_price": frete_cents / 100,
            "currency_id": CURRENCY,
        })

    payload: Dict[str, Any] = {
        "items": items,
        "back_urls": back_urls(site_url, order_id),
        "external_reference": str(order_id),
        "notification_url": notification_url(site_url, webhook_secret),
    }
    # the processor refuses auto_return for non-public return URLs
    if is_public_https(site_url):
        payload["auto_return"] = "approved"
    return payload


async def issue_preference(
    store: OrderStore,
    processor: PaymentProcessor,
    settings: Settings,
    order_id: str,
) -> Dict[str, Any]:
    order = await store.get_order(order_id)
    if order is None:
        raise NotFound("order not found")
    if order["status"] != PENDING:
        raise Conflict(f"order is {order['status']}, not payable")

    lines = await store.get_order_lines(order_id)
    if not lines:
        raise Conflict("order has no items")

    payload = build_preference(order_id, lines, int(order["frete"]),
                               settings.base_url, settings.webhook_secret)

    try:
        async with timeit("processor.create_preference"):
            res = await processor.create_preference(payload)
    except httpx.HTTPError as e:
        logger.warning("preference.processor_unreachable", order_id=order_id,
                       error=str(e))
        raise ProcessorUnavailable("payment processor unreachable")
    if not res.ok:
        logger.warning("preference.rejected", order_id=order_id,
                       status=res.status, mp=res.data)
        raise ProcessorRejected("payment processor refused the preference",
                                res.data)

    data = res.data if isinstance(res.data, dict) else {}
    pref_id = str(data.get("id") or "")
    if pref_id and not await store.set_preference_id(order_id, pref_id):
        logger.info("preference.already_set", order_id=order_id,
                    preference_id=pref_id)
    logger.info("preference.created", order_id=order_id,
                preference_id=pref_id)
    return {
        "id": data.get("id"),
        "init_point": data.get("init_point"),
        "sandbox_init_point": data.get("sandbox_init_point"),
    }
