"""
Payment-status reconciliation.

Local order status only ever converges towards the processor's payment
record:

    processor status                         -> local status
    approved                                 -> PAID
    rejected, cancelled, charged_back,
    refunded                                 -> CANCELED
    anything else (pending, in_process, ...) -> PENDING

Rules applied to every fetched payment, in order:

1. no external_reference        -> ignored (cannot correlate)
2. unknown order                -> ignored
3. stored PAID, next not PAID   -> ignored (never walk back an approval)
   stored CANCELED, next PENDING -> ignored
4. same status and same payment -> no-op, nothing written
5. otherwise one conditional UPDATE guarded by the allowed prior statuses

Duplicate and concurrent notifications are safe without locks: the final
write is a single row update and re-applying the same state is a no-op.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

import httpx
import structlog

from .errors import PaymentNotYetVisible, UpstreamFetchError, NotFound
from .errors import ValidationFailed, ProcessorUnavailable
from .infra.timings import timeit
from .model.orm import PENDING, PAID, CANCELED
from .model.store import OrderStore
from .processor import PaymentProcessor
from .webhook import PaymentNotification, normalize_notification
from .config import FETCH_DELAYS

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_CANCELED_STATUSES = frozenset(
    {"rejected", "cancelled", "charged_back", "refunded"}
)

# prior statuses a given target may be written over
_ALLOWED_FROM: Dict[str, Sequence[str]] = {
    PAID: (PENDING, CANCELED, PAID),
    CANCELED: (PENDING, CANCELED),
    PENDING: (PENDING,),
}


def map_processor_status(raw: Any) -> str:
    s = str(raw or "").strip().lower()
    if s == "approved":
        return PAID
    if s in _CANCELED_STATUSES:
        return CANCELED
    return PENDING


def is_downgrade(current: str, nxt: str) -> bool:
    return current not in _ALLOWED_FROM[nxt]


# ----------------------------
# Payment fetcher
# ----------------------------
async def fetch_payment(
    processor: PaymentProcessor,
    payment_id: str,
    delays: Sequence[float] = FETCH_DELAYS,
    sleep: Sleep = asyncio.sleep,
) -> Dict[str, Any]:
    """Fetch a payment record, waiting out the window in which a freshly
    announced payment is not visible yet.

    404, 5xx and transport errors are retried on the `delays` schedule;
    any other non-2xx stops immediately.
    """
    last_status: Optional[int] = None
    last_data: Any = None
    for attempt, delay in enumerate(delays, start=1):
        if delay:
            await sleep(delay)
        try:
            async with timeit("processor.get_payment"):
                res = await processor.get_payment(payment_id)
        except httpx.HTTPError as e:
            logger.warning("payment.fetch_transport_error",
                           payment_id=payment_id, attempt=attempt,
                           error=str(e))
            last_status, last_data = None, str(e)
            continue

        if res.ok:
            return res.data if isinstance(res.data, dict) else {}
        last_status, last_data = res.status, res.data
        if res.status == 404 or res.status >= 500:
            logger.info("payment.fetch_retry", payment_id=payment_id,
                        attempt=attempt, status=res.status)
            continue
        raise UpstreamFetchError(payment_id, res.status, res.data)

    if last_status == 404:
        raise PaymentNotYetVisible(payment_id, len(delays))
    raise UpstreamFetchError(payment_id, last_status, last_data)


# ----------------------------
# Status reconciler
# ----------------------------
@dataclass(frozen=True)
class ReconcileOutcome:
    action: str  # updated | noop | ignored
    reason: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return self.action == "ignored"


async def reconcile_payment(
    store: OrderStore,
    payment: Mapping[str, Any],
    announced_id: Optional[str] = None,
    only_from_pending: bool = False,
) -> ReconcileOutcome:
    payment_id = str(payment.get("id") or announced_id or "")
    order_id = str(payment.get("external_reference") or "").strip()
    proc_status = payment.get("status")

    if not order_id:
        logger.warning("reconcile.no_external_reference",
                       payment_id=payment_id, mp_status=proc_status)
        return ReconcileOutcome("ignored", "no external_reference")

    async with timeit("store.get_order"):
        order = await store.get_order(order_id)
    if order is None:
        logger.info("reconcile.order_not_found", order_id=order_id,
                    payment_id=payment_id)
        return ReconcileOutcome("ignored", "order not found", order_id)

    current = str(order["status"] or PENDING).upper()
    nxt = map_processor_status(proc_status)
    stored_pid = str(order.get("mp_payment_id") or "")

    if only_from_pending and current != PENDING:
        return ReconcileOutcome("noop", "already settled", order_id, current)

    if is_downgrade(current, nxt):
        # keep the payment id for traceability, never the status
        if not stored_pid and payment_id:
            await store.attach_payment_id(order_id, payment_id)
        logger.info("reconcile.downgrade_blocked", order_id=order_id,
                    current=current, next=nxt, payment_id=payment_id)
        return ReconcileOutcome("ignored", "no downgrade", order_id, current)

    if nxt == current and stored_pid == payment_id:
        logger.debug("reconcile.idempotent", order_id=order_id,
                     status=current, payment_id=payment_id)
        return ReconcileOutcome("noop", None, order_id, current)

    async with timeit("store.apply_payment_status"):
        changed = await store.apply_payment_status(
            order_id, nxt, payment_id, _ALLOWED_FROM[nxt]
        )
    if not changed:
        # another delivery moved the row first
        latest = await store.get_order(order_id)
        latest_status = latest["status"] if latest else None
        logger.info("reconcile.superseded", order_id=order_id,
                    next=nxt, latest=latest_status)
        return ReconcileOutcome("ignored", "superseded", order_id,
                                latest_status)

    logger.info("reconcile.updated", order_id=order_id, previous=current,
                status=nxt, payment_id=payment_id, mp_status=proc_status,
                mp_status_detail=payment.get("status_detail"))
    return ReconcileOutcome("updated", None, order_id, nxt)


# ----------------------------
# Webhook pipeline
# ----------------------------
def _ignored(reason: str) -> Dict[str, Any]:
    return {"ok": True, "ignored": True, "reason": reason}


async def handle_notification(
    store: OrderStore,
    processor: PaymentProcessor,
    query: Mapping[str, str],
    body: Any,
    delays: Sequence[float] = FETCH_DELAYS,
    sleep: Sleep = asyncio.sleep,
) -> Dict[str, Any]:
    """Everything after the secret check. Always returns a body to be sent
    with HTTP 200; errors are logged, never surfaced to the processor."""
    try:
        event = normalize_notification(query, body)
        if not isinstance(event, PaymentNotification):
            logger.info("webhook.ignored", reason=event.reason,
                        kind=event.kind, raw_id=event.raw_id,
                        **event.debug)
            return _ignored(event.reason)

        try:
            payment = await fetch_payment(processor, event.payment_id,
                                          delays, sleep)
        except PaymentNotYetVisible as e:
            logger.info("webhook.ignored", reason="payment not found yet",
                        payment_id=e.payment_id, attempts=e.attempts)
            return _ignored("payment not found yet")
        except UpstreamFetchError as e:
            logger.warning("webhook.ignored", reason="payment fetch error",
                           payment_id=e.payment_id, status=e.status,
                           data=e.data)
            return _ignored("payment fetch error")

        outcome = await reconcile_payment(store, payment, event.payment_id)
        if outcome.ignored:
            return _ignored(outcome.reason or "ignored")
        return {"ok": True}
    except Exception:
        logger.exception("webhook.error")
        return _ignored("internal error")


# ----------------------------
# Eager verification from the success page
# ----------------------------
async def verify_payment(
    store: OrderStore,
    processor: PaymentProcessor,
    order_id: str,
    payment_id: str,
) -> Dict[str, Any]:
    if not order_id or not payment_id:
        raise ValidationFailed("orderId and paymentId are required")
    if not payment_id.isascii() or not payment_id.isdigit():
        raise ValidationFailed("paymentId must be numeric")

    try:
        async with timeit("processor.get_payment"):
            res = await processor.get_payment(payment_id)
    except httpx.HTTPError as e:
        logger.warning("verify.processor_unreachable", order_id=order_id,
                       payment_id=payment_id, error=str(e))
        raise ProcessorUnavailable("payment processor unreachable")
    if not res.ok:
        raise ValidationFailed("payment lookup failed", mp=res.data)

    pay = res.data if isinstance(res.data, dict) else {}
    if str(pay.get("external_reference") or "") != order_id:
        raise ValidationFailed("payment does not belong to this order")

    outcome = await reconcile_payment(store, pay, payment_id,
                                      only_from_pending=True)
    if outcome.reason == "order not found":
        raise NotFound("order not found")
    order = await store.get_order(order_id)
    return {"ok": True, "status": order["status"] if order else None}
