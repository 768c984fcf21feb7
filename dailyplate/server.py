from __future__ import annotations
import json
import os
import sys
from typing import Any, Dict, Optional

import httpx
import structlog
from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.status import HTTP_303_SEE_OTHER

from . import admission, landing, preference, reconcile
from .auth import (
    AuthProvider, DisabledAuth, RemoteAuth, authenticate, authenticate_admin,
)
from .config import Settings
from .errors import (
    ConfigError, DailyPlateError, NotFound, ValidationFailed,
)
from .helpers import cents_to_reais, ct_equal, to_iso
from .infra import timings
from .infra.logs import configure_logging
from .model import OrderStore, new_store
from .model.orm import DELIVERY_STATUSES, PAYMENT_STATUSES
from .processor import MockPay, PaymentProcessor, new_processor

logger = structlog.get_logger(__name__)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

MOCKPAY_OUTCOMES = {
    "approved": "success",
    "pending": "pending",
    "in_process": "pending",
    "rejected": "failure",
}


# ----------------------------
# Serialization
# ----------------------------
def order_json(o: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "id": o["id"],
        "user_id": o["user_id"],
        "cidade": o["cidade"],
        "dia_semana": o["dia_semana"],
        "cep": o["cep"],
        "rua": o["rua"],
        "numero": o["numero"],
        "complemento": o["complemento"],
        "subtotal": cents_to_reais(o["subtotal"]),
        "frete": cents_to_reais(o["frete"]),
        "total": cents_to_reais(o["total"]),
        "status": o["status"],
        "created_at": to_iso(o["created_at"]),
        "mp_preference_id": o["mp_preference_id"],
        "mp_payment_id": o["mp_payment_id"],
        "delivery_status": o["delivery_status"],
        "delivery_notes": o["delivery_notes"],
        "delivered_at": to_iso(o["delivered_at"]),
    }
    if "items" in o:
        out["order_items"] = [{
            "id": it["id"],
            "product_id": it["product_id"],
            "quantidade": it["quantidade"],
            "preco_unit": cents_to_reais(it["preco_unit"]),
            "subtotal": cents_to_reais(it["subtotal"]),
            "products": {"nome": it["nome"], "image_url": it["image_url"]},
        } for it in o["items"]]
    return out


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return {}


def create_app(
    settings: Settings,
    *,
    store: Optional[OrderStore] = None,
    processor: Optional[PaymentProcessor] = None,
    auth: Optional[AuthProvider] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the app with its collaborators. Anything not passed in is
    built from `settings` (store now, http-backed clients at startup)."""
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title="DailyPlate",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.store = store or new_store(settings.database_url,
                                         settings.db_pool)
    app.state.processor = processor
    app.state.auth = auth
    app.state.http = http
    app.state.owns_http = http is None

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _http_client_start():
        if app.state.http is None:
            app.state.http = httpx.AsyncClient(
                timeout=5.0,
                limits=httpx.Limits(
                    max_connections=128, max_keepalive_connections=64
                ),
            )
        if app.state.processor is None:
            app.state.processor = new_processor(settings, app.state.http)
        if app.state.auth is None:
            app.state.auth = (
                RemoteAuth(app.state.http, settings.auth_url,
                           settings.auth_anon_key or "")
                if settings.auth_url else DisabledAuth()
            )

    @app.on_event("startup")
    async def _db_init():
        await app.state.store.create_schema()
        logger.info("dailyplate.started",
                    processor=type(app.state.processor).__name__,
                    site_url=settings.base_url)

    @app.on_event("shutdown")
    async def _http_client_stop():
        client = app.state.http
        if client is not None and app.state.owns_http:
            await client.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _store_stop():
        await app.state.store.close()

    @app.exception_handler(DailyPlateError)
    async def _domain_error(request: Request, exc: DailyPlateError):
        return ORJSONResponse(exc.body(), status_code=exc.status_code)

    def _store() -> OrderStore:
        return app.state.store

    # ----------------------------
    # Storefront reads
    # ----------------------------
    @app.get("/healthz")
    async def health():
        return {"status": "healthy"}

    @app.get("/api/settings/frete")
    async def get_frete():
        cents = await admission.shipping_fee_cents(_store())
        return {"frete": cents_to_reais(cents)}

    @app.get("/api/routes")
    async def get_routes():
        return {"cities": await _store().active_routes()}

    # ----------------------------
    # Checkout: admission
    # ----------------------------
    @app.post("/api/orders/validate-and-create")
    async def create_order(request: Request):
        user = await authenticate(request, app.state.auth)
        payload = await _json_body(request)
        order_request = admission.parse_order_request(payload)
        try:
            order_id = await admission.admit_order(
                _store(), user.id, order_request
            )
        except DailyPlateError:
            raise
        except Exception:
            logger.exception("order.create_failed", user_id=user.id)
            return ORJSONResponse({"error": "unexpected error"},
                                  status_code=500)
        return {"order_id": order_id}

    # ----------------------------
    # Checkout: processor preference
    # ----------------------------
    @app.post("/api/mp/preference")
    async def create_preference(request: Request):
        body = await _json_body(request)
        if not isinstance(body, dict):
            body = {}
        order_id = str(body.get("orderId") or "").strip()
        if not order_id:
            raise ValidationFailed("orderId is required")
        return await preference.issue_preference(
            _store(), app.state.processor, settings, order_id
        )

    # ----------------------------
    # Webhook (processor -> us)
    # ----------------------------
    @app.api_route("/api/mp/webhook", methods=["GET", "POST"])
    async def mp_webhook(request: Request):
        secret = request.query_params.get("secret")
        if not secret or not ct_equal(secret, settings.webhook_secret):
            logger.warning("webhook.unauthorized",
                           client=request.client.host
                           if request.client else None)
            return ORJSONResponse({"ok": False, "error": "unauthorized"},
                                  status_code=401)

        body = await _json_body(request) if request.method == "POST" else {}
        return await reconcile.handle_notification(
            _store(), app.state.processor, request.query_params, body,
            delays=settings.fetch_delays,
        )

    @app.post("/api/mp/verify")
    async def mp_verify(request: Request):
        body = await _json_body(request)
        if not isinstance(body, dict):
            body = {}
        return await reconcile.verify_payment(
            _store(), app.state.processor,
            str(body.get("orderId") or "").strip(),
            str(body.get("paymentId") or "").strip(),
        )

    # ----------------------------
    # Order status (polled by landing pages)
    # ----------------------------
    @app.get("/api/orders/{order_id}/status")
    async def order_status(request: Request, order_id: str,
                           page: str = landing.PENDING_PAGE,
                           tries: int = 0):
        if page not in landing.PAGES:
            raise ValidationFailed("invalid page")
        user = await authenticate(request, app.state.auth)
        order = await _store().get_order(order_id)
        view = landing.resolve_landing(page, order, user.id, tries)
        if view.state == "not_found":
            raise NotFound("order not found", state=view.state)
        if view.state == "denied":
            return ORJSONResponse(
                {"error": "permission denied", "state": view.state},
                status_code=403,
            )
        return view.as_dict()

    @app.get("/api/me/orders")
    async def my_orders(request: Request):
        user = await authenticate(request, app.state.auth)
        rows = await _store().list_user_orders(user.id)
        return {"orders": [order_json(o) for o in rows]}

    @app.get("/pagamento/{page}", response_class=HTMLResponse)
    async def landing_page(request: Request, page: str,
                           order: str = ""):
        if page not in landing.PAGES:
            raise NotFound("page not found")
        return templates.TemplateResponse(
            request, "payment_status.html",
            {"page": page, "order_id": order,
             "payment_id": request.query_params.get("payment_id")
             or request.query_params.get("collection_id") or ""},
        )

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/api/admin/orders")
    async def admin_orders(request: Request, q: str = "", pay: str = "ALL",
                           cidade: str = "", limit: int = 100):
        await authenticate_admin(request, app.state.auth, _store())
        pay = pay.upper()
        delivery = request.query_params.get("del", "ALL").upper()
        if pay != "ALL" and pay not in PAYMENT_STATUSES:
            raise ValidationFailed("invalid payment status filter")
        if delivery != "ALL" and delivery not in DELIVERY_STATUSES:
            raise ValidationFailed("invalid delivery status filter")
        rows = await _store().list_orders(
            pay=None if pay == "ALL" else pay,
            delivery=None if delivery == "ALL" else delivery,
            cidade=cidade.strip() or None,
            q=q.strip() or None,
            limit=min(200, max(10, limit)),
        )
        return {"orders": [order_json(o) for o in rows]}

    @app.patch("/api/admin/orders/{order_id}/delivery")
    async def admin_update_delivery(request: Request, order_id: str):
        await authenticate_admin(request, app.state.auth, _store())
        body = await _json_body(request)
        if not isinstance(body, dict):
            body = {}
        status = str(body.get("delivery_status") or "").strip().upper()
        if not status:
            raise ValidationFailed("delivery_status is required")
        if status not in DELIVERY_STATUSES:
            raise ValidationFailed(f"unknown delivery_status {status}")
        row = await _store().update_delivery(
            order_id, status, str(body.get("delivery_notes") or ""),
            bool(body.get("markDelivered")),
        )
        if row is None:
            raise NotFound("order not found")
        row["delivered_at"] = to_iso(row["delivered_at"])
        logger.info("delivery.updated", order_id=order_id, status=status)
        return {"ok": True, "order": row}

    @app.get("/api/admin/capacity")
    async def admin_capacity(request: Request, dia_semana: int):
        await authenticate_admin(request, app.state.auth, _store())
        if not 1 <= dia_semana <= 7:
            raise ValidationFailed("invalid dia_semana")
        return {"dia_semana": dia_semana,
                "items": await _store().capacity_report(dia_semana)}

    @app.get("/api/admin/timings")
    async def admin_timings(request: Request):
        await authenticate_admin(request, app.state.auth, _store())
        return {"items": timings.snapshot()}

    # ----------------------------
    # MockPay (PROCESSOR_BACKEND=mock)
    # ----------------------------
    def _mockpay() -> MockPay:
        proc = app.state.processor
        if not isinstance(proc, MockPay):
            raise NotFound("mockpay disabled")
        return proc

    @app.get("/mockpay/{pref_id}", response_class=HTMLResponse)
    async def mockpay_screen(request: Request, pref_id: str):
        pref = _mockpay().preferences.get(pref_id)
        if pref is None:
            raise NotFound("preference not found")
        total = sum(i["unit_price"] * i["quantity"] for i in pref["items"])
        return templates.TemplateResponse(request, "mockpay.html", {
            "pref_id": pref_id,
            "order_id": pref.get("external_reference"),
            "items": pref["items"],
            "total": f"{total:.2f}",
            "outcomes": list(MOCKPAY_OUTCOMES),
        })

    @app.post("/mockpay/{pref_id}/emit")
    async def mockpay_emit(pref_id: str, t: str = Form(...)):
        mock = _mockpay()
        pref = mock.preferences.get(pref_id)
        if pref is None:
            raise NotFound("preference not found")
        if t not in MOCKPAY_OUTCOMES:
            raise ValidationFailed("invalid outcome")

        pay = mock.pay_preference(pref_id, t)
        pid = str(pay["id"])
        event = {
            "action": "payment.created",
            "type": "payment",
            "data": {"id": pid},
        }
        client_http: httpx.AsyncClient = app.state.http
        try:
            await client_http.post(pref["notification_url"], json=event)
        except httpx.HTTPError as e:
            # the processor would redeliver; the landing page keeps polling
            logger.warning("mockpay.notify_failed", payment_id=pid,
                           error=str(e))

        back = pref["back_urls"][MOCKPAY_OUTCOMES[t]]
        return RedirectResponse(
            url=f"{back}&payment_id={pid}&collection_id={pid}",
            status_code=HTTP_303_SEE_OTHER,
        )

    return app


def app_from_env() -> FastAPI:
    """uvicorn dailyplate.server:app_from_env --factory"""
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        configure_logging()
        logger.critical("config.missing", error=str(e))
        sys.exit(1)
    return create_app(settings)


__all__ = ["create_app", "app_from_env", "order_json"]
