from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import itertools
import time
import uuid

import httpx

from .config import Settings


# ----------------------------
# Payment Processor Interface
# ----------------------------
@dataclass
class ProcessorResponse:
    status: int
    data: Any = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class PaymentProcessor(ABC):
    # POST /checkout/preferences
    @abstractmethod
    async def create_preference(
        self, payload: Dict[str, Any]
    ) -> ProcessorResponse: ...

    # GET /v1/payments/{id}; 404 right after a notification is normal
    @abstractmethod
    async def get_payment(self, payment_id: str) -> ProcessorResponse: ...


def _json_or_empty(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return {}


# ----------------------------
# Mercado Pago implementation
# ----------------------------
class MercadoPago(PaymentProcessor):

    def __init__(self, http: httpx.AsyncClient, access_token: str,
                 api_url: str = "https://api.mercadopago.com") -> None:
        self.http = http
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def create_preference(
        self, payload: Dict[str, Any]
    ) -> ProcessorResponse:
        r = await self.http.post(
            f"{self.api_url}/checkout/preferences",
            json=payload,
            headers=self._headers(),
        )
        return ProcessorResponse(r.status_code, _json_or_empty(r))

    async def get_payment(self, payment_id: str) -> ProcessorResponse:
        r = await self.http.get(
            f"{self.api_url}/v1/payments/{payment_id}",
            headers={**self._headers(), "Cache-Control": "no-store"},
        )
        return ProcessorResponse(r.status_code, _json_or_empty(r))


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentProcessor):
    """In-memory processor for local runs. Preferences and payments live
    in this process only; notifications are posted by the /mockpay routes.
    """

    def __init__(self, base_url: str = "http://localhost:8000") -> None:
        self.base_url = base_url.rstrip("/")
        self.preferences: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(int(time.time()) * 1000)

    async def create_preference(
        self, payload: Dict[str, Any]
    ) -> ProcessorResponse:
        if not payload.get("items"):
            return ProcessorResponse(400, {
                "message": "items needed", "error": "bad_request",
                "status": 400,
            })
        pref_id = f"mock-{uuid.uuid4().hex}"
        self.preferences[pref_id] = dict(payload)
        url = f"{self.base_url}/mockpay/{pref_id}"
        return ProcessorResponse(201, {
            "id": pref_id,
            "init_point": url,
            "sandbox_init_point": url,
            "external_reference": payload.get("external_reference"),
        })

    async def get_payment(self, payment_id: str) -> ProcessorResponse:
        pay = self.payments.get(str(payment_id))
        if pay is None:
            return ProcessorResponse(404, {
                "message": "Payment not found", "error": "not_found",
                "status": 404,
            })
        return ProcessorResponse(200, dict(pay))

    def add_payment(self, external_reference: Optional[str], status: str,
                    payment_id: Optional[str] = None) -> Dict[str, Any]:
        pid = str(payment_id or next(self._ids))
        self.payments[pid] = {
            "id": int(pid),
            "status": status,
            "status_detail": f"mock_{status}",
            "external_reference": external_reference,
            "date_created": time.strftime("%Y-%m-%dT%H:%M:%S"),
        }
        return self.payments[pid]

    def pay_preference(self, pref_id: str, status: str) -> Dict[str, Any]:
        pref = self.preferences[pref_id]
        return self.add_payment(pref.get("external_reference"), status)

    def set_status(self, payment_id: str, status: str) -> None:
        self.payments[str(payment_id)]["status"] = status


def new_processor(settings: Settings,
                  http: httpx.AsyncClient) -> PaymentProcessor:
    if settings.processor_backend == "mock":
        return MockPay(settings.base_url)
    return MercadoPago(http, settings.mp_access_token or "",
                       settings.mp_api_url)
