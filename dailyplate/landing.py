"""
What a payment landing page shows after the redirect back from the
processor. The redirect itself proves nothing: the page kind only decides
where to send the viewer once the stored status is known.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

from .helpers import cents_to_reais, to_iso
from .model.orm import PAID, CANCELED

SUCCESS = "sucesso"
PENDING_PAGE = "pendente"
FAILURE = "falha"
PAGES = (SUCCESS, PENDING_PAGE, FAILURE)


@dataclass(frozen=True)
class LandingView:
    state: str  # paid | canceled | waiting | denied | not_found
    redirect: Optional[str] = None
    retry_after: Optional[float] = None
    order: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def poll_delay(tries: int) -> float:
    """Seconds before poll number `tries` (0 = first load)."""
    if tries <= 0:
        return 0.0
    if tries < 5:
        return 2.0
    if tries < 20:
        return 3.0
    return 4.5


def page_url(page: str, order_id: str) -> str:
    return f"/pagamento/{page}?order={quote(order_id, safe='')}"


def resolve_landing(
    page: str,
    order: Optional[Mapping[str, Any]],
    viewer_id: Optional[str],
    tries: int = 0,
) -> LandingView:
    if order is None:
        return LandingView("not_found")
    if viewer_id is None or str(order.get("user_id")) != str(viewer_id):
        return LandingView("denied")

    summary = {
        "id": order["id"],
        "status": order["status"],
        "total": cents_to_reais(order.get("total")),
        "mp_payment_id": order.get("mp_payment_id"),
        "created_at": to_iso(order.get("created_at")),
    }
    status = order["status"]
    if status == PAID:
        redirect = None if page == SUCCESS else page_url(SUCCESS, order["id"])
        return LandingView("paid", redirect, None, summary)
    if status == CANCELED:
        redirect = None if page == FAILURE else page_url(FAILURE, order["id"])
        return LandingView("canceled", redirect, None, summary)
    return LandingView("waiting", None, poll_delay(tries + 1), summary)
