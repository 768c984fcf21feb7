#!/usr/bin/env python3
"""
DailyPlate order watcher (async)

Does what a payment landing page does after the processor redirects back:
  1) GET /api/orders/{order_id}/status?page=...&tries=n
  2) follow the server's `redirect` (switches page) or wait `retry_after`
  3) stop at a settled state (paid / canceled / denied / not_found)

The schedule comes from the server (immediately, ~2s, ~3s, then ~4.5s,
unbounded). Cancel the task to stop watching.

Usage:
  python -m dailyplate.poll_client --base http://localhost:8000 \
      --order <order_id> --token <access_token> --page pendente
"""

import asyncio
import argparse
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urlparse

import httpx

from .landing import PAGES, PENDING_PAGE

SETTLED = ("paid", "canceled", "denied", "not_found")


@dataclass
class WatchResult:
    state: str  # paid/canceled/denied/not_found/TIMEOUT
    page: str
    polls: int = 0
    elapsed_s: float = 0.0
    pages_seen: List[str] = field(default_factory=list)
    order: Optional[dict] = None


def _page_from_redirect(redirect: str, current: str) -> str:
    # "/pagamento/sucesso?order=..." -> "sucesso"
    path = urlparse(redirect).path.rstrip("/")
    page = path.rsplit("/", 1)[-1]
    return page if page in PAGES else current


async def watch_order(
    client: httpx.AsyncClient,
    base: str,
    order_id: str,
    token: str,
    page: str = PENDING_PAGE,
    max_polls: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> WatchResult:
    t0 = time.perf_counter()
    res = WatchResult(state="TIMEOUT", page=page, pages_seen=[page])
    headers = {"Authorization": f"Bearer {token}"}
    tries = 0

    while max_polls is None or res.polls < max_polls:
        g = await client.get(
            f"{base}/api/orders/{order_id}/status",
            params={"page": res.page, "tries": tries},
            headers=headers,
            timeout=10.0,
        )
        res.polls += 1
        try:
            view = g.json()
        except ValueError:
            view = {}

        if g.status_code in (403, 404):
            res.state = view.get("state") or (
                "denied" if g.status_code == 403 else "not_found"
            )
            break
        if g.status_code != 200:
            # transient server trouble: keep polling on the slow cadence
            tries += 1
            await sleep(3.0)
            continue

        res.order = view.get("order")
        state = view.get("state", "waiting")
        if view.get("redirect"):
            res.page = _page_from_redirect(view["redirect"], res.page)
            res.pages_seen.append(res.page)
        if state in SETTLED:
            res.state = state
            break

        tries += 1
        await sleep(float(view.get("retry_after") or 0.0))

    res.elapsed_s = time.perf_counter() - t0
    return res


def main():
    ap = argparse.ArgumentParser(description="DailyPlate order watcher")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--order", required=True, help="Order id")
    ap.add_argument("--token", required=True,
                    help="Bearer access token of the order owner")
    ap.add_argument("--page", default=PENDING_PAGE, choices=PAGES,
                    help="Landing page the processor redirected to")
    ap.add_argument("--max-polls", type=int, default=None,
                    help="Give up after this many polls")
    args = ap.parse_args()

    async def _run():
        async with httpx.AsyncClient(
            headers={"User-Agent": "DailyPlateWatch/1.0"}
        ) as client:
            return await watch_order(client, args.base.rstrip("/"),
                                     args.order, args.token, args.page,
                                     args.max_polls)

    r = asyncio.run(_run())
    print(
        f"state: {r.state}   page: {r.page}   polls: {r.polls}   "
        f"elapsed: {r.elapsed_s:.1f}s"
    )
    if r.order:
        print(f"order: {r.order}")


if __name__ == "__main__":
    main()
