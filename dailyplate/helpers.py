import time
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def only_digits(value) -> str:
    return re.sub(r"\D", "", str(value if value is not None else ""))


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def parse_money_cents(value, default: int = 0) -> int:
    """'7.00' / 7 / '7,50' -> cents. Unparseable or negative -> default."""
    if value is None or value == "":
        return default
    try:
        amount = Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation:
        return default
    if not amount.is_finite() or amount < 0:
        return default
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_reais(cents: int | None) -> float:
    return round((cents or 0) / 100, 2)
