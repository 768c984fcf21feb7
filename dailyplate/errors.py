from typing import Any, Dict, Optional


class DailyPlateError(Exception):
    """Base for errors that are answered to the caller as JSON."""
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None,
                 **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra

    def body(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class ValidationFailed(DailyPlateError):
    status_code = 400


class Unauthenticated(DailyPlateError):
    status_code = 401


class Forbidden(DailyPlateError):
    status_code = 403


class NotFound(DailyPlateError):
    status_code = 404


class Conflict(DailyPlateError):
    status_code = 409


class CapacityNotConfigured(DailyPlateError):
    status_code = 400

    def __init__(self, product_id: int, day: int) -> None:
        super().__init__(
            f"capacity not configured for product {product_id} on day {day}",
            product_id=product_id,
        )
        self.product_id = product_id
        self.day = day


class CapacityExceeded(DailyPlateError):
    status_code = 409

    def __init__(self, product_id: int, remaining: int) -> None:
        super().__init__(
            f"limit exceeded for product {product_id} on this day. "
            f"Remaining: {remaining}",
            product_id=product_id,
            remaining=remaining,
        )
        self.product_id = product_id
        self.remaining = remaining


class ProcessorRejected(DailyPlateError):
    status_code = 400

    def __init__(self, message: str, payload: Any) -> None:
        super().__init__(message, mp=payload)
        self.payload = payload


class ProcessorUnavailable(DailyPlateError):
    status_code = 502


# ----------------------------
# Not answered directly: the webhook pipeline turns these into
# "ignored" acknowledgements.
# ----------------------------
class PaymentNotYetVisible(Exception):
    def __init__(self, payment_id: str, attempts: int) -> None:
        super().__init__(
            f"payment {payment_id} still not found after {attempts} attempts"
        )
        self.payment_id = payment_id
        self.attempts = attempts


class UpstreamFetchError(Exception):
    def __init__(self, payment_id: str, status: Optional[int],
                 data: Any = None) -> None:
        super().__init__(
            f"fetching payment {payment_id} failed (status={status})"
        )
        self.payment_id = payment_id
        self.status = status
        self.data = data


class ConfigError(RuntimeError):
    pass
