from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(Enum):
    VALIDATION = ("validation_error", 400)
    ORDER_NOT_FOUND = ("order_not_found", 404)
    ATTEMPT_NOT_FOUND = ("attempt_not_found", 404)
    AMOUNT_MISMATCH = ("amount_mismatch", 400)
    ALREADY_PAID = ("already_paid", 409)
    PAYMENT_IN_PROGRESS = ("payment_in_progress", 409)
    PAYMENT_CLOSED = ("payment_closed", 409)
    ILLEGAL_TRANSITION = ("illegal_transition", 409)
    REFUND_NOT_ALLOWED = ("refund_not_allowed", 409)
    GATEWAY_REJECTED = ("gateway_rejected", 400)
    GATEWAY_ERROR = ("gateway_error", 502)
    GATEWAY_TIMEOUT = ("gateway_timeout", 503)

    def __init__(self, code, http_status):
        self.code = code
        self.http_status = http_status


@dataclass(frozen=True)
class PaymentError:
    kind: ErrorKind
    message: str
    detail: dict = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.GATEWAY_ERROR, ErrorKind.GATEWAY_TIMEOUT)

    def as_json(self) -> dict:
        body = {"ok": False, "error": self.kind.code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        if self.retryable:
            body["retryable"] = True
        return body
