# app/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base for every error the checkout core raises on purpose."""

    status_code = 500
    code = "checkout_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.field:
            out["field"] = self.field
        return out


class ValidationError(CheckoutError):
    status_code = 400
    code = "validation_error"


class AmountMismatchError(ValidationError):
    code = "amount_mismatch"

    def __init__(self, computed: float, declared: float):
        super().__init__(
            f"Montant incohérent: calculé {computed:.2f}, reçu {declared:.2f}",
            field="amount",
        )
        self.computed = computed
        self.declared = declared


class ProcessorError(CheckoutError):
    status_code = 502
    code = "processor_error"


class ProcessorAuthError(ProcessorError):
    code = "processor_auth_error"


class NotFoundError(CheckoutError):
    status_code = 404
    code = "not_found"


class StateConflictError(CheckoutError):
    """The remote session exists but is not in a capturable state."""

    status_code = 422
    code = "state_conflict"

    def __init__(self, message: str, reason: str, remote_status: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.remote_status = remote_status

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["reason"] = self.reason
        if self.remote_status:
            out["remoteStatus"] = self.remote_status
        return out


class SignatureError(CheckoutError):
    status_code = 400
    code = "signature_error"


class OrderConflictError(CheckoutError):
    """Admin transition refused because the order moved or violates an invariant."""

    status_code = 409
    code = "order_conflict"
