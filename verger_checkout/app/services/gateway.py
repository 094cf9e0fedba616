# app/services/gateway.py
"""Contract shared by the card and wallet payment processors."""
from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..schemas.orders import DeliveryAddress, PaymentMethod

SUCCEEDED = "succeeded"
FAILED = "failed"
PENDING = "pending"


def new_correlation_id(prefix: str = "chk") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@dataclass
class GatewayLine:
    name: str
    unit_price: float
    quantity: int
    category: str = "PHYSICAL_GOODS"


@dataclass
class ShippingAddress:
    full_name: str
    street: str
    city: str
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_delivery(cls, full_name: str, addr: DeliveryAddress) -> "ShippingAddress":
        return cls(
            full_name=full_name,
            street=addr.street,
            city=addr.city,
            postal_code=addr.postalCode,
            country=addr.country,
        )


@dataclass
class RemoteSession:
    id: str
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class CaptureResult:
    status: str  # SUCCEEDED | FAILED | PENDING
    transaction_id: Optional[str] = None
    raw_status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    # FAILED only: the session can never be paid (cancelled, voided)
    terminal: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class PaymentGateway(abc.ABC):
    """
    One external payment processor.

    Implementations never retry on their own: a timeout or transport error
    surfaces as ProcessorError and the caller decides what happens next.
    """

    method: PaymentMethod
    name: str

    @abc.abstractmethod
    async def get_access_credential(self) -> str:
        """Short-lived (or static) credential for server-to-server calls."""

    @abc.abstractmethod
    async def create_remote_session(
        self,
        *,
        amount: float,
        currency: str,
        lines: List[GatewayLine],
        correlation_id: str,
        shipping_amount: float = 0.0,
        discount_amount: float = 0.0,
        shipping_address: Optional[ShippingAddress] = None,
        customer_email: Optional[str] = None,
    ) -> RemoteSession:
        ...

    @abc.abstractmethod
    async def get_remote_session_status(self, remote_session_id: str) -> str:
        """Processor-native status string of the remote session."""

    @abc.abstractmethod
    async def capture_remote_session(self, remote_session_id: str, correlation_id: str) -> CaptureResult:
        ...


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def money(amount: float) -> str:
    return f"{float(amount):.2f}"
