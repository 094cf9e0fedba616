# app/schemas/orders.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

PickupType = Literal["store", "delivery"]


class PaymentMethod(str, Enum):
    card = "card"
    wallet = "wallet"
    cash = "cash"


class OrderStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    cancelled = "cancelled"


class OrderLine(BaseModel):
    productId: str
    variantId: Optional[str] = None
    name: str
    unit: str = ""
    quantity: int
    price: float
    currency: str = "EUR"
    total: float


class CustomerSnapshot(BaseModel):
    fullName: str
    email: str
    phone: str


class PickupLocation(BaseModel):
    id: str
    name: str
    address: str
    description: Optional[str] = None


class DeliveryAddress(BaseModel):
    street: str
    city: str
    postalCode: Optional[str] = None
    country: Optional[str] = None


class OrderDraft(BaseModel):
    """Everything an order carries before the store gives it an identity."""

    items: List[OrderLine]
    customer: CustomerSnapshot
    pickupType: PickupType
    pickupLocation: Optional[PickupLocation] = None
    deliveryAddress: Optional[DeliveryAddress] = None
    deliveryTime: Optional[str] = None
    deliveryFee: float = 0.0
    discountCode: Optional[str] = None
    discountAmount: float = 0.0
    amount: float
    currency: str = "EUR"
    paymentMethod: PaymentMethod
    notes: Optional[str] = None

    @property
    def items_total(self) -> float:
        return round(sum(li.total for li in self.items), 2)

    @property
    def delivered_on_creation(self) -> bool:
        # nothing to transport for a store pickup
        return self.pickupType == "store"


class PendingCheckout(OrderDraft):
    """Normalized payload parked in the pending cache until the payment is confirmed."""

    correlationId: str
    stashedAt: datetime = Field(default_factory=lambda: datetime.now().astimezone())


class Order(OrderDraft):
    id: str
    status: OrderStatus
    delivered: bool = False
    remoteSessionId: Optional[str] = None
    transactionId: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class OrderPage(BaseModel):
    items: List[Order]
    total: int
    page: int
    limit: int
