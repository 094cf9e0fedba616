# app/schemas/checkout.py
from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field

# Request bodies are deliberately loose: services.pricing owns the rules and
# answers with field-level messages the storefront can display as-is.


class CheckoutItemIn(BaseModel):
    productId: Optional[str] = None
    variantId: Optional[str] = None
    name: Optional[str] = None
    unit: Optional[str] = Field(default=None, validation_alias=AliasChoices("unit", "variantUnit"))
    quantity: Optional[float] = None
    price: Optional[float] = None
    currency: Optional[str] = None


class CustomerIn(BaseModel):
    fullName: Optional[str] = Field(default=None, validation_alias=AliasChoices("fullName", "name"))
    email: Optional[str] = None
    phone: Optional[str] = None


class PickupLocationIn(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    description: Optional[str] = None


class DeliveryAddressIn(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[CheckoutItemIn] = Field(default_factory=list)
    customer: Optional[CustomerIn] = None
    pickupType: Optional[str] = None
    pickupLocationDetails: Optional[PickupLocationIn] = Field(
        default=None, validation_alias=AliasChoices("pickupLocationDetails", "pickupLocation")
    )
    deliveryAddress: Optional[DeliveryAddressIn] = None
    deliveryTime: Optional[str] = None
    deliveryFee: float = 0.0
    discountCode: Optional[str] = None
    discountAmount: float = 0.0
    amount: Optional[float] = None
    currency: Optional[str] = None
    paymentMethod: Optional[str] = "card"
    notes: Optional[str] = None


class CheckoutCreated(BaseModel):
    remoteSessionId: str
    paymentMethod: str
    amount: float
    currency: str
    clientSecret: Optional[str] = None
    approvalUrl: Optional[str] = None


class CaptureIn(BaseModel):
    # PayPal sends the order id back as ?token=... on the return URL
    remoteSessionId: str = Field(validation_alias=AliasChoices("remoteSessionId", "token"))


class CaptureOut(BaseModel):
    success: bool
    orderId: Optional[str] = None
    status: str
    remoteSessionId: str


class OrderStatusOut(BaseModel):
    orderId: str
    status: str
    amount: float
    currency: str
    remoteSessionId: Optional[str] = None
    delivered: bool
    pickupType: str


class WebhookAck(BaseModel):
    received: bool = True
    handled: Optional[str] = None
