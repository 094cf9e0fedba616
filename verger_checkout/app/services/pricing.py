# app/services/pricing.py
"""
Checkout validation and server-side totals.

Everything here is pure: no I/O, no side effects. The orchestrator calls
`normalize_checkout` before touching any store or processor, so a rejected
request never leaves anything behind.
"""
from __future__ import annotations

import math
import re
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import AmountMismatchError, ValidationError
from ..schemas.checkout import CheckoutRequest
from ..schemas.orders import (
    CustomerSnapshot,
    DeliveryAddress,
    OrderDraft,
    OrderLine,
    PaymentMethod,
    PickupLocation,
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-.()]")
PICKUP_TYPES = ("store", "delivery")
CURRENCIES = ("EUR", "USD", "GBP", "CAD")

MAX_ITEMS = 50
MAX_ITEM_NAME = 127
MAX_QUANTITY = 100
MIN_PRICE, MAX_PRICE = 0.01, 1000.0
MIN_AMOUNT, MAX_AMOUNT = 0.01, 10000.0
MIN_NAME, MAX_NAME = 2, 100


def _round2(v: float) -> float:
    return round(float(v), 2)


def _clean(s: Optional[str]) -> str:
    return (s or "").strip()


def _finite(v: Optional[float]) -> bool:
    return v is not None and math.isfinite(float(v))


def parse_quantity(raw: Optional[float], idx: int) -> int:
    """Whole number of units between 1 and MAX_QUANTITY; `idx` is 1-based."""
    if not _finite(raw) or float(raw) != int(raw) or not 1 <= int(raw) <= MAX_QUANTITY:
        raise ValidationError(
            f"Article {idx}: quantité invalide", field=f"items[{idx - 1}].quantity"
        )
    return int(raw)


def is_valid_phone(phone: str) -> bool:
    """International (+ and 7-15 digits), French national (0 + 9 digits) or 8-15 bare digits."""
    cleaned = PHONE_SEPARATORS_RE.sub("", phone)
    if cleaned.startswith("+"):
        rest = cleaned[1:]
        return rest.isdigit() and 7 <= len(rest) <= 15
    if cleaned.startswith("0"):
        return re.fullmatch(r"0\d{9}", cleaned) is not None
    return cleaned.isdigit() and 8 <= len(cleaned) <= 15


def compute_totals(
    lines: Iterable[Tuple[float, int]],
    delivery_fee: float = 0.0,
    discount_amount: float = 0.0,
) -> Dict[str, float]:
    """
    Σ(price × qty) + fee − discount, every figure rounded to 2 decimals.
    `lines` is an iterable of (unit price, quantity) pairs.
    """
    items_total = _round2(sum(float(p) * int(q) for p, q in lines))
    fee = _round2(delivery_fee or 0)
    discount = _round2(discount_amount or 0)
    return {
        "itemsTotal": items_total,
        "deliveryFee": fee,
        "discountAmount": discount,
        "total": _round2(items_total + fee - discount),
    }


def check_declared_total(computed: float, declared: Optional[float], tolerance: float = 0.01) -> None:
    if declared is None:
        raise ValidationError("Montant total manquant", field="amount")
    if not _finite(declared):
        raise ValidationError("Montant total invalide", field="amount")
    # tiny epsilon so 0.01 apart on the wire does not trip on float noise
    if abs(computed - float(declared)) > tolerance + 1e-9:
        raise AmountMismatchError(computed=computed, declared=float(declared))


def _normalize_lines(body: CheckoutRequest, currency: str) -> List[OrderLine]:
    if not body.items:
        raise ValidationError("Le panier est vide", field="items")
    if len(body.items) > MAX_ITEMS:
        raise ValidationError(
            f"Le panier ne peut pas contenir plus de {MAX_ITEMS} articles", field="items"
        )

    lines: List[OrderLine] = []
    for idx, it in enumerate(body.items, start=1):
        if not _clean(it.productId) or not _clean(it.name):
            raise ValidationError(
                f"Article {idx}: champs requis manquants", field=f"items[{idx - 1}]"
            )
        if len(_clean(it.name)) > MAX_ITEM_NAME:
            raise ValidationError(
                f"Article {idx}: nom trop long", field=f"items[{idx - 1}].name"
            )
        quantity = parse_quantity(it.quantity, idx)
        if not _finite(it.price) or not MIN_PRICE <= float(it.price) <= MAX_PRICE:
            raise ValidationError(
                f"Article {idx}: prix invalide", field=f"items[{idx - 1}].price"
            )
        price = _round2(it.price)
        lines.append(OrderLine(
            productId=_clean(it.productId),
            variantId=_clean(it.variantId) or None,
            name=_clean(it.name),
            unit=_clean(it.unit),
            quantity=quantity,
            price=price,
            currency=(_clean(it.currency) or currency).upper(),
            total=_round2(price * quantity),
        ))
    return lines


def _normalize_customer(body: CheckoutRequest) -> CustomerSnapshot:
    c = body.customer
    if c is None or not _clean(c.email) or not _clean(c.phone) or not _clean(c.fullName):
        raise ValidationError("Informations client manquantes", field="customer")
    email = _clean(c.email).lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Format d'email invalide", field="customer.email")
    if not MIN_NAME <= len(_clean(c.fullName)) <= MAX_NAME:
        raise ValidationError(
            f"Le nom doit contenir entre {MIN_NAME} et {MAX_NAME} caractères", field="customer.fullName"
        )
    if not is_valid_phone(_clean(c.phone)):
        raise ValidationError("Numéro de téléphone invalide", field="customer.phone")
    return CustomerSnapshot(fullName=_clean(c.fullName), email=email, phone=_clean(c.phone))


def _normalize_fulfillment(
    body: CheckoutRequest, require_time_slot: bool
) -> Tuple[str, Optional[PickupLocation], Optional[DeliveryAddress], Optional[str]]:
    pickup_type = _clean(body.pickupType)
    if pickup_type not in PICKUP_TYPES:
        raise ValidationError("Type de retrait invalide", field="pickupType")

    if pickup_type == "store":
        loc = body.pickupLocationDetails
        if loc is None or not (_clean(loc.id) and _clean(loc.name) and _clean(loc.address)):
            raise ValidationError("Informations du magasin manquantes", field="pickupLocationDetails")
        return pickup_type, PickupLocation(
            id=_clean(loc.id),
            name=_clean(loc.name),
            address=_clean(loc.address),
            description=_clean(loc.description) or None,
        ), None, None

    addr = body.deliveryAddress
    if addr is None or not (_clean(addr.street) and _clean(addr.city)):
        raise ValidationError("Adresse de livraison manquante", field="deliveryAddress")
    slot = _clean(body.deliveryTime) or None
    if require_time_slot and not slot:
        raise ValidationError("Créneau de livraison manquant", field="deliveryTime")
    return pickup_type, None, DeliveryAddress(
        street=_clean(addr.street),
        city=_clean(addr.city),
        postalCode=_clean(addr.postalCode) or None,
        country=(_clean(addr.country) or None),
    ), slot


def parse_payment_method(raw: Optional[str], allowed: Iterable[PaymentMethod]) -> PaymentMethod:
    # the storefront historically sent processor names
    aliases = {"stripe": "card", "paypal": "wallet", "especes": "cash", "espèces": "cash"}
    value = _clean(raw).lower() or "card"
    value = aliases.get(value, value)
    try:
        method = PaymentMethod(value)
    except ValueError:
        raise ValidationError("Mode de paiement invalide", field="paymentMethod") from None
    if method not in set(allowed):
        raise ValidationError("Mode de paiement invalide", field="paymentMethod")
    return method


def normalize_checkout(
    body: CheckoutRequest,
    *,
    allowed_methods: Iterable[PaymentMethod],
    default_currency: str = "EUR",
    require_delivery_time_slot: bool = False,
    tolerance: float = 0.01,
) -> OrderDraft:
    """
    Validate a checkout request and return the normalized draft with
    server-computed totals. Raises ValidationError / AmountMismatchError.
    """
    currency = (_clean(body.currency) or default_currency).upper()
    if currency not in CURRENCIES:
        raise ValidationError("Devise non prise en charge", field="currency")
    lines = _normalize_lines(body, currency)
    customer = _normalize_customer(body)
    pickup_type, location, address, slot = _normalize_fulfillment(body, require_delivery_time_slot)
    method = parse_payment_method(body.paymentMethod, allowed_methods)

    if not _finite(body.deliveryFee) or body.deliveryFee < 0:
        raise ValidationError("Frais de livraison invalides", field="deliveryFee")
    if not _finite(body.discountAmount) or body.discountAmount < 0:
        raise ValidationError("Remise invalide", field="discountAmount")

    totals = compute_totals(
        ((li.price, li.quantity) for li in lines),
        delivery_fee=body.deliveryFee,
        discount_amount=body.discountAmount,
    )
    if not MIN_AMOUNT <= totals["total"] <= MAX_AMOUNT:
        raise ValidationError("Montant total invalide", field="amount")
    check_declared_total(totals["total"], body.amount, tolerance)

    return OrderDraft(
        items=lines,
        customer=customer,
        pickupType=pickup_type,
        pickupLocation=location,
        deliveryAddress=address,
        deliveryTime=slot,
        deliveryFee=totals["deliveryFee"],
        discountCode=_clean(body.discountCode) or None,
        discountAmount=totals["discountAmount"],
        amount=totals["total"],
        currency=currency,
        paymentMethod=method,
        notes=_clean(body.notes) or None,
    )


def verify_against_catalog(draft: OrderDraft, catalog_prices: Dict[Tuple[str, Optional[str]], Dict]) -> None:
    """Reject lines whose unit price differs from the catalog variant price."""
    for idx, li in enumerate(draft.items, start=1):
        entry = catalog_prices.get((li.productId, li.variantId))
        if entry is None:
            raise ValidationError(
                f"Article {idx}: produit introuvable", field=f"items[{idx - 1}].productId"
            )
        if abs(float(entry["price"]) - li.price) > 0.001:
            raise ValidationError(
                f"Article {idx}: le prix a changé", field=f"items[{idx - 1}].price"
            )
