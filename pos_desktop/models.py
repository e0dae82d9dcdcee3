from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_decimal(v):
    # Go through str() so 7.7 stays 7.7 instead of its binary expansion.
    if v is None or v == "":
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


LineKind = Annotated[Literal["SALE", "DEPOSIT_CHARGE", "DEPOSIT_REFUND"], BeforeValidator(_to_upper_str)]
PrepStatus = Annotated[Literal["QUEUED", "IN_PROGRESS", "READY", "SERVED"], BeforeValidator(_to_upper_str)]
PaymentMethod = Annotated[Literal["card", "cash"], BeforeValidator(_to_lower_str)]
VatRate = Annotated[Decimal, BeforeValidator(_to_decimal)]


class CartLine(BaseModel):
    kind: LineKind
    product_id: Optional[str] = None
    # Snapshot of the product name so old receipts don't change with the catalog.
    name: str = ""
    qty: int = 1
    price_cents: int = 0
    deposit_cents: int = 0
    vat_rate: VatRate = Decimal("0")
    prep_status: Optional[PrepStatus] = None


class Totals(BaseModel):
    sale_total_cents: int
    deposit_total_cents: int
    vat_total_cents: int
    grand_total_cents: int


class Product(BaseModel):
    id: str
    name: str
    price_cents: int = 0
    deposit_cents: int = 0
    vat_rate: VatRate = Decimal("0")
    is_kitchen_item: bool = False
    category_id: Optional[str] = None
    active: bool = True


class PaymentIn(BaseModel):
    method: PaymentMethod
    amount_cents: int
    provider: Optional[str] = None
    provider_tx_id: Optional[str] = None
    status: str = "captured"


class OrderMeta(BaseModel):
    tenant_id: Optional[str] = None
    outlet_id: Optional[str] = None
    pager_number: Optional[str] = None
    staff: Optional[str] = None


class OrderSummary(BaseModel):
    id: str
    opened_at: str
    closed_at: Optional[str] = None
    status: str
    total_cents: int
    vat_total_cents: int
    pager_number: Optional[str] = None
    outlet_id: Optional[str] = None


class OutboxEntry(BaseModel):
    id: str
    type: str
    order_id: Optional[str] = None
    payload: dict
    created_at: str
    sent_at: Optional[str] = None
    status: str = "pending"
    attempt_count: int = 0
    next_attempt_at: Optional[str] = None
    last_error: Optional[str] = None


class ReceiptLine(BaseModel):
    type: Literal["title", "text", "hr", "qr"]
    text: Optional[str] = None
    data: Optional[str] = None
