from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from .models import CartLine, Totals

DEPOSIT_KINDS = {"DEPOSIT_CHARGE", "DEPOSIT_REFUND"}


def line_vat_cents(line: CartLine) -> int:
    # VAT is included in the price; round each line on its own, never the sum.
    raw = Decimal(line.qty * line.price_cents) * Decimal(line.vat_rate) / Decimal(100)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calc_totals(lines: Iterable[CartLine]) -> Totals:
    """
    Totals for a cart. Refund lines carry negative deposit_cents so deposits net
    out on their own; no validation is done on signs or quantities.
    """
    lines = list(lines)
    sale_total_cents = sum(l.qty * l.price_cents for l in lines if l.kind == "SALE")
    deposit_total_cents = sum(l.qty * l.deposit_cents for l in lines if l.kind in DEPOSIT_KINDS)
    vat_total_cents = sum(line_vat_cents(l) for l in lines if l.kind == "SALE")
    return Totals(
        sale_total_cents=sale_total_cents,
        deposit_total_cents=deposit_total_cents,
        vat_total_cents=vat_total_cents,
        grand_total_cents=sale_total_cents + deposit_total_cents,
    )
