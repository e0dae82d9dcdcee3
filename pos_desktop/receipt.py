from __future__ import annotations

from typing import Iterable, Optional

from .models import CartLine, ReceiptLine
from .pricing import calc_totals

RECEIPT_WIDTH = 32

_LINE_LABELS = {
    "DEPOSIT_CHARGE": "Deposit",
    "DEPOSIT_REFUND": "Deposit Refund",
}


def format_cents(cents: int) -> str:
    """Integer cents as a fixed two-decimal string, e.g. -1350 -> "-13.50"."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{sign}{whole}.{frac:02d}"


def _columns(label: str, amount: str, width: int) -> str:
    room = max(1, width - len(amount) - 1)
    if len(label) > room:
        label = label[:room]
    return f"{label:<{room}} {amount}"


def render_receipt(
    lines: Iterable[CartLine],
    footer_qr: Optional[str] = None,
    *,
    title: str = "KASSE",
    currency: str = "CHF",
    pager_number: Optional[str] = None,
    width: int = RECEIPT_WIDTH,
) -> list[ReceiptLine]:
    lines = list(lines)
    totals = calc_totals(lines)

    rows = [ReceiptLine(type="title", text=title)]
    if pager_number:
        rows.append(ReceiptLine(type="text", text=f"Pager {pager_number}"))
    rows.append(ReceiptLine(type="hr"))
    for l in lines:
        label = l.name if l.kind == "SALE" else _LINE_LABELS[l.kind]
        unit = l.price_cents if l.kind == "SALE" else l.deposit_cents
        amount = f"{format_cents(unit * l.qty)} {currency}"
        rows.append(ReceiptLine(type="text", text=_columns(f"{label} x{l.qty}", amount, width)))
    rows.append(ReceiptLine(type="hr"))
    for label, cents in (
        ("Sales:", totals.sale_total_cents),
        ("Deposits:", totals.deposit_total_cents),
        ("VAT:", totals.vat_total_cents),
        ("Total:", totals.grand_total_cents),
    ):
        rows.append(ReceiptLine(type="text", text=_columns(label, f"{format_cents(cents)} {currency}", width)))
    if footer_qr:
        rows.append(ReceiptLine(type="qr", data=footer_qr))
    return rows
