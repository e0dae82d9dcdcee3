from decimal import Decimal

from pos_desktop.models import CartLine
from pos_desktop.pricing import calc_totals
from pos_desktop.receipt import RECEIPT_WIDTH, format_cents, render_receipt


def _cart():
    return [
        CartLine(kind="SALE", product_id="p1", name="Coffee", qty=2, price_cents=450, vat_rate=2.6),
        CartLine(kind="SALE", product_id="p2", name="Bratwurst mit Senf und Brot", qty=1, price_cents=1250, vat_rate=8.1),
        CartLine(kind="DEPOSIT_CHARGE", name="Pfand", qty=1, deposit_cents=500),
        CartLine(kind="DEPOSIT_REFUND", name="Deposit Refund", qty=1, deposit_cents=-500),
    ]


def _amount(text, label):
    assert text.startswith(label)
    value = text.rsplit(" ", 2)[-2]
    return int((Decimal(value) * 100).to_integral_value())


def test_format_cents_has_two_decimals():
    assert format_cents(0) == "0.00"
    assert format_cents(5) == "0.05"
    assert format_cents(1350) == "13.50"
    assert format_cents(-500) == "-5.00"


def test_total_line_matches_calc_totals():
    cart = _cart()
    totals = calc_totals(cart)
    rows = render_receipt(cart)
    texts = [r.text for r in rows if r.type == "text"]
    by_label = {t.split(":")[0]: t for t in texts if ":" in t}
    assert _amount(by_label["Total"], "Total:") == totals.grand_total_cents
    assert _amount(by_label["Sales"], "Sales:") == totals.sale_total_cents
    assert _amount(by_label["Deposits"], "Deposits:") == totals.deposit_total_cents
    assert _amount(by_label["VAT"], "VAT:") == totals.vat_total_cents


def test_layout_and_width():
    rows = render_receipt(_cart(), footer_qr="order:123", pager_number="7")
    assert rows[0].type == "title" and rows[0].text == "KASSE"
    assert rows[1].text == "Pager 7"
    assert rows[2].type == "hr"
    assert rows[-1].type == "qr" and rows[-1].data == "order:123"
    for r in rows:
        if r.type == "text":
            assert len(r.text) <= RECEIPT_WIDTH
    item_rows = [r.text for r in rows[3:7]]
    assert item_rows[0].startswith("Coffee x2")
    assert item_rows[0].endswith("9.00 CHF")
    assert item_rows[2].startswith("Deposit x1")
    assert item_rows[3].startswith("Deposit Refund x1")
    assert item_rows[3].endswith("-5.00 CHF")


def test_no_qr_line_without_footer():
    rows = render_receipt(_cart())
    assert all(r.type != "qr" for r in rows)
    assert all(not (r.text or "").startswith("Pager") for r in rows)
