import random
from decimal import Decimal

from pos_desktop.models import CartLine
from pos_desktop.pricing import calc_totals, line_vat_cents


def _sale(qty, price, vat="0", **kw):
    return CartLine(kind="SALE", qty=qty, price_cents=price, vat_rate=vat, **kw)


def test_sale_total_is_sum_of_qty_times_price():
    t = calc_totals([_sale(3, 450), _sale(1, 99)])
    assert t.sale_total_cents == 1350 + 99


def test_vat_is_rounded_per_line_not_on_the_sum():
    t = calc_totals([_sale(1, 100, 7.7), _sale(1, 100, 2.6)])
    assert t.vat_total_cents == 11


def test_vat_rate_float_keeps_its_decimal_value():
    line = _sale(1, 100, 7.7)
    assert line.vat_rate == Decimal("7.7")
    assert line_vat_cents(line) == 8


def test_deposit_refund_nets_out():
    lines = [
        _sale(1, 300),
        CartLine(kind="DEPOSIT_CHARGE", qty=1, deposit_cents=500),
        CartLine(kind="DEPOSIT_REFUND", qty=1, deposit_cents=-500),
    ]
    t = calc_totals(lines)
    assert t.deposit_total_cents == 0
    assert t.grand_total_cents == 300


def test_deposit_lines_do_not_count_as_sales_or_vat():
    lines = [CartLine(kind="DEPOSIT_CHARGE", qty=2, price_cents=999, deposit_cents=500, vat_rate=8.1)]
    t = calc_totals(lines)
    assert t.sale_total_cents == 0
    assert t.vat_total_cents == 0
    assert t.deposit_total_cents == 1000


def test_empty_cart_is_all_zero():
    t = calc_totals([])
    assert t.model_dump() == {
        "sale_total_cents": 0,
        "deposit_total_cents": 0,
        "vat_total_cents": 0,
        "grand_total_cents": 0,
    }


def test_coffee_example():
    cart = [CartLine(kind="SALE", product_id="p1", name="Coffee", qty=2, price_cents=450, deposit_cents=0, vat_rate=2.6)]
    t = calc_totals(cart)
    assert t.model_dump() == {
        "sale_total_cents": 900,
        "deposit_total_cents": 0,
        "vat_total_cents": 23,
        "grand_total_cents": 900,
    }


def test_grand_total_identity_for_random_carts():
    rng = random.Random(20261019)
    rates = ["0", "2.6", "3.8", "7.7", "8.1"]
    for _ in range(500):
        lines = []
        for _ in range(rng.randint(0, 12)):
            kind = rng.choice(["SALE", "SALE", "DEPOSIT_CHARGE", "DEPOSIT_REFUND"])
            if kind == "SALE":
                lines.append(_sale(rng.randint(1, 5), rng.randint(0, 5000), rng.choice(rates)))
            elif kind == "DEPOSIT_CHARGE":
                lines.append(CartLine(kind=kind, qty=rng.randint(1, 3), deposit_cents=rng.choice([100, 200, 500])))
            else:
                lines.append(CartLine(kind=kind, qty=rng.randint(1, 3), deposit_cents=-rng.choice([100, 200, 500])))
        t = calc_totals(lines)
        assert t.grand_total_cents == t.sale_total_cents + t.deposit_total_cents
        assert t.sale_total_cents == sum(l.qty * l.price_cents for l in lines if l.kind == "SALE")
