"""
Checkout: collect payment, persist locally, hand off to sync, print.

The order is persisted before the sale is reported as final. Sync runs on a
detached thread and printing comes last; a printer failure leaves the stored
order untouched.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .config import DeviceConfig
from .logs import json_log
from .models import CartLine, OrderMeta, PaymentIn, Product, ReceiptLine, Totals
from .pricing import calc_totals
from .receipt import render_receipt
from .store import OrderStore
from .sync_client import SyncClient

DEPOSIT_CENTS = 500


class CheckoutError(Exception):
    pass


class PaymentError(Exception):
    pass


class PrinterError(Exception):
    pass


@dataclass
class PaymentResult:
    amount_cents: int
    provider: Optional[str] = None
    provider_tx_id: Optional[str] = None
    status: str = "captured"


class PaymentTerminal(ABC):
    @abstractmethod
    def initialize(self) -> None:
        ...

    @abstractmethod
    def collect(self, amount_cents: int) -> PaymentResult:
        """Capture `amount_cents`; raise PaymentError when declined or unreachable."""


class PrinterDevice(ABC):
    @abstractmethod
    def print_receipt(self, lines: list[ReceiptLine]) -> None:
        """Print the receipt; raise PrinterError on connection or device failure."""


class ProductCatalog(ABC):
    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]:
        ...

    @abstractmethod
    def list_products(self) -> list[Product]:
        ...


class StaticCatalog(ProductCatalog):
    """In-process catalog snapshot with optional per-outlet price overrides."""

    def __init__(self, products: Iterable[Product], outlet_id: Optional[str] = None, outlet_prices: Optional[dict] = None):
        self._products = {p.id: p for p in products}
        self.outlet_id = outlet_id
        # {(outlet_id, product_id): price_cents}
        self.outlet_prices = dict(outlet_prices or {})

    def _priced(self, p: Product) -> Product:
        override = self.outlet_prices.get((self.outlet_id, p.id)) if self.outlet_id else None
        if override is None:
            return p
        return p.model_copy(update={"price_cents": int(override)})

    def get_product(self, product_id: str) -> Optional[Product]:
        p = self._products.get(product_id)
        if p is None or not p.active:
            return None
        return self._priced(p)

    def list_products(self) -> list[Product]:
        return sorted((self._priced(p) for p in self._products.values() if p.active), key=lambda p: p.name)


def add_product(cart: list[CartLine], product: Product) -> list[CartLine]:
    cart.append(
        CartLine(
            kind="SALE",
            product_id=product.id,
            name=product.name,
            qty=1,
            price_cents=product.price_cents,
            deposit_cents=0,
            vat_rate=product.vat_rate,
            prep_status="QUEUED" if product.is_kitchen_item else None,
        )
    )
    if product.deposit_cents:
        cart.append(
            CartLine(
                kind="DEPOSIT_CHARGE",
                name="Pfand",
                qty=1,
                price_cents=0,
                deposit_cents=product.deposit_cents,
                vat_rate=product.vat_rate,
            )
        )
    return cart


def add_deposit(cart: list[CartLine]) -> list[CartLine]:
    cart.append(CartLine(kind="DEPOSIT_CHARGE", name="Deposit", qty=1, deposit_cents=DEPOSIT_CENTS))
    return cart


def return_deposit(cart: list[CartLine]) -> list[CartLine]:
    cart.append(CartLine(kind="DEPOSIT_REFUND", name="Deposit Refund", qty=1, deposit_cents=-DEPOSIT_CENTS))
    return cart


def has_kitchen_items(cart: Iterable[CartLine]) -> bool:
    return any(l.kind == "SALE" and l.prep_status is not None for l in cart)


@dataclass
class CheckoutResult:
    order_id: str
    totals: Totals
    receipt: list[ReceiptLine]
    printed: bool
    print_error: Optional[str] = None
    durable: bool = True
    warnings: list[str] = field(default_factory=list)


class Checkout:
    def __init__(
        self,
        store: OrderStore,
        config: DeviceConfig,
        *,
        sync_client: Optional[SyncClient] = None,
        printer: Optional[PrinterDevice] = None,
        terminal: Optional[PaymentTerminal] = None,
        staff: Optional[str] = None,
    ):
        self.store = store
        self.config = config
        self.sync_client = sync_client
        self.printer = printer
        self.terminal = terminal
        self.staff = staff

    def _capture(self, method: str, amount_cents: int) -> PaymentIn:
        if method == "cash":
            return PaymentIn(method="cash", amount_cents=amount_cents, status="captured")
        if self.terminal is None:
            raise PaymentError("no payment terminal configured")
        self.terminal.initialize()
        res = self.terminal.collect(amount_cents)
        return PaymentIn(
            method="card",
            amount_cents=res.amount_cents,
            provider=res.provider,
            provider_tx_id=res.provider_tx_id,
            status=res.status,
        )

    def pay(self, cart: list[CartLine], method: str = "card", pager_number: Optional[str] = None) -> CheckoutResult:
        """
        Complete a sale. On success the cart list is cleared in place. Raises
        CheckoutError (cart kept) when the cart is rejected or the local save
        fails, PaymentError when capture fails.
        """
        if not cart:
            raise CheckoutError("cart is empty")
        pager = (pager_number or "").strip() or None
        if has_kitchen_items(cart) and not pager:
            raise CheckoutError("pager number required for kitchen items")

        lines = list(cart)
        totals = calc_totals(lines)
        payment = self._capture(method, totals.grand_total_cents)

        meta = OrderMeta(
            tenant_id=self.config.resolve_tenant_id(),
            outlet_id=self.config.outlet_id,
            pager_number=pager,
            staff=self.staff,
        )
        try:
            order_id = self.store.save_order(lines, totals, payment, meta)
        except Exception as ex:
            json_log("error", "checkout.save_failed", error=str(ex))
            raise CheckoutError(f"could not save order: {ex}") from ex

        warnings = []
        if not self.store.durable:
            warnings.append("order stored in memory only; it will be lost on restart")

        if self.sync_client is not None:
            try:
                self._sync_detached(order_id, lines, totals, meta)
            except Exception as ex:
                # The sale is committed; the outbox entry stays queued for the drain worker.
                json_log("error", "sync.handoff_failed", order_id=order_id, error=str(ex))

        receipt = render_receipt(lines, pager_number=pager)
        printed, print_error = self._print(receipt)

        cart.clear()
        return CheckoutResult(
            order_id=order_id,
            totals=totals,
            receipt=receipt,
            printed=printed,
            print_error=print_error,
            durable=self.store.durable,
            warnings=warnings,
        )

    def print_preview(self, cart: list[CartLine], pager_number: Optional[str] = None) -> tuple[bool, Optional[str]]:
        """Print the current cart without charging or saving anything."""
        return self._print(render_receipt(list(cart), pager_number=pager_number))

    def _sync_detached(self, order_id: str, lines: list[CartLine], totals: Totals, meta: OrderMeta) -> None:
        # Send the persisted ids and timestamps so this send and any later
        # outbox redelivery upsert the same rows.
        order = self.store.get_order(order_id) or {}
        item_ids = [it["id"] for it in self.store.get_order_items(order_id)]
        outbox_id = self.store.outbox_id_for_order(order_id)

        def _delivered():
            if outbox_id:
                self.store.mark_outbox_sent(outbox_id)

        self.sync_client.sync_order_created_detached(
            lines,
            totals,
            meta,
            order_id=order_id,
            item_ids=item_ids,
            opened_at=order.get("opened_at"),
            on_delivered=_delivered,
        )

    def _print(self, receipt: list[ReceiptLine]) -> tuple[bool, Optional[str]]:
        if self.printer is None:
            return False, "no printer configured"
        try:
            self.printer.print_receipt(receipt)
        except PrinterError as ex:
            json_log("warning", "checkout.print_failed", error=str(ex))
            return False, str(ex)
        return True, None
