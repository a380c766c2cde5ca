"""
The working sale: lines, payment and redemption, with totals recomputed on
every mutation. The engine is synchronous; the only I/O is the snapshot
write, whose failures are logged and never block the cashier.
"""

import secrets
import time
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Optional

from .idempotency import generate_idempotency_key
from .logs import json_log
from .pricing import CartSummary, ZERO, change_due, compute_summary, fmt_amount, line_total, q, to_decimal
from .storage import DurableStore, StoreUnavailableError

PAYMENT_METHODS = ("cash", "card")
_UNSET = object()


class CartValidationError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) or "cart is not valid")
        self.errors = list(errors)


class CartBusyError(ValueError):
    """The cart is being submitted; edits would not be part of the sale."""


@dataclass
class Product:
    id: str
    name: str
    price: Decimal
    barcode: Optional[str] = None


@dataclass
class CartItem:
    id: str
    product_id: str
    name: str
    unit_price: Decimal
    quantity: Optional[int] = 1
    barcode: Optional[str] = None
    list_price: Optional[Decimal] = None
    promotion_id: Optional[str] = None
    line_total: Decimal = field(default_factory=lambda: q(ZERO))

    def recompute(self):
        self.line_total = line_total(self.quantity, self.unit_price)

    @property
    def line_discount(self) -> Decimal:
        if self.list_price is None or not self.quantity or self.quantity <= 0:
            return q(ZERO)
        return q(max(ZERO, (self.list_price - self.unit_price) * self.quantity))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "productId": self.product_id,
            "name": self.name,
            "barcode": self.barcode,
            "unitPrice": fmt_amount(self.unit_price),
            "listPrice": fmt_amount(self.list_price) if self.list_price is not None else None,
            "promotionId": self.promotion_id,
            "quantity": self.quantity,
            "lineTotal": fmt_amount(self.line_total),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartItem":
        """Raises ValueError on anything that cannot be a line."""
        if not isinstance(data, dict):
            raise ValueError("line must be an object")
        product_id = str(data.get("productId") or "").strip()
        if not product_id:
            raise ValueError("line missing productId")
        unit_price = to_decimal(data.get("unitPrice"), default=None)
        if unit_price is None or unit_price < 0:
            raise ValueError("line has invalid unitPrice")
        qty = data.get("quantity")
        if qty is not None:
            qty = int(qty)
            if qty < 0:
                raise ValueError("line has negative quantity")
        list_price = to_decimal(data.get("listPrice"), default=None)
        item = cls(
            id=str(data.get("id") or _line_id()),
            product_id=product_id,
            name=str(data.get("name") or ""),
            unit_price=unit_price,
            quantity=qty,
            barcode=data.get("barcode") or None,
            list_price=list_price if list_price is not None and list_price >= 0 else None,
            promotion_id=data.get("promotionId") or None,
        )
        item.recompute()
        return item


@dataclass
class PaymentData:
    method: str = "cash"
    amount_received: Optional[Decimal] = None
    change_due: Decimal = field(default_factory=lambda: q(ZERO))

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "amountReceived": fmt_amount(self.amount_received) if self.amount_received is not None else None,
            "changeDue": fmt_amount(self.change_due),
        }


def _line_id() -> str:
    return f"line_{secrets.token_hex(6)}"


class CartSnapshotStore:
    """The in-progress sale, persisted after each mutation so a restart doesn't lose it."""

    def __init__(self, store: DurableStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def save(self, snapshot: dict) -> bool:
        try:
            self.store.save_cart(snapshot, int(self.clock() * 1000))
            return True
        except StoreUnavailableError as ex:
            json_log("warning", "cart.snapshot.save_failed", error=str(ex))
            return False

    def load(self) -> Optional[dict]:
        try:
            return self.store.load_cart()
        except StoreUnavailableError as ex:
            json_log("warning", "cart.snapshot.load_failed", error=str(ex))
            return None

    def clear(self):
        try:
            self.store.clear_cart()
        except StoreUnavailableError as ex:
            json_log("warning", "cart.snapshot.clear_failed", error=str(ex))


class CartEngine:
    def __init__(
        self,
        snapshots: Optional[CartSnapshotStore] = None,
        tax_rate=Decimal("0.085"),
        tax_included: bool = False,
        redeem_value=Decimal("0.01"),
        promotions=None,
    ):
        self.snapshots = snapshots
        self.promotions = promotions
        self.items: list[CartItem] = []
        self.payment = PaymentData()
        self.tax_rate = _clamp_rate(tax_rate)
        self.tax_included = bool(tax_included)
        self.redeem_value = max(ZERO, to_decimal(redeem_value))
        self.redeem_points = 0
        # Generated once per committed sale; any change to the cart makes it a different sale.
        self.pending_idempotency_key: Optional[str] = None
        self.submitting = False
        self._summary = compute_summary([], self.tax_rate, self.tax_included)
        if snapshots is not None:
            self._restore(snapshots.load())
        self._recompute()

    # -- derived state --

    @property
    def summary(self) -> CartSummary:
        return self._summary

    def _recompute(self):
        for it in self.items:
            it.recompute()
        self._summary = compute_summary(
            self.items,
            self.tax_rate,
            tax_included=self.tax_included,
            redeem_points=self.redeem_points,
            redeem_value=self.redeem_value,
        )
        if self.payment.method == "cash" and self.payment.amount_received is not None:
            self.payment.change_due = change_due(self.payment.amount_received, self._summary.total)
        else:
            self.payment.change_due = q(ZERO)

    def _changed(self):
        self.pending_idempotency_key = None
        self._recompute()
        if self.snapshots is not None:
            self.snapshots.save(self.snapshot())

    # -- persistence --

    def snapshot(self) -> dict:
        return {
            "items": [it.to_dict() for it in self.items],
            "payment": self.payment.to_dict(),
            "taxRate": str(self.tax_rate),
            "taxIncluded": self.tax_included,
            "redeemValue": str(self.redeem_value),
            "redeemPoints": self.redeem_points,
        }

    def _restore(self, snap: Optional[dict]):
        if not snap:
            return
        if not isinstance(snap, dict):
            json_log("warning", "cart.snapshot.ignored", reason="not an object")
            return
        raw_items = snap.get("items")
        if raw_items is not None and not isinstance(raw_items, list):
            json_log("warning", "cart.snapshot.items_ignored", reason="items is not a list")
            raw_items = None
        items = []
        for raw in raw_items or []:
            try:
                items.append(CartItem.from_dict(raw))
            except (TypeError, ValueError) as ex:
                json_log("warning", "cart.snapshot.line_dropped", error=str(ex))
        self.items = items
        if "taxRate" in snap:
            self.tax_rate = _clamp_rate(snap.get("taxRate"))
        if "taxIncluded" in snap:
            self.tax_included = bool(snap.get("taxIncluded"))
        if "redeemValue" in snap:
            self.redeem_value = max(ZERO, to_decimal(snap.get("redeemValue")))
        self.redeem_points = _floor_points(snap.get("redeemPoints"))
        pay = snap.get("payment")
        if not isinstance(pay, dict):
            pay = {}
        method = str(pay.get("method") or "cash").lower()
        amount = to_decimal(pay.get("amountReceived"), default=None)
        self.payment = PaymentData(
            method=method if method in PAYMENT_METHODS else "cash",
            amount_received=amount if amount is not None and amount >= 0 else None,
        )

    # -- mutations --

    def _ensure_editable(self):
        if self.submitting:
            raise CartBusyError("sale is being submitted; wait for it to finish")

    def begin_submit(self):
        self._ensure_editable()
        self.submitting = True

    def end_submit(self):
        self.submitting = False

    def _find(self, line_id: str) -> CartItem:
        for it in self.items:
            if it.id == line_id:
                return it
        raise KeyError(line_id)

    def _apply_promotion(self, item: CartItem):
        if self.promotions is None or item.list_price is None:
            return
        eff = self.promotions.get_effective_price(item.product_id, item.list_price)
        item.unit_price = eff.price
        item.promotion_id = eff.promotion.id if eff.has_discount and eff.promotion else None

    def add_item(self, product: Product) -> CartItem:
        self._ensure_editable()
        for it in self.items:
            if it.product_id == product.id:
                it.quantity = (it.quantity or 0) + 1
                self._changed()
                return it
        price = to_decimal(product.price)
        if price < 0:
            raise ValueError("price must be >= 0")
        item = CartItem(
            id=_line_id(),
            product_id=product.id,
            name=product.name,
            barcode=product.barcode,
            unit_price=price,
            list_price=price,
            quantity=1,
        )
        self._apply_promotion(item)
        self.items.append(item)
        self._changed()
        return item

    def update_quantity(self, line_id: str, quantity: Optional[int]) -> CartItem:
        """None and 0 are allowed while the cashier edits; the line stays."""
        self._ensure_editable()
        if quantity is not None:
            quantity = int(quantity)
            if quantity < 0:
                raise ValueError("quantity must be >= 0")
        item = self._find(line_id)
        item.quantity = quantity
        self._changed()
        return item

    def remove_item(self, line_id: str) -> bool:
        self._ensure_editable()
        before = len(self.items)
        self.items = [it for it in self.items if it.id != line_id]
        if len(self.items) == before:
            return False
        self._changed()
        return True

    def clear_cart(self):
        self._ensure_editable()
        self.items = []
        self.payment = PaymentData()
        self.redeem_points = 0
        self.pending_idempotency_key = None
        self._recompute()
        if self.snapshots is not None:
            self.snapshots.clear()

    def set_tax_rate(self, rate):
        self._ensure_editable()
        self.tax_rate = _clamp_rate(rate)
        self._changed()

    def set_tax_included(self, included: bool):
        self._ensure_editable()
        self.tax_included = bool(included)
        self._changed()

    def set_redeem_value(self, value):
        self._ensure_editable()
        self.redeem_value = max(ZERO, to_decimal(value))
        self._changed()

    def set_redeem_points(self, points):
        self._ensure_editable()
        self.redeem_points = _floor_points(points)
        self._changed()

    def update_payment(self, method: Optional[str] = None, amount_received=_UNSET) -> PaymentData:
        self._ensure_editable()
        if method is not None:
            method = str(method).strip().lower()
            if method not in PAYMENT_METHODS:
                raise ValueError(f"unsupported payment method: {method}")
            self.payment.method = method
        if amount_received is not _UNSET:
            if amount_received is None:
                self.payment.amount_received = None
            else:
                amount = to_decimal(amount_received, default=None)
                if amount is None or amount < 0:
                    raise ValueError("amount_received must be >= 0")
                self.payment.amount_received = q(amount)
        self._changed()
        return self.payment

    def calculate_change(self, amount_received) -> Decimal:
        return change_due(amount_received, self._summary.total)

    def reprice(self) -> bool:
        """Re-apply cached promotions to every line. Returns True if any price moved."""
        if self.promotions is None or self.submitting:
            return False
        moved = False
        for it in self.items:
            before = (it.unit_price, it.promotion_id)
            self._apply_promotion(it)
            moved = moved or before != (it.unit_price, it.promotion_id)
        if moved:
            self._changed()
        return moved

    def hydrate(self, items: list[dict], payment: Optional[dict] = None):
        """Load a held sale into the cart, replacing what is there."""
        self._ensure_editable()
        self._restore({"items": items, "payment": payment or {}, "redeemPoints": 0})
        self._changed()

    # -- submission --

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.items:
            errors.append("cart is empty")
        for it in self.items:
            if not it.quantity or it.quantity <= 0:
                errors.append(f"line {it.id} ({it.name or it.product_id}) has no quantity")
        if self.payment.method == "cash":
            received = self.payment.amount_received
            if received is None or received < self._summary.total:
                errors.append("amount received is less than total")
        return errors

    def can_complete(self) -> bool:
        return not self.validation_errors()

    def validate_for_submission(self):
        errors = self.validation_errors()
        if errors:
            raise CartValidationError(errors)

    def take_idempotency_key(self) -> str:
        if not self.pending_idempotency_key:
            self.pending_idempotency_key = generate_idempotency_key()
        return self.pending_idempotency_key

    def build_sale_payload(self, store_id: str, cashier: Optional[str] = None, created_at_ms: Optional[int] = None) -> dict:
        s = self._summary
        received = self.payment.amount_received if self.payment.method == "cash" else s.total
        return {
            "storeId": store_id,
            "cashier": cashier,
            "items": [
                {
                    "productId": it.product_id,
                    "name": it.name,
                    "quantity": it.quantity,
                    "unitPrice": fmt_amount(it.unit_price),
                    "lineDiscount": fmt_amount(it.line_discount),
                    "lineTotal": fmt_amount(it.line_total),
                }
                for it in self.items
            ],
            "subtotal": fmt_amount(s.subtotal),
            "discount": fmt_amount(s.promotion_discount),
            "redeemDiscount": fmt_amount(s.redeem_discount),
            "redeemPoints": self.redeem_points,
            "tax": fmt_amount(s.tax),
            "taxRate": str(s.tax_rate),
            "taxIncluded": s.tax_included,
            "total": fmt_amount(s.total),
            "paymentMethod": self.payment.method,
            "amountReceived": fmt_amount(received if received is not None else s.total),
            "changeDue": fmt_amount(self.payment.change_due),
            "offlineCreatedAt": created_at_ms if created_at_ms is not None else int(time.time() * 1000),
        }


def _clamp_rate(rate) -> Decimal:
    return min(Decimal(1), max(ZERO, to_decimal(rate)))


def _floor_points(points) -> int:
    try:
        return max(0, int(Decimal(str(points)).to_integral_value(rounding=ROUND_FLOOR)))
    except (ArithmeticError, ValueError, TypeError):
        return 0
