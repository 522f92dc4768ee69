"""
In-memory cart for the sale being rung up.

Lines are keyed by (product_id, variation_id) and keep their insertion order.
Prices are resolved once, when a product is first added, through the catalog
callable handed to the cart; later catalog changes never reprice a line.
"""
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import money

LineRef = Tuple[str, str]
PriceResolver = Callable[[str, str, str], int]


def line_ref(product_id: Any, variation_id: Any = None) -> LineRef:
    """Normalize ids coming from the UI (ints, strings, None) into a cart key."""
    pid = str(product_id).strip() if product_id is not None else ""
    vid = str(variation_id).strip() if variation_id not in (None, "") else pid
    return (pid, vid)


@dataclass(frozen=True)
class Product:
    product_id: str
    variation_id: str
    name: str = ""
    tax_minor: int = 0

    @property
    def ref(self) -> LineRef:
        return line_ref(self.product_id, self.variation_id)


@dataclass(frozen=True)
class LineItem:
    product_id: str
    variation_id: str
    name: str
    unit_price_minor: int
    quantity: Decimal
    discount_minor: int = 0
    tax_minor: int = 0

    @property
    def ref(self) -> LineRef:
        return (self.product_id, self.variation_id)

    @property
    def line_total(self) -> int:
        gross = money.mul(self.unit_price_minor, self.quantity)
        return gross - self.discount_minor + self.tax_minor


@dataclass(frozen=True)
class CartSnapshot:
    """Immutable copy of a cart, ready to become a transaction."""
    lines: Tuple[LineItem, ...]
    discount_minor: int = 0
    shipping_minor: int = 0
    order_tax_minor: int = 0

    @property
    def subtotal(self) -> int:
        return sum(l.line_total for l in self.lines)

    @property
    def total(self) -> int:
        raw = self.subtotal - self.discount_minor + self.shipping_minor + self.order_tax_minor
        return max(0, raw)

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass
class Cart:
    price_resolver: PriceResolver
    location_id: str = ""
    _lines: Dict[LineRef, LineItem] = field(default_factory=dict)
    discount_minor: int = 0
    shipping_minor: int = 0
    order_tax_minor: int = 0

    # ---------- reads ----------
    @property
    def lines(self) -> List[LineItem]:
        return list(self._lines.values())

    def line(self, ref: LineRef) -> Optional[LineItem]:
        return self._lines.get(tuple(ref))

    @property
    def item_count(self) -> Decimal:
        return sum((l.quantity for l in self._lines.values()), Decimal(0))

    @property
    def subtotal(self) -> int:
        return sum(l.line_total for l in self._lines.values())

    @property
    def total(self) -> int:
        raw = self.subtotal - self.discount_minor + self.shipping_minor + self.order_tax_minor
        return max(0, raw)

    # ---------- line mutations ----------
    def add_or_increment(self, product: Product) -> LineItem:
        ref = product.ref
        existing = self._lines.get(ref)
        if existing is not None:
            updated = replace(existing, quantity=existing.quantity + 1)
        else:
            price = money.require_non_negative(
                self.price_resolver(ref[0], ref[1], self.location_id), "unit price"
            )
            updated = LineItem(
                product_id=ref[0],
                variation_id=ref[1],
                name=product.name or ref[0],
                unit_price_minor=price,
                quantity=Decimal(1),
                tax_minor=money.require_non_negative(product.tax_minor, "line tax"),
            )
        self._lines[ref] = updated
        return updated

    def set_quantity(self, ref: LineRef, quantity: Any) -> None:
        """Set a line's quantity; zero or less drops the line. Unknown refs are ignored."""
        ref = tuple(ref)
        qty = money.parse_quantity(quantity)
        existing = self._lines.get(ref)
        if existing is None:
            return
        if qty <= 0:
            del self._lines[ref]
            return
        self._lines[ref] = replace(existing, quantity=qty)

    def remove(self, ref: LineRef) -> None:
        self._lines.pop(tuple(ref), None)

    def set_line_discount(self, ref: LineRef, amount_minor: int) -> None:
        existing = self._lines.get(tuple(ref))
        if existing is None:
            return
        amount = money.require_non_negative(amount_minor, "line discount")
        self._lines[existing.ref] = replace(existing, discount_minor=amount)

    def set_line_tax(self, ref: LineRef, amount_minor: int) -> None:
        existing = self._lines.get(tuple(ref))
        if existing is None:
            return
        amount = money.require_non_negative(amount_minor, "line tax")
        self._lines[existing.ref] = replace(existing, tax_minor=amount)

    # ---------- order level adjustments (absolute values only) ----------
    def set_discount(self, amount_minor: int) -> None:
        self.discount_minor = abs(_as_minor(amount_minor))

    def set_shipping(self, amount_minor: int) -> None:
        self.shipping_minor = abs(_as_minor(amount_minor))

    def set_order_tax(self, amount_minor: int) -> None:
        self.order_tax_minor = abs(_as_minor(amount_minor))

    # ---------- lifecycle ----------
    def clear(self) -> None:
        self._lines.clear()
        self.discount_minor = 0
        self.shipping_minor = 0
        self.order_tax_minor = 0

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            lines=tuple(self._lines.values()),
            discount_minor=self.discount_minor,
            shipping_minor=self.shipping_minor,
            order_tax_minor=self.order_tax_minor,
        )

    def restore(self, snap: CartSnapshot) -> None:
        """Load a parked snapshot back into the cart, replacing its contents."""
        self.clear()
        for l in snap.lines:
            self._lines[l.ref] = l
        self.discount_minor = snap.discount_minor
        self.shipping_minor = snap.shipping_minor
        self.order_tax_minor = snap.order_tax_minor


def _as_minor(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise money.InvalidAmount(f"Expected minor units as int, got {value!r}")
    return value


def snapshot_from_lines(
    items: Iterable[Dict[str, Any]],
    discount_minor: int = 0,
    shipping_minor: int = 0,
    order_tax_minor: int = 0,
) -> CartSnapshot:
    """Snapshot built from lines that carry their own unit price.

    Used for supplier purchases, where the cost comes from the supplier's
    invoice rather than the catalog. Each item needs `product_id`,
    `unit_price_minor` and a positive `quantity`; repeated lines are refused.
    """
    lines: Dict[LineRef, LineItem] = {}
    for idx, item in enumerate(items, start=1):
        ref = line_ref(item.get("product_id"), item.get("variation_id"))
        if not ref[0]:
            raise money.InvalidAmount(f"Line #{idx} has no product_id")
        if ref in lines:
            raise money.InvalidAmount(f"Line #{idx} repeats {ref[0]}/{ref[1]}")
        qty = money.parse_quantity(item.get("quantity", 1))
        if qty <= 0:
            raise money.InvalidAmount(f"Line #{idx} quantity must be positive")
        lines[ref] = LineItem(
            product_id=ref[0],
            variation_id=ref[1],
            name=item.get("name") or ref[0],
            unit_price_minor=money.require_non_negative(item.get("unit_price_minor"), "unit cost"),
            quantity=qty,
            discount_minor=money.require_non_negative(item.get("discount_minor", 0), "line discount"),
            tax_minor=money.require_non_negative(item.get("tax_minor", 0), "line tax"),
        )
    return CartSnapshot(
        lines=tuple(lines.values()),
        discount_minor=abs(_as_minor(discount_minor)),
        shipping_minor=abs(_as_minor(shipping_minor)),
        order_tax_minor=abs(_as_minor(order_tax_minor)),
    )
