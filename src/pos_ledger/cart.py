"""Cart and session state for the checkout flow.

Everything here is an immutable value: each operation returns a new
:class:`Cart` or :class:`Session` instead of mutating shared state, so the
caller (the CLI, a test, another front-end) owns the state it is working
with. Stock checks here only look at the current catalog; the ledger itself
does not refuse an order that drives stock negative.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional, Tuple, Union

from . import core_logic, data_manager, log
from .constants import Category, PaymentMethod, Period, StockFilter


@dataclass(frozen=True)
class CartLine:
    product_id: str
    name: str
    price: Decimal
    quantity: int


@dataclass(frozen=True)
class Cart:
    """Ordered collection of cart lines, one per product."""

    lines: Tuple[CartLine, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def find(self, product_id: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None


@dataclass(frozen=True)
class Session:
    """UI state that used to live in module globals."""

    cart: Cart = Cart()
    category_filter: Union[Category, StockFilter] = StockFilter.ALL
    period: Period = Period.TODAY

    def with_cart(self, cart: Cart) -> "Session":
        return replace(self, cart=cart)

    def with_category_filter(self, tag: Union[Category, StockFilter]) -> "Session":
        return replace(self, category_filter=tag)

    def with_period(self, period: Period) -> "Session":
        return replace(self, period=period)


def _replace_line(cart: Cart, updated: CartLine) -> Cart:
    return Cart(
        lines=tuple(updated if line.product_id == updated.product_id else line for line in cart.lines)
    )


def add_to_cart(cart: Cart, product: data_manager.ProductRow) -> Cart:
    """Add one unit of ``product`` to the cart.

    A new line captures the product's current price. An existing line is
    incremented only while its quantity stays within the product's stock.

    Raises:
        InsufficientStockError: If the product is out of stock or the line
            already holds every unit in stock.
    """
    if product.stock <= 0:
        log.warning("Cannot add '%s' to cart: out of stock", product.product_id)
        raise core_logic.InsufficientStockError(f"'{product.name}' is out of stock")

    existing = cart.find(product.product_id)
    if existing is None:
        line = CartLine(product_id=product.product_id, name=product.name, price=product.price, quantity=1)
        return Cart(lines=cart.lines + (line,))

    if existing.quantity >= product.stock:
        log.warning("Cannot add '%s' to cart: only %d in stock", product.product_id, product.stock)
        raise core_logic.InsufficientStockError(f"Not enough '{product.name}' in stock")
    return _replace_line(cart, replace(existing, quantity=existing.quantity + 1))


def increase_quantity(cart: Cart, product: data_manager.ProductRow) -> Cart:
    """Raise an existing line by one unit.

    Raises:
        NotFoundError: If the product is not in the cart.
        InsufficientStockError: If that would exceed the product's stock.
    """
    existing = cart.find(product.product_id)
    if existing is None:
        raise core_logic.NotFoundError(f"Product '{product.product_id}' is not in the cart")
    if existing.quantity >= product.stock:
        raise core_logic.InsufficientStockError(f"Not enough '{product.name}' in stock")
    return _replace_line(cart, replace(existing, quantity=existing.quantity + 1))


def decrease_quantity(cart: Cart, product_id: str) -> Cart:
    """Lower a line by one unit, dropping it when it reaches zero.

    Unknown products leave the cart unchanged.
    """
    existing = cart.find(product_id)
    if existing is None:
        return cart
    if existing.quantity <= 1:
        return remove_line(cart, product_id)
    return _replace_line(cart, replace(existing, quantity=existing.quantity - 1))


def remove_line(cart: Cart, product_id: str) -> Cart:
    return Cart(lines=tuple(line for line in cart.lines if line.product_id != product_id))


def clear_cart(cart: Cart) -> Cart:
    if not cart.is_empty:
        log.info("Cleared cart with %d line(s)", len(cart.lines))
    return Cart()


def cart_total(cart: Cart) -> Decimal:
    return sum((line.price * line.quantity for line in cart.lines), Decimal("0"))


def build_order_command(cart: Cart, payment_method: PaymentMethod) -> core_logic.OrderCommand:
    """Turn the cart into an :class:`~pos_ledger.core_logic.OrderCommand`.

    Raises:
        ValidationError: If the cart is empty.
    """
    if cart.is_empty:
        raise core_logic.ValidationError("The cart is empty")
    return core_logic.OrderCommand(
        items=tuple(
            core_logic.OrderLine(product_id=line.product_id, quantity=line.quantity, price=line.price)
            for line in cart.lines
        ),
        total=cart_total(cart),
        payment_method=payment_method,
    )


def checkout(
    context: core_logic.RuntimeContext,
    cart: Cart,
    payment_method: PaymentMethod,
) -> Tuple[data_manager.OrderRow, Cart]:
    """Create an order from the cart and hand back an empty cart."""

    order = core_logic.create_order(context, build_order_command(cart, payment_method))
    return order, Cart()


def scan_barcode(context: core_logic.RuntimeContext, cart: Cart, code: str) -> Cart:
    """Add the product whose barcode is ``code`` to the cart.

    Raises:
        NotFoundError: If no product carries that barcode.
        InsufficientStockError: See :func:`add_to_cart`.
    """
    product = core_logic.get_product_by_barcode(context, code)
    if product is None:
        raise core_logic.NotFoundError(f"No product with barcode: {code}")
    updated = add_to_cart(cart, product)
    log.info("Scanned '%s' into cart (%s)", code, product.name)
    return updated
