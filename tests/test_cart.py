"""Tests for the immutable cart and the checkout flow."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pos_ledger import cart, constants, core_logic, data_manager


def _product(product_id: str = "p1", *, stock: int = 3, price: str = "1000") -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        name=f"Product {product_id}",
        sku=f"SKU-{product_id}",
        category="food",
        price=Decimal(price),
        cost=Decimal("0"),
        stock=stock,
        size="",
        image="",
        barcode="",
        created_at="",
        updated_at="",
    )


def test_add_to_cart_creates_line_with_current_price():
    updated = cart.add_to_cart(cart.Cart(), _product(price="1250"))

    assert updated.lines == (cart.CartLine(product_id="p1", name="Product p1", price=Decimal("1250"), quantity=1),)


def test_add_to_cart_returns_new_cart():
    empty = cart.Cart()
    cart.add_to_cart(empty, _product())
    assert empty.is_empty


def test_add_to_cart_increments_until_stock_is_reached():
    product = _product(stock=2)
    current = cart.add_to_cart(cart.add_to_cart(cart.Cart(), product), product)

    assert current.find("p1").quantity == 2
    with pytest.raises(core_logic.InsufficientStockError):
        cart.add_to_cart(current, product)


def test_add_to_cart_rejects_out_of_stock():
    with pytest.raises(core_logic.InsufficientStockError):
        cart.add_to_cart(cart.Cart(), _product(stock=0))


def test_increase_quantity_requires_existing_line():
    with pytest.raises(core_logic.NotFoundError):
        cart.increase_quantity(cart.Cart(), _product())


def test_increase_quantity_respects_stock():
    product = _product(stock=1)
    current = cart.add_to_cart(cart.Cart(), product)
    with pytest.raises(core_logic.InsufficientStockError):
        cart.increase_quantity(current, product)


def test_decrease_quantity_drops_line_at_zero():
    product = _product()
    current = cart.increase_quantity(cart.add_to_cart(cart.Cart(), product), product)

    once = cart.decrease_quantity(current, "p1")
    twice = cart.decrease_quantity(once, "p1")

    assert once.find("p1").quantity == 1
    assert twice.is_empty
    assert cart.decrease_quantity(twice, "p1") == twice


def test_remove_line_and_clear_cart():
    current = cart.add_to_cart(cart.add_to_cart(cart.Cart(), _product("p1")), _product("p2"))

    assert [line.product_id for line in cart.remove_line(current, "p1").lines] == ["p2"]
    assert cart.clear_cart(current).is_empty


def test_cart_total_sums_line_amounts():
    product_a = _product("a", price="1000", stock=5)
    product_b = _product("b", price="250.50", stock=5)
    current = cart.Cart()
    for product in (product_a, product_a, product_b):
        current = cart.add_to_cart(current, product)

    assert cart.cart_total(current) == Decimal("2250.50")


def test_build_order_command_rejects_empty_cart():
    with pytest.raises(core_logic.ValidationError):
        cart.build_order_command(cart.Cart(), constants.PaymentMethod.CASH)


def test_build_order_command_copies_lines():
    current = cart.add_to_cart(cart.Cart(), _product(price="700"))

    command = cart.build_order_command(current, constants.PaymentMethod.BANK)

    assert command.items == (core_logic.OrderLine(product_id="p1", quantity=1, price=Decimal("700")),)
    assert command.total == Decimal("700")
    assert command.payment_method is constants.PaymentMethod.BANK


def test_session_updates_are_copies():
    session = cart.Session()
    filled = session.with_cart(cart.add_to_cart(cart.Cart(), _product()))
    filtered = filled.with_category_filter(constants.StockFilter.LOW_STOCK).with_period(constants.Period.MONTH)

    assert session.cart.is_empty
    assert session.category_filter is constants.StockFilter.ALL
    assert filtered.cart == filled.cart
    assert filtered.category_filter is constants.StockFilter.LOW_STOCK
    assert filtered.period is constants.Period.MONTH


def test_checkout_creates_order_and_empties_cart(runtime_context, product_factory):
    product = product_factory(stock=4, price=Decimal("1000"))
    current = cart.add_to_cart(cart.add_to_cart(cart.Cart(), product), product)

    order, remaining = cart.checkout(runtime_context, current, constants.PaymentMethod.CASH)

    assert remaining.is_empty
    assert order.total == Decimal("2000")
    assert core_logic.get_product(runtime_context, product.product_id).stock == 2


def test_scan_barcode_adds_matching_product(runtime_context, product_factory):
    product = product_factory(barcode="8930001")

    current = cart.scan_barcode(runtime_context, cart.Cart(), "8930001")
    current = cart.scan_barcode(runtime_context, current, "8930001")

    assert current.find(product.product_id).quantity == 2


def test_scan_barcode_unknown_code_raises(runtime_context, product_factory):
    product_factory(barcode="8930001")
    with pytest.raises(core_logic.NotFoundError):
        cart.scan_barcode(runtime_context, cart.Cart(), "0000")
