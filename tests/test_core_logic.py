"""Unit tests verifying the business logic layer.

The first half isolates the business layer from the data layer with mocks;
the second half drives it against real temporary workbooks.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from pos_ledger import constants, core_logic, data_manager


def _product_row(product_id: str = "p1", **overrides) -> data_manager.ProductRow:
    fields = dict(
        product_id=product_id,
        name="Cat Food",
        sku="CF-01",
        category="food",
        price=Decimal("1000"),
        cost=Decimal("600"),
        stock=10,
        size="",
        image="",
        barcode="",
        created_at="2026-10-01T08:00:00+00:00",
        updated_at="2026-10-01T08:00:00+00:00",
    )
    fields.update(overrides)
    return data_manager.ProductRow(**fields)


def _order_command(*lines: tuple[str, int, str], total: str | None = None) -> core_logic.OrderCommand:
    items = tuple(
        core_logic.OrderLine(product_id=product_id, quantity=quantity, price=Decimal(price))
        for product_id, quantity, price in lines
    )
    computed = sum((line.price * line.quantity for line in items), Decimal("0"))
    return core_logic.OrderCommand(
        items=items,
        total=Decimal(total) if total is not None else computed,
        payment_method=constants.PaymentMethod.CASH,
    )


def _ledger_state(context: core_logic.RuntimeContext):
    return (
        core_logic.list_products(context),
        core_logic.list_orders(context),
        core_logic.list_transactions(context),
    )


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        store_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_load_runtime_context_reports_missing_workbook(config_factory):
    """A configured but absent workbook is a storage failure, not a crash."""

    bundle = config_factory(create_workbook=False)
    with pytest.raises(core_logic.StorageUnavailableError):
        core_logic.load_runtime_context(bundle.config_path)


def test_load_runtime_context_reports_corrupt_workbook(config_factory):
    bundle = config_factory(create_workbook=False)
    bundle.workbook_path.write_text("not a spreadsheet")
    with pytest.raises(core_logic.StorageUnavailableError):
        core_logic.load_runtime_context(bundle.config_path)


def test_ensure_schema_version_rejects_mismatch(context):
    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_persist_context_saves_to_configured_file(monkeypatch, context):
    save = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save)

    core_logic.persist_context(context)

    save.assert_called_once_with(context.workbook, destination=context.settings.data_file)


def test_persist_context_wraps_os_errors(monkeypatch, context):
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=PermissionError("read-only")))
    with pytest.raises(core_logic.StorageUnavailableError):
        core_logic.persist_context(context)


# ---------------------------------------------------------------------------
# Caching (mocked data layer)
# ---------------------------------------------------------------------------


def test_list_products_reuses_cache_between_calls(monkeypatch, context):
    iter_mock = Mock(return_value=[_product_row("p1")])
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)

    first = core_logic.list_products(context)
    first.clear()
    second = core_logic.list_products(context)

    assert [row.product_id for row in second] == ["p1"]
    iter_mock.assert_called_once_with(context.workbook)


def test_get_product_missing_raises(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))
    with pytest.raises(core_logic.NotFoundError):
        core_logic.get_product(context, "missing")


def test_invalidate_all_caches_forces_rescan(monkeypatch, context):
    iter_mock = Mock(return_value=[])
    monkeypatch.setattr(data_manager, "iter_transactions", iter_mock)

    core_logic.list_transactions(context)
    core_logic.invalidate_all_caches(context)
    core_logic.list_transactions(context)

    assert iter_mock.call_count == 2


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_validate_product_fields_normalizes_input():
    result = core_logic.validate_product_fields(
        {"name": "  Cat Food ", "category": "food", "price": "1500.50", "stock": "3"}
    )

    assert result.ok
    assert result.values == {
        "name": "Cat Food",
        "category": "food",
        "price": Decimal("1500.50"),
        "cost": Decimal("0"),
        "stock": 3,
        "sku": "",
        "size": "",
        "image": "",
        "barcode": "",
    }


def test_validate_product_fields_reports_every_problem():
    result = core_logic.validate_product_fields(
        {"name": "", "category": "furniture", "price": "abc", "stock": -1, "colour": "red"}
    )

    assert not result.ok
    joined = " | ".join(result.errors)
    for fragment in ("colour", "name", "category", "price", "stock"):
        assert fragment in joined


@pytest.mark.parametrize("stock", [1.5, "2.5", True, None, "²", "--5", "five"])
def test_validate_product_fields_rejects_non_integral_stock(stock):
    result = core_logic.validate_product_fields(
        {"name": "Toy", "category": "toys", "price": 1, "stock": stock}
    )
    assert any("stock" in error for error in result.errors)


@pytest.mark.parametrize(
    "field, value",
    [("name", "Bone\x07"), ("barcode", "0105\x1d10ABC"), ("sku", "SKU\x00"), ("size", "2\x0bkg")],
)
def test_validate_product_fields_rejects_control_characters(field, value):
    fields = {"name": "Toy", "category": "toys", "price": 1, "stock": 1, field: value}

    result = core_logic.validate_product_fields(fields)

    assert any(field in error for error in result.errors)
    assert field not in result.values


def test_validate_product_fields_partial_checks_only_supplied_keys():
    result = core_logic.validate_product_fields({"stock": 7}, partial=True)

    assert result.ok
    assert result.values == {"stock": 7}


def test_add_product_rejects_invalid_input_without_writing(monkeypatch, context):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_product", append)

    with pytest.raises(core_logic.ValidationError) as excinfo:
        core_logic.add_product(context, name="Toy", category="toys", price="-5", stock=1)

    assert any("price" in error for error in excinfo.value.errors)
    append.assert_not_called()


def test_add_product_assigns_id_timestamps_and_sku(monkeypatch, context, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2026, 10, 19, 9, 30, tzinfo=UTC))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_product", append)
    monkeypatch.setattr(data_manager, "snapshot_sheets", Mock(return_value={}))
    monkeypatch.setattr(core_logic, "generate_id", lambda: "abc123def456")
    monkeypatch.setattr(core_logic.random, "randrange", lambda _: 42)

    product = core_logic.add_product(context, name="Toy", category="toys", price=25000, stock=4)

    assert product.product_id == "abc123def456"
    assert product.sku == f"AUTO-{int(moment.timestamp() * 1000)}-42"
    assert product.created_at == product.updated_at == moment.isoformat()
    append.assert_called_once_with(context.workbook, product)


def test_generate_id_is_unique_hex():
    first, second = core_logic.generate_id(), core_logic.generate_id()
    assert first != second
    assert len(first) == 32
    int(first, 16)


def test_validate_order_command_flags_bad_lines():
    command = core_logic.OrderCommand(
        items=(core_logic.OrderLine(product_id="", quantity=0, price=Decimal("-1")),),
        total=Decimal("0"),
        payment_method="card",  # type: ignore[arg-type]
    )

    result = core_logic.validate_order_command(command)

    assert len(result.errors) == 4


# ---------------------------------------------------------------------------
# Catalog store (real workbook)
# ---------------------------------------------------------------------------


def test_added_product_round_trips_every_field(runtime_context, product_factory):
    fields = {
        "name": "Salmon Kibble",
        "category": "food",
        "price": Decimal("150000"),
        "cost": Decimal("90000"),
        "stock": 12,
        "sku": "SK-1",
        "size": "2kg",
        "image": "kibble.png",
        "barcode": "8931234567890",
    }

    added = product_factory(**fields)
    fetched = core_logic.get_product(runtime_context, added.product_id)

    assert fetched == added
    for name, value in fields.items():
        assert getattr(fetched, name) == value


def test_products_survive_persist_and_reload(runtime_context, product_factory):
    added = product_factory(price=Decimal("2.50"))
    core_logic.persist_context(runtime_context)

    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.list_products(reloaded) == [added]


def test_stock_filters_are_exact_and_disjoint(runtime_context, product_factory):
    by_stock = {stock: product_factory(name=f"Item {stock}", stock=stock) for stock in (0, 1, 5, 6)}

    low = core_logic.filter_products_by_category(runtime_context, "low-stock")
    out = core_logic.filter_products_by_category(runtime_context, constants.StockFilter.OUT_OF_STOCK)

    assert [p.product_id for p in low] == [by_stock[1].product_id, by_stock[5].product_id]
    assert [p.product_id for p in out] == [by_stock[0].product_id]
    assert not {p.product_id for p in low} & {p.product_id for p in out}
    assert len(core_logic.filter_products_by_category(runtime_context, "all")) == 4


def test_category_filter_matches_category(runtime_context, product_factory):
    toy = product_factory(name="Ball", category="toys")
    product_factory(name="Kibble", category="food")

    assert core_logic.filter_products_by_category(runtime_context, constants.Category.TOYS) == [toy]


def test_category_filter_rejects_unknown_tag(runtime_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.filter_products_by_category(runtime_context, "furniture")


def test_search_products_matches_name_sku_and_barcode(runtime_context, product_factory):
    kibble = product_factory(name="Salmon Kibble", sku="FOOD-1", barcode="893001")
    collar = product_factory(name="Red Collar", category="accessories", sku="ACC-9", barcode="")

    assert core_logic.search_products(runtime_context, "kibble") == [kibble]
    assert core_logic.search_products(runtime_context, "acc-") == [collar]
    assert core_logic.search_products(runtime_context, "3001") == [kibble]
    assert core_logic.search_products(runtime_context, "zzz") == []


def test_get_product_by_barcode(runtime_context, product_factory):
    kibble = product_factory(barcode="893001")
    product_factory(name="No Code", barcode="")

    assert core_logic.get_product_by_barcode(runtime_context, " 893001\n") == kibble
    assert core_logic.get_product_by_barcode(runtime_context, "000") is None
    assert core_logic.get_product_by_barcode(runtime_context, "   ") is None


def test_update_product_merges_and_restamps(runtime_context, product_factory, set_fixed_datetime):
    set_fixed_datetime(datetime(2026, 10, 1, 8, 0, tzinfo=UTC))
    original = product_factory()
    later = set_fixed_datetime(datetime(2026, 10, 2, 8, 0, tzinfo=UTC))

    updated = core_logic.update_product(runtime_context, original.product_id, price="1200", stock=3)

    assert updated == replace(original, price=Decimal("1200"), stock=3, updated_at=later.isoformat())
    assert core_logic.get_product(runtime_context, original.product_id) == updated


def test_update_product_regenerates_blank_sku(runtime_context, product_factory):
    original = product_factory(sku="KEEP")

    updated = core_logic.update_product(runtime_context, original.product_id, sku="  ")

    assert updated.sku.startswith("AUTO-")


def test_update_product_unknown_id_raises(runtime_context):
    with pytest.raises(core_logic.NotFoundError):
        core_logic.update_product(runtime_context, "missing", stock=1)


def test_update_product_rejects_bad_fields(runtime_context, product_factory):
    original = product_factory()
    with pytest.raises(core_logic.ValidationError):
        core_logic.update_product(runtime_context, original.product_id, stock=-3)
    assert core_logic.get_product(runtime_context, original.product_id) == original


def test_add_product_with_control_characters_leaves_no_row(runtime_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.add_product(runtime_context, name="Bone\x07", category="toys", price="500", stock=2)

    assert core_logic.list_products(runtime_context) == []


def test_add_product_rolls_back_partial_append(monkeypatch, runtime_context):
    def half_append(workbook, record):
        workbook[constants.SheetName.PRODUCTS.value].append([record.product_id])
        raise RuntimeError("cell write failed")

    monkeypatch.setattr(data_manager, "append_product", half_append)

    with pytest.raises(RuntimeError):
        core_logic.add_product(runtime_context, name="Bone", category="toys", price="500", stock=2)

    assert core_logic.list_products(runtime_context) == []


def test_update_product_with_control_characters_changes_nothing(runtime_context, product_factory):
    original = product_factory(name="Kibble")

    with pytest.raises(core_logic.ValidationError):
        core_logic.update_product(runtime_context, original.product_id, name="Renamed", barcode="0105\x1d10ABC")

    core_logic.invalidate_all_caches(runtime_context)
    assert core_logic.get_product(runtime_context, original.product_id) == original


def test_update_product_rolls_back_partial_write(monkeypatch, runtime_context, product_factory):
    original = product_factory(name="Kibble")
    real_update = data_manager.update_product

    def half_update(workbook, product_id, *, field_values):
        real_update(workbook, product_id, field_values=field_values)
        raise RuntimeError("cell write failed")

    monkeypatch.setattr(data_manager, "update_product", half_update)

    with pytest.raises(RuntimeError):
        core_logic.update_product(runtime_context, original.product_id, name="Renamed")

    assert core_logic.get_product(runtime_context, original.product_id) == original


def test_record_transaction_rejects_control_characters(runtime_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_transaction(
            runtime_context,
            core_logic.TransactionCommand(
                transaction_type=constants.TransactionType.PURCHASE,
                amount=Decimal("10"),
                description="bad\x01",
            ),
        )
    assert core_logic.list_transactions(runtime_context) == []


def test_delete_product_is_idempotent(runtime_context, product_factory):
    product = product_factory()

    assert core_logic.delete_product(runtime_context, product.product_id) is True
    assert core_logic.delete_product(runtime_context, product.product_id) is False
    assert core_logic.list_products(runtime_context) == []


# ---------------------------------------------------------------------------
# Order and transaction ledger (real workbook)
# ---------------------------------------------------------------------------


def test_create_order_decrements_stock_and_records_sale(runtime_context, product_factory):
    product = product_factory(stock=10)

    order = core_logic.create_order(runtime_context, _order_command((product.product_id, 2, "1000")))

    assert core_logic.get_product(runtime_context, product.product_id).stock == 8
    assert core_logic.list_orders(runtime_context) == [order]
    (sale,) = core_logic.list_transactions(runtime_context)
    assert sale.transaction_type == constants.TransactionType.SALE.value
    assert sale.amount == Decimal("2000")
    assert sale.order_id == order.order_id
    assert sale.description == f"Order #{order.order_id[:6]}"
    assert sale.created_at == order.created_at
    assert order.status == constants.OrderStatus.COMPLETED.value
    assert core_logic.transactions_for_order(runtime_context, order.order_id) == [sale]


def test_create_order_allows_oversell(runtime_context, product_factory, caplog):
    product = product_factory(stock=1)
    caplog.set_level("WARNING")

    core_logic.create_order(runtime_context, _order_command((product.product_id, 3, "1000")))

    assert core_logic.get_product(runtime_context, product.product_id).stock == -2
    assert any("oversold" in record.getMessage() for record in caplog.records)


def test_create_order_skips_missing_products(runtime_context, product_factory):
    product = product_factory(stock=5)

    order = core_logic.create_order(
        runtime_context,
        _order_command((product.product_id, 1, "1000"), ("ghost", 4, "10")),
    )

    assert core_logic.get_product(runtime_context, product.product_id).stock == 4
    assert len(order.items) == 2
    assert core_logic.list_transactions(runtime_context)[0].amount == Decimal("1040")


def test_create_order_trusts_supplied_total(runtime_context, product_factory):
    product = product_factory()

    order = core_logic.create_order(runtime_context, _order_command((product.product_id, 1, "1000"), total="900"))

    assert order.total == Decimal("900")
    assert core_logic.list_transactions(runtime_context)[0].amount == Decimal("900")


def test_create_order_rejects_empty_orders_without_writing(runtime_context, product_factory):
    product_factory()
    before = _ledger_state(runtime_context)

    with pytest.raises(core_logic.ValidationError):
        core_logic.create_order(runtime_context, _order_command())

    assert _ledger_state(runtime_context) == before


def test_create_order_rolls_back_when_a_step_fails(monkeypatch, runtime_context, product_factory):
    """A failure while writing the sale entry must undo the order and the stock change."""

    product = product_factory(stock=10)
    before = _ledger_state(runtime_context)

    def failing_record(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(core_logic, "record_transaction", failing_record)

    with pytest.raises(RuntimeError, match="disk full"):
        core_logic.create_order(runtime_context, _order_command((product.product_id, 2, "1000")))

    assert _ledger_state(runtime_context) == before
    assert core_logic.get_product(runtime_context, product.product_id).stock == 10


def test_orders_and_transactions_survive_reload(runtime_context, product_factory):
    product = product_factory()
    order = core_logic.create_order(
        runtime_context,
        _order_command((product.product_id, 1, "1000"), (product.product_id, 2, "950")),
    )
    core_logic.persist_context(runtime_context)

    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.get_order(reloaded, order.order_id) == order
    (sale,) = core_logic.list_transactions(reloaded)
    assert core_logic.get_transaction(reloaded, sale.transaction_id) == sale


def test_get_order_and_transaction_unknown_ids(runtime_context):
    with pytest.raises(core_logic.NotFoundError):
        core_logic.get_order(runtime_context, "nope")
    with pytest.raises(core_logic.NotFoundError):
        core_logic.get_transaction(runtime_context, "nope")


def test_record_transaction_appends_standalone_entry(runtime_context):
    entry = core_logic.record_transaction(
        runtime_context,
        core_logic.TransactionCommand(
            transaction_type=constants.TransactionType.PURCHASE,
            amount=Decimal("50000"),
            description="Restock from supplier",
        ),
    )

    assert core_logic.list_transactions(runtime_context) == [entry]
    assert entry.order_id is None


def test_record_transaction_rejects_unknown_type(runtime_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_transaction(
            runtime_context,
            core_logic.TransactionCommand(
                transaction_type="gift",  # type: ignore[arg-type]
                amount=Decimal("1"),
                description="",
            ),
        )
    assert core_logic.list_transactions(runtime_context) == []


def test_ledger_transaction_restores_sheets_on_error(runtime_context, product_factory):
    product = product_factory()

    with pytest.raises(ValueError):
        with core_logic.ledger_transaction(runtime_context):
            core_logic.delete_product(runtime_context, product.product_id)
            raise ValueError("abort")

    assert core_logic.list_products(runtime_context) == [product]
