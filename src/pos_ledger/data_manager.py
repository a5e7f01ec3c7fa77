"""Data access layer for the point-of-sale ledger.

This module reads from and writes to the ledger workbook. Business rules
belong in :mod:`pos_ledger.core_logic`.

The public API covers four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving, and reloading the Excel file.
3. Sheet operations: loading typed records and appending, updating, deleting
   or replacing rows.
4. Snapshots: capturing and restoring sheet contents so that multi-sheet
   writes can be rolled back.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
ORDERS_SHEET = SheetName.ORDERS.value
ORDER_ITEMS_SHEET = SheetName.ORDER_ITEMS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value

PRODUCT_COLUMNS: Tuple[str, ...] = (
    "ProductID",
    "Name",
    "SKU",
    "Category",
    "Price",
    "Cost",
    "Stock",
    "Size",
    "Image",
    "Barcode",
    "CreatedAt",
    "UpdatedAt",
)
ORDER_COLUMNS: Tuple[str, ...] = (
    "OrderID",
    "Total",
    "PaymentMethod",
    "Status",
    "CreatedAt",
)
ORDER_ITEM_COLUMNS: Tuple[str, ...] = (
    "OrderID",
    "LineNumber",
    "ProductID",
    "Quantity",
    "UnitPrice",
)
TRANSACTION_COLUMNS: Tuple[str, ...] = (
    "TransactionID",
    "Type",
    "Amount",
    "Description",
    "OrderID",
    "CreatedAt",
)

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: PRODUCT_COLUMNS,
    ORDERS_SHEET: ORDER_COLUMNS,
    ORDER_ITEMS_SHEET: ORDER_ITEM_COLUMNS,
    TRANSACTIONS_SHEET: TRANSACTION_COLUMNS,
}

# Maps ProductRow attribute names onto Products sheet headers.
PRODUCT_FIELD_COLUMNS: Mapping[str, str] = {
    "name": "Name",
    "sku": "SKU",
    "category": "Category",
    "price": "Price",
    "cost": "Cost",
    "stock": "Stock",
    "size": "Size",
    "image": "Image",
    "barcode": "Barcode",
    "updated_at": "UpdatedAt",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    sku: str
    category: str
    price: Decimal
    cost: Decimal
    stock: int
    size: str
    image: str
    barcode: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class OrderItemRow:
    """One order line. ``price`` is the unit price captured at sale time."""

    product_id: str
    quantity: int
    price: Decimal


@dataclass(frozen=True)
class OrderRow:
    """An order joined with its ``OrderItems`` rows in line order."""

    order_id: str
    items: Tuple[OrderItemRow, ...]
    total: Decimal
    payment_method: str
    status: str
    created_at: str


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    transaction_type: str
    amount: Decimal
    description: str
    order_id: Optional[str]
    created_at: str


SheetSnapshot = Dict[str, List[Tuple[Any, ...]]]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path is returned as-is without verification so callers can
    deliberately target a non-standard location. Otherwise the search walks
    from the current working directory up to the filesystem root and returns
    the first ``CONFIG_FILE_NAME`` found.

    Args:
        explicit_path (Path | None): Optional path that bypasses the search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Validation of individual entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``StoreName`` and
    ``SchemaVersion``. The ``[Inventory]`` section is optional; when
    ``LowStockThreshold`` is missing the default threshold applies. Relative
    data file paths are anchored to ``base_path`` (or the working directory)
    and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``LowStockThreshold`` is not a non-negative integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    threshold = parser.getint(
        "Inventory",
        "LowStockThreshold",
        fallback=DEFAULT_LOW_STOCK_THRESHOLD,
    )
    if threshold < 0:
        raise ValueError(f"LowStockThreshold must be zero or positive, got {threshold}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        low_stock_threshold=threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` in a single replace.

    The workbook is written to a sibling temporary file first and then moved
    over the destination with :func:`os.replace`, so readers never observe a
    half-written file. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Target path of the serialized workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.stem}.tmp{dest.suffix}")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[Any, ...]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Yield :class:`ProductRow` records from the ``Products`` sheet in sheet order."""

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_order_items(workbook: Workbook) -> Iterable[Tuple[str, int, OrderItemRow]]:
    """Yield ``(order_id, line_number, item)`` triples from ``OrderItems``."""

    for raw in _iter_raw_rows(workbook, ORDER_ITEMS_SHEET):
        yield deserialize_order_item(raw)


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    """Yield orders joined with their line items.

    Line items are grouped by ``OrderID`` and sorted by ``LineNumber`` before
    they are attached, so the item sequence matches the order in which the
    lines were sold regardless of how rows were laid out on the sheet. Orders
    keep the ``Orders`` sheet order.

    Args:
        workbook (Workbook): Workbook containing both order sheets.

    Yields:
        OrderRow: One record per populated ``Orders`` row.
    """

    lines: Dict[str, List[Tuple[int, OrderItemRow]]] = {}
    for order_id, line_number, item in iter_order_items(workbook):
        lines.setdefault(order_id, []).append((line_number, item))

    for raw in _iter_raw_rows(workbook, ORDERS_SHEET):
        order_id = str(raw[0])
        ordered = sorted(lines.get(order_id, []), key=lambda entry: entry[0])
        yield deserialize_order(raw, items=tuple(item for _, item in ordered))


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream :class:`TransactionRow` records from the ``Transactions`` sheet."""

    for raw in _iter_raw_rows(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_order(workbook: Workbook, record: OrderRow) -> None:
    """Append an order header and one ``OrderItems`` row per line.

    Line numbers start at 1 and follow the sequence of ``record.items``.
    """

    workbook[ORDERS_SHEET].append(serialize_order(record))
    items_sheet = workbook[ORDER_ITEMS_SHEET]
    for line_number, item in enumerate(record.items, start=1):
        items_sheet.append(serialize_order_item(record.order_id, line_number, item))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a ledger entry to the ``Transactions`` worksheet."""

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Overwrite selected columns of an existing product row.

    Only the named columns change; other cells stay untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the row.
        field_values (Mapping[str, Any]): Column header to new value.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def delete_product(workbook: Workbook, product_id: str) -> bool:
    """Remove the product row matching ``product_id``.

    Returns:
        bool: ``True`` when a row was removed, ``False`` if none matched.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        return False
    workbook[PRODUCTS_SHEET].delete_rows(row_index)
    return True


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match.

    Returns:
        int | None: 1-based row index of the match, or ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the header row.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def create_sheet_with_headers(workbook: Workbook, sheet_name: str, columns: Sequence[str], *, index: Optional[int] = None):
    """Create ``sheet_name`` with a bold header row and return the worksheet."""

    bold_font = Font(bold=True)
    worksheet = workbook.create_sheet(title=sheet_name, index=index)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return worksheet


def clear_sheet(workbook: Workbook, sheet_name: str) -> int:
    """Drop every data row below the header and return how many records went.

    The sheet is recreated in place with its original header so that later
    appends start again at row 2.
    """

    sheet = workbook[sheet_name]
    removed = sum(1 for _ in _iter_raw_rows(workbook, sheet_name))
    headers = [cell.value for cell in sheet[1]]
    index = workbook.index(sheet)
    workbook.remove(sheet)
    create_sheet_with_headers(workbook, sheet_name, headers, index=index)
    return removed


def replace_rows(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[Any]]) -> None:
    """Swap the data rows of ``sheet_name`` for ``rows``, keeping the header."""

    clear_sheet(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for row in rows:
        sheet.append(list(row))


def snapshot_sheets(workbook: Workbook, sheet_names: Iterable[str]) -> SheetSnapshot:
    """Capture the raw data rows of each named sheet.

    Fully empty rows are kept so that :func:`restore_sheets` reproduces the
    sheet layout exactly.
    """

    snapshot: SheetSnapshot = {}
    for name in sheet_names:
        sheet = workbook[name]
        snapshot[name] = [tuple(row) for row in sheet.iter_rows(min_row=2, values_only=True)]
    log.debug("Captured snapshot of sheets: %s", ", ".join(snapshot))
    return snapshot


def restore_sheets(workbook: Workbook, snapshot: SheetSnapshot) -> None:
    """Write a snapshot taken by :func:`snapshot_sheets` back into the workbook."""

    for name, rows in snapshot.items():
        replace_rows(workbook, name, rows)
    log.debug("Restored snapshot of sheets: %s", ", ".join(snapshot))


def _header_map(sheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product in ``PRODUCT_COLUMNS`` order."""

    return [
        record.product_id,
        record.name,
        record.sku,
        record.category,
        record.price,
        record.cost,
        record.stock,
        record.size,
        record.image,
        record.barcode,
        record.created_at,
        record.updated_at,
    ]


def serialize_order(record: OrderRow) -> list[object]:
    """Arrange an order header in ``ORDER_COLUMNS`` order (items excluded)."""

    return [
        record.order_id,
        record.total,
        record.payment_method,
        record.status,
        record.created_at,
    ]


def serialize_order_item(order_id: str, line_number: int, item: OrderItemRow) -> list[object]:
    return [order_id, line_number, item.product_id, item.quantity, item.price]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Arrange a ledger entry in ``TRANSACTION_COLUMNS`` order."""

    return [
        record.transaction_id,
        record.transaction_type,
        record.amount,
        record.description,
        record.order_id,
        record.created_at,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a :class:`ProductRow`.

    Excel hands numbers back as ``int`` or ``float``; prices and costs are
    normalized to :class:`~decimal.Decimal` and stock to ``int``. Blank text
    cells become empty strings.
    """

    (
        product_id,
        name,
        sku,
        category,
        price_raw,
        cost_raw,
        stock_raw,
        size,
        image,
        barcode,
        created_at,
        updated_at,
    ) = raw_row

    return ProductRow(
        product_id=str(product_id),
        name=_to_text(name),
        sku=_to_text(sku),
        category=_to_text(category),
        price=_to_decimal(price_raw),
        cost=_to_decimal(cost_raw),
        stock=int(stock_raw) if stock_raw is not None else 0,
        size=_to_text(size),
        image=_to_text(image),
        barcode=_to_text(barcode),
        created_at=_to_text(created_at),
        updated_at=_to_text(updated_at),
    )


def deserialize_order_item(raw_row: Sequence[object]) -> Tuple[str, int, OrderItemRow]:
    order_id, line_number, product_id, quantity, unit_price = raw_row
    item = OrderItemRow(
        product_id=str(product_id),
        quantity=int(quantity) if quantity is not None else 0,
        price=_to_decimal(unit_price),
    )
    return str(order_id), int(line_number) if line_number is not None else 0, item


def deserialize_order(raw_row: Sequence[object], *, items: Tuple[OrderItemRow, ...] = ()) -> OrderRow:
    """Convert a raw ``Orders`` row plus its already-parsed items into an :class:`OrderRow`."""

    order_id, total_raw, payment_method, status, created_at = raw_row
    return OrderRow(
        order_id=str(order_id),
        items=items,
        total=_to_decimal(total_raw),
        payment_method=_to_text(payment_method),
        status=_to_text(status),
        created_at=_to_text(created_at),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a :class:`TransactionRow`.

    ``OrderID`` stays ``None`` when blank; the description defaults to an
    empty string.
    """

    transaction_id, transaction_type, amount_raw, description, order_id, created_at = raw_row
    return TransactionRow(
        transaction_id=str(transaction_id),
        transaction_type=_to_text(transaction_type),
        amount=_to_decimal(amount_raw),
        description=_to_text(description),
        order_id=str(order_id) if order_id not in (None, "") else None,
        created_at=_to_text(created_at),
    )
