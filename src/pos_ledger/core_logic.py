"""Business logic layer for the point-of-sale ledger.

This module owns the product catalog and the order/transaction ledger. It
consumes the Data Access Layer (DAL) for all I/O and makes sure every
mutation passes input validation first. Order creation is the only write that
touches several sheets; it runs inside :func:`ledger_transaction` so that a
failure part-way through leaves the workbook exactly as it was.
"""

from __future__ import annotations

import random
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union
from zipfile import BadZipFile

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ORDER_SHORT_ID_LENGTH,
    Category,
    OrderStatus,
    PaymentMethod,
    SheetName,
    StockFilter,
    TransactionType,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced product, order, or transaction is unknown."""


class ValidationError(BusinessRuleViolation):
    """Raised when input is malformed. Nothing has been written when it surfaces."""

    def __init__(self, errors: Union[str, Tuple[str, ...], List[str]]):
        if isinstance(errors, str):
            errors = (errors,)
        self.errors: Tuple[str, ...] = tuple(errors)
        super().__init__("; ".join(self.errors))


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a cart asks for more units than the product has in stock."""


class StorageUnavailableError(RuntimeError):
    """Raised when the ledger workbook cannot be read or written."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating user input at the store boundary.

    ``values`` holds the normalized fields that passed, ``errors`` one
    message per rejected field.
    """

    values: Mapping[str, Any]
    errors: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class OrderLine:
    """One requested line of an order."""

    product_id: str
    quantity: int
    price: Decimal


@dataclass(frozen=True)
class OrderCommand:
    """User intent for creating an order at checkout."""

    items: Tuple[OrderLine, ...]
    total: Decimal
    payment_method: PaymentMethod
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionCommand:
    """User intent for appending a ledger entry."""

    transaction_type: TransactionType
    amount: Decimal
    description: str
    order_id: Optional[str] = None
    timestamp: Optional[datetime] = None


PRODUCT_TEXT_FIELDS: Tuple[str, ...] = ("name", "sku", "size", "image", "barcode")
EDITABLE_PRODUCT_FIELDS = frozenset((*PRODUCT_TEXT_FIELDS, "category", "price", "cost", "stock"))

LEDGER_SHEETS: Tuple[str, ...] = (
    SheetName.PRODUCTS.value,
    SheetName.ORDERS.value,
    SheetName.ORDER_ITEMS.value,
    SheetName.TRANSACTIONS.value,
)
PRODUCT_SHEETS: Tuple[str, ...] = (SheetName.PRODUCTS.value,)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id() -> str:
    """Return a new opaque record identifier (32 lowercase hex characters)."""

    return uuid.uuid4().hex


def generate_sku(*, when: Optional[datetime] = None) -> str:
    """Build a fallback SKU of the form ``AUTO-<epoch-ms>-<0..999>``."""

    when = _resolve_timestamp(when)
    millis = int(when.timestamp() * 1000)
    return f"AUTO-{millis}-{random.randrange(1000)}"


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the cache bucket called ``name``, creating it on first use.

    Buckets hold precomputed query results per record collection so that the
    workbook is not rescanned on every read.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write. Unknown names are ignored."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_orders_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "orders")
    if "all" not in bucket:
        all_orders = list(data_manager.iter_orders(context.workbook))
        bucket["all"] = all_orders
        bucket["by_id"] = {order.order_id: order for order in all_orders}
        log.debug("Populated orders cache with %d entries", len(all_orders))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = list(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        bucket["by_id"] = {transaction.transaction_id: transaction for transaction in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def invalidate_all_caches(context: RuntimeContext) -> None:
    """Drop every cached collection so the next read rescans the workbook."""

    _invalidate_cache(context, "products", "orders", "transactions")


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Settings plus an open workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        StorageUnavailableError: If the workbook is missing or unreadable.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = _open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def _open_workbook(data_file: Path) -> Workbook:
    try:
        return data_manager.open_workbook(data_file)
    except (OSError, InvalidFileException, BadZipFile) as exc:
        log.error("Ledger workbook '%s' is unavailable: %s", data_file, exc)
        raise StorageUnavailableError(f"Ledger workbook unavailable: {data_file}") from exc


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a workbook whose declared schema is not ours.

    Raises:
        RuntimeError: If ``config.ini`` declares a schema version other than
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook to the configured data file.

    Raises:
        StorageUnavailableError: If the file cannot be written.
    """
    try:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    except OSError as exc:
        log.error("Could not save workbook '%s': %s", context.settings.data_file, exc)
        raise StorageUnavailableError(f"Could not save ledger workbook: {exc}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, discarding unsaved modifications.

    A new :class:`RuntimeContext` with an empty cache is returned; the old
    context should no longer be used.
    """
    try:
        workbook = data_manager.refresh_workbook(context.settings.data_file)
    except (OSError, InvalidFileException, BadZipFile) as exc:
        log.error("Could not reload workbook '%s': %s", context.settings.data_file, exc)
        raise StorageUnavailableError(f"Ledger workbook unavailable: {context.settings.data_file}") from exc
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


@contextmanager
def ledger_transaction(
    context: RuntimeContext, sheets: Iterable[str] = LEDGER_SHEETS
) -> Iterator[RuntimeContext]:
    """Run a block of ledger writes as one unit.

    The named sheets (every ledger sheet by default) are snapshotted on
    entry. If the block raises, the snapshot is written back before the
    exception propagates. Caches are dropped on exit either way.

    Args:
        context (RuntimeContext): Context whose workbook is being mutated.
        sheets (Iterable[str]): Sheets the block may write to.

    Yields:
        RuntimeContext: The same context, for convenience.
    """
    snapshot = data_manager.snapshot_sheets(context.workbook, sheets)
    try:
        yield context
    except Exception:
        log.error("Ledger write failed; restoring %d sheets", len(snapshot))
        data_manager.restore_sheets(context.workbook, snapshot)
        raise
    finally:
        invalidate_all_caches(context)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def _parse_money(raw: Any, label: str, errors: List[str]) -> Optional[Decimal]:
    if isinstance(raw, bool):
        errors.append(f"{label} must be a number")
        return None
    try:
        if isinstance(raw, Decimal):
            value = raw
        elif isinstance(raw, (int, float, str)):
            value = Decimal(str(raw).strip())
        else:
            errors.append(f"{label} must be a number")
            return None
    except InvalidOperation:
        errors.append(f"{label} must be a number, got {raw!r}")
        return None
    if not value.is_finite() or value < 0:
        errors.append(f"{label} must be zero or positive")
        return None
    return value


def _parse_stock(raw: Any, errors: List[str]) -> Optional[int]:
    if isinstance(raw, bool):
        errors.append("stock must be a whole number")
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        try:
            value = int(raw.strip())
        except ValueError:
            errors.append(f"stock must be a whole number, got {raw!r}")
            return None
    elif isinstance(raw, Decimal) and raw.is_finite() and raw == raw.to_integral_value():
        value = int(raw)
    else:
        errors.append(f"stock must be a whole number, got {raw!r}")
        return None
    if value < 0:
        errors.append("stock must be zero or positive")
        return None
    return value


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def has_illegal_characters(text: str) -> bool:
    """Whether ``text`` holds control characters a worksheet cell cannot store."""
    return ILLEGAL_CHARACTERS_RE.search(text) is not None


def _parse_text(raw: str, label: str, errors: List[str]) -> Optional[str]:
    if has_illegal_characters(raw):
        errors.append(f"{label} contains control characters")
        return None
    return raw.strip()


def validate_product_fields(fields: Mapping[str, Any], *, partial: bool = False) -> ValidationResult:
    """Check and normalize product input before it reaches the store.

    With ``partial=False`` (adding a product) ``name``, ``category``,
    ``price`` and ``stock`` are required, ``cost`` defaults to zero and the
    free-text fields default to empty strings. With ``partial=True``
    (updating) only the supplied keys are checked.

    Prices and costs become :class:`~decimal.Decimal`, stock becomes ``int``
    and the category becomes its enum value. Nothing is coerced silently: a
    value that cannot be read is reported in ``errors`` instead.

    Args:
        fields (Mapping[str, Any]): Raw field values keyed by attribute name.
        partial (bool): Validate only the keys present in ``fields``.

    Returns:
        ValidationResult: Normalized values and any error messages.
    """
    errors: List[str] = []
    values: Dict[str, Any] = {}

    for unknown in sorted(set(fields) - EDITABLE_PRODUCT_FIELDS):
        errors.append(f"Unknown product field: {unknown}")

    def wants(name: str) -> bool:
        return not partial or name in fields

    if wants("name"):
        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append("name is required")
        else:
            text = _parse_text(name, "name", errors)
            if text is not None:
                values["name"] = text

    if wants("category"):
        try:
            values["category"] = Category(fields.get("category")).value
        except ValueError:
            allowed = ", ".join(member.value for member in Category)
            errors.append(f"category must be one of: {allowed}")

    if wants("price"):
        if _is_blank(fields.get("price")):
            errors.append("price is required")
        else:
            price = _parse_money(fields["price"], "price", errors)
            if price is not None:
                values["price"] = price

    if wants("cost"):
        raw_cost = fields.get("cost")
        if _is_blank(raw_cost):
            values["cost"] = Decimal("0")
        else:
            cost = _parse_money(raw_cost, "cost", errors)
            if cost is not None:
                values["cost"] = cost

    if wants("stock"):
        if _is_blank(fields.get("stock")):
            errors.append("stock is required")
        else:
            stock = _parse_stock(fields["stock"], errors)
            if stock is not None:
                values["stock"] = stock

    for text_field in ("sku", "size", "image", "barcode"):
        if not wants(text_field):
            continue
        raw = fields.get(text_field)
        if raw is None:
            values[text_field] = ""
        elif isinstance(raw, str):
            text = _parse_text(raw, text_field, errors)
            if text is not None:
                values[text_field] = text
        else:
            errors.append(f"{text_field} must be text")

    return ValidationResult(values=values, errors=tuple(errors))


def validate_order_command(command: OrderCommand) -> ValidationResult:
    """Check an order request before any sheet is touched."""

    errors: List[str] = []
    if not command.items:
        errors.append("An order needs at least one item")
    for position, line in enumerate(command.items, start=1):
        if not isinstance(line.product_id, str) or not line.product_id:
            errors.append(f"Item {position}: product id is required")
        elif has_illegal_characters(line.product_id):
            errors.append(f"Item {position}: product id contains control characters")
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            errors.append(f"Item {position}: quantity must be a positive whole number")
        if not isinstance(line.price, Decimal) or not line.price.is_finite() or line.price < 0:
            errors.append(f"Item {position}: price must be a non-negative decimal")
    if not isinstance(command.payment_method, PaymentMethod):
        errors.append(f"Unsupported payment method: {command.payment_method}")
    if not isinstance(command.total, Decimal) or not command.total.is_finite() or command.total < 0:
        errors.append("total must be a non-negative decimal")
    return ValidationResult(values={}, errors=tuple(errors))


# ---------------------------------------------------------------------------
# Catalog store
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order.

    The list is a copy of the cached collection, so callers may sort or
    filter it freely.
    """
    return list(_ensure_products_cache(context)["all"])


def _find_product(context: RuntimeContext, product_id: str) -> Optional[data_manager.ProductRow]:
    return _ensure_products_cache(context)["by_id"].get(product_id)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by its identifier.

    Raises:
        NotFoundError: If ``product_id`` is absent from the catalog.
    """
    product = _find_product(context, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}")
    return product


def get_product_by_barcode(context: RuntimeContext, code: str) -> Optional[data_manager.ProductRow]:
    """Return the first product whose barcode equals ``code``, or ``None``.

    Surrounding whitespace from the scanner is ignored. Products without a
    barcode never match, so a blank code always yields ``None``.
    """
    code = (code or "").strip()
    if not code:
        return None
    for product in _ensure_products_cache(context)["all"]:
        if product.barcode and product.barcode == code:
            return product
    log.info("No product matches barcode '%s'", code)
    return None


def search_products(context: RuntimeContext, query: str) -> List[data_manager.ProductRow]:
    """Case-insensitive substring search over name, SKU, and barcode."""

    needle = query.lower()
    return [
        product
        for product in _ensure_products_cache(context)["all"]
        if needle in product.name.lower()
        or needle in product.sku.lower()
        or (product.barcode and needle in product.barcode.lower())
    ]


def filter_products_by_category(
    context: RuntimeContext,
    tag: Union[str, Category, StockFilter],
) -> List[data_manager.ProductRow]:
    """Filter the catalog by category or stock pseudo-category.

    ``"all"`` returns everything, ``"out-of-stock"`` products whose stock is
    exactly zero, and ``"low-stock"`` products with ``0 < stock <=`` the
    configured threshold. Any other tag must name a :class:`Category`.

    Args:
        context (RuntimeContext): Runtime context with settings and caches.
        tag (str | Category | StockFilter): Filter to apply.

    Returns:
        list[data_manager.ProductRow]: Matching products in sheet order.

    Raises:
        ValidationError: If ``tag`` is neither a stock filter nor a category.
    """
    value = tag.value if isinstance(tag, (Category, StockFilter)) else str(tag)
    products = _ensure_products_cache(context)["all"]
    threshold = context.settings.low_stock_threshold

    if value == StockFilter.ALL.value:
        return list(products)
    if value == StockFilter.OUT_OF_STOCK.value:
        return [product for product in products if product.stock == 0]
    if value == StockFilter.LOW_STOCK.value:
        return [product for product in products if 0 < product.stock <= threshold]
    if value in {member.value for member in Category}:
        return [product for product in products if product.category == value]

    log.warning("Unknown category filter '%s'", value)
    raise ValidationError(f"Unknown category filter: {value}")


def add_product(context: RuntimeContext, **fields: Any) -> data_manager.ProductRow:
    """Validate and append a new product.

    The store assigns ``product_id`` and both timestamps. A blank SKU is
    replaced by :func:`generate_sku`.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        **fields: Product attributes (see :func:`validate_product_fields`).

    Returns:
        data_manager.ProductRow: The stored product.

    Raises:
        ValidationError: If any field is missing or malformed.
    """
    result = validate_product_fields(fields)
    if not result.ok:
        log.error("Rejected new product: %s", "; ".join(result.errors))
        raise ValidationError(result.errors)

    values = dict(result.values)
    timestamp = datetime.now(UTC)
    if not values["sku"]:
        values["sku"] = generate_sku(when=timestamp)

    product = data_manager.ProductRow(
        product_id=generate_id(),
        created_at=timestamp.isoformat(),
        updated_at=timestamp.isoformat(),
        **values,
    )
    with ledger_transaction(context, PRODUCT_SHEETS):
        data_manager.append_product(context.workbook, product)
    log.info("Added product '%s' (%s, sku=%s)", product.product_id, product.name, product.sku)
    return product


def _merge_product(
    context: RuntimeContext,
    product: data_manager.ProductRow,
    values: Mapping[str, Any],
    *,
    timestamp: datetime,
) -> data_manager.ProductRow:
    """Shallow-merge ``values`` into ``product``, restamp it, and write the changed cells."""

    updated = replace(product, **values, updated_at=timestamp.isoformat())
    columns = {
        data_manager.PRODUCT_FIELD_COLUMNS[name]: getattr(updated, name)
        for name in (*values, "updated_at")
    }
    data_manager.update_product(context.workbook, product.product_id, field_values=columns)
    _invalidate_cache(context, "products")
    return updated


def update_product(context: RuntimeContext, product_id: str, **changes: Any) -> data_manager.ProductRow:
    """Apply a partial update to an existing product.

    Only the supplied fields are validated and changed; ``updated_at`` is
    always restamped. An empty SKU is regenerated the same way as on add.

    Raises:
        NotFoundError: If ``product_id`` is not in the catalog.
        ValidationError: If a supplied field is unknown or malformed.
    """
    product = get_product(context, product_id)
    result = validate_product_fields(changes, partial=True)
    if not result.ok:
        log.error("Rejected update for product '%s': %s", product_id, "; ".join(result.errors))
        raise ValidationError(result.errors)

    values = dict(result.values)
    timestamp = datetime.now(UTC)
    if "sku" in values and not values["sku"]:
        values["sku"] = generate_sku(when=timestamp)

    with ledger_transaction(context, PRODUCT_SHEETS):
        updated = _merge_product(context, product, values, timestamp=timestamp)
    log.info("Updated product '%s' (%s)", product_id, ", ".join(sorted(values)) or "timestamp only")
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> bool:
    """Remove a product if it exists. Orders that reference it are left as they are.

    Returns:
        bool: ``True`` when a product was removed, ``False`` for a no-op.
    """
    removed = data_manager.delete_product(context.workbook, product_id)
    if removed:
        _invalidate_cache(context, "products")
        log.info("Deleted product '%s'", product_id)
    else:
        log.info("Delete skipped: product '%s' does not exist", product_id)
    return removed


# ---------------------------------------------------------------------------
# Order and transaction ledger
# ---------------------------------------------------------------------------


def list_orders(context: RuntimeContext) -> List[data_manager.OrderRow]:
    """Return all orders in the order they were created."""

    return list(_ensure_orders_cache(context)["all"])


def get_order(context: RuntimeContext, order_id: str) -> data_manager.OrderRow:
    """Resolve an order by id.

    Raises:
        NotFoundError: If no order has ``order_id``.
    """
    try:
        return _ensure_orders_cache(context)["by_id"][order_id]
    except KeyError as exc:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise NotFoundError(f"Unknown order id: {order_id}") from exc


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return the append-only transaction log in sheet order."""

    return list(_ensure_transactions_cache(context)["all"])


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction by id.

    Raises:
        NotFoundError: If the log lacks ``transaction_id``.
    """
    try:
        return _ensure_transactions_cache(context)["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}") from exc


def transactions_for_order(context: RuntimeContext, order_id: str) -> List[data_manager.TransactionRow]:
    """Return the ledger entries whose ``order_id`` back-reference matches."""

    return [
        transaction
        for transaction in _ensure_transactions_cache(context)["all"]
        if transaction.order_id == order_id
    ]


def describe_order(order: data_manager.OrderRow) -> str:
    """Human-facing label used as the sale transaction description."""

    return f"Order #{order.order_id[:ORDER_SHORT_ID_LENGTH]}"


def build_order(command: OrderCommand, *, order_id: str, timestamp: datetime) -> data_manager.OrderRow:
    """Materialize an :class:`OrderCommand` into a completed order row."""

    return data_manager.OrderRow(
        order_id=order_id,
        items=tuple(
            data_manager.OrderItemRow(product_id=line.product_id, quantity=line.quantity, price=line.price)
            for line in command.items
        ),
        total=command.total,
        payment_method=command.payment_method.value,
        status=OrderStatus.COMPLETED.value,
        created_at=timestamp.isoformat(),
    )


def build_transaction(command: TransactionCommand, *, transaction_id: str, timestamp: datetime) -> data_manager.TransactionRow:
    """Materialize a :class:`TransactionCommand` into a ledger row."""

    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        transaction_type=command.transaction_type.value,
        amount=command.amount,
        description=command.description,
        order_id=command.order_id,
        created_at=timestamp.isoformat(),
    )


def record_transaction(context: RuntimeContext, command: TransactionCommand) -> data_manager.TransactionRow:
    """Append one entry to the transaction log.

    Raises:
        ValidationError: If the type is not a :class:`TransactionType` or the
            amount is not a finite decimal.
    """
    errors: List[str] = []
    if not isinstance(command.transaction_type, TransactionType):
        errors.append(f"Unsupported transaction type: {command.transaction_type}")
    if not isinstance(command.amount, Decimal) or not command.amount.is_finite():
        errors.append("amount must be a finite decimal")
    if not isinstance(command.description, str) or has_illegal_characters(command.description):
        errors.append("description must be text without control characters")
    if errors:
        log.error("Rejected transaction: %s", "; ".join(errors))
        raise ValidationError(errors)

    timestamp = _resolve_timestamp(command.timestamp)
    transaction = build_transaction(command, transaction_id=generate_id(), timestamp=timestamp)
    data_manager.append_transaction(context.workbook, transaction)
    _invalidate_cache(context, "transactions")
    log.info(
        "Recorded %s transaction '%s' (amount=%s)",
        transaction.transaction_type,
        transaction.transaction_id,
        transaction.amount,
    )
    return transaction


def create_order(context: RuntimeContext, command: OrderCommand) -> data_manager.OrderRow:
    """Record a completed order together with its stock and ledger effects.

    Three writes happen, in this order, inside :func:`ledger_transaction`:

    1. The order header and its lines are appended.
    2. Each referenced product has its stock lowered by the line quantity
       through the same merge path as :func:`update_product`. Products that
       no longer exist are skipped. Stock is allowed to go negative; that
       case is logged as an oversell.
    3. One ``sale`` transaction for the order total is appended, linked
       through ``order_id``.

    If any step raises, all sheets are restored and the exception
    propagates. ``command.total`` is trusted; a mismatch with the line sum is
    logged but not rejected.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (OrderCommand): Checkout request.

    Returns:
        data_manager.OrderRow: The stored order.

    Raises:
        ValidationError: If the command is malformed.
    """
    result = validate_order_command(command)
    if not result.ok:
        log.error("Rejected order: %s", "; ".join(result.errors))
        raise ValidationError(result.errors)

    line_sum = sum((line.price * line.quantity for line in command.items), Decimal("0"))
    if line_sum != command.total:
        log.warning("Order total %s differs from line sum %s", command.total, line_sum)

    timestamp = _resolve_timestamp(command.timestamp)
    order = build_order(command, order_id=generate_id(), timestamp=timestamp)

    with ledger_transaction(context):
        data_manager.append_order(context.workbook, order)
        _invalidate_cache(context, "orders")

        for item in order.items:
            product = _find_product(context, item.product_id)
            if product is None:
                log.warning(
                    "Order '%s' references missing product '%s'; stock left unchanged",
                    order.order_id,
                    item.product_id,
                )
                continue
            remaining = product.stock - item.quantity
            if remaining < 0:
                log.warning("Product '%s' oversold: stock now %d", product.product_id, remaining)
            _merge_product(context, product, {"stock": remaining}, timestamp=timestamp)

        record_transaction(
            context,
            TransactionCommand(
                transaction_type=TransactionType.SALE,
                amount=order.total,
                description=describe_order(order),
                order_id=order.order_id,
                timestamp=timestamp,
            ),
        )

    log.info(
        "Created order '%s' with %d item(s), total=%s, payment=%s",
        order.order_id,
        len(order.items),
        order.total,
        order.payment_method,
    )
    return order
