"""Backup, restore, and wipe operations for the whole ledger.

The backup document is plain JSON::

    {
        "products": [...],
        "orders": [...],
        "transactions": [...],
        "exportDate": "2026-10-19T09:30:00+00:00",
        "version": "1.0.0"
    }

Records use camelCase keys (``createdAt``, ``paymentMethod``, ...). An import
is all-or-nothing: the document is fully parsed and validated before a single
sheet is touched, and the sheets are then replaced inside
:func:`~pos_ledger.core_logic.ledger_transaction`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from . import core_logic, data_manager, log
from .constants import CLEAR_ALL_CONFIRMATION, EXPORT_VERSION, OrderStatus

COLLECTION_KEYS: Tuple[str, ...] = ("products", "orders", "transactions")

_Row = TypeVar("_Row")


@dataclass(frozen=True)
class ImportResult:
    """Counts of restored records. Callers should reload their views afterwards."""

    products: int
    orders: int
    transactions: int
    requires_reload: bool = True


@dataclass(frozen=True)
class ClearResult:
    products: int
    orders: int
    transactions: int


def product_to_document(product: data_manager.ProductRow) -> Dict[str, Any]:
    return {
        "id": product.product_id,
        "name": product.name,
        "sku": product.sku,
        "category": product.category,
        "price": product.price,
        "cost": product.cost,
        "stock": product.stock,
        "size": product.size,
        "image": product.image,
        "barcode": product.barcode,
        "createdAt": product.created_at,
        "updatedAt": product.updated_at,
    }


def order_to_document(order: data_manager.OrderRow) -> Dict[str, Any]:
    return {
        "id": order.order_id,
        "items": [
            {"productId": item.product_id, "quantity": item.quantity, "price": item.price}
            for item in order.items
        ],
        "total": order.total,
        "paymentMethod": order.payment_method,
        "status": order.status,
        "createdAt": order.created_at,
    }


def transaction_to_document(transaction: data_manager.TransactionRow) -> Dict[str, Any]:
    return {
        "id": transaction.transaction_id,
        "type": transaction.transaction_type,
        "amount": transaction.amount,
        "description": transaction.description,
        "orderId": transaction.order_id,
        "createdAt": transaction.created_at,
    }


def _money(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise TypeError(f"expected a number, got {value!r}")
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise ValueError(f"expected a finite number, got {value!r}")
    return amount


def _whole(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError(f"expected a whole number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    raise TypeError(f"expected a whole number, got {value!r}")


def _text(value: Any, *, default: Optional[str] = None) -> str:
    if value is None and default is not None:
        return default
    if not isinstance(value, str):
        raise TypeError(f"expected text, got {value!r}")
    if core_logic.has_illegal_characters(value):
        raise ValueError(f"text contains control characters: {value!r}")
    return value


def _identifier(value: Any) -> str:
    text = _text(value)
    if not text:
        raise ValueError("id must not be empty")
    return text


def _timestamp(value: Any) -> str:
    text = _text(value)
    datetime.fromisoformat(text)
    return text


def _mapping(raw: Any) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise TypeError(f"expected an object, got {type(raw).__name__}")
    return raw


def product_from_document(raw: Any) -> data_manager.ProductRow:
    """Parse one product record. Optional text fields default to empty strings."""

    doc = _mapping(raw)
    return data_manager.ProductRow(
        product_id=_identifier(doc["id"]),
        name=_text(doc["name"]),
        sku=_text(doc.get("sku"), default=""),
        category=_text(doc["category"]),
        price=_money(doc["price"]),
        cost=_money(doc.get("cost", 0)),
        stock=_whole(doc["stock"]),
        size=_text(doc.get("size"), default=""),
        image=_text(doc.get("image"), default=""),
        barcode=_text(doc.get("barcode"), default=""),
        created_at=_text(doc.get("createdAt"), default=""),
        updated_at=_text(doc.get("updatedAt"), default=""),
    )


def order_from_document(raw: Any) -> data_manager.OrderRow:
    """Parse one order record including its line items."""

    doc = _mapping(raw)
    raw_items = doc["items"]
    if not isinstance(raw_items, list):
        raise TypeError("items must be a list")
    items = []
    for raw_item in raw_items:
        item = _mapping(raw_item)
        items.append(
            data_manager.OrderItemRow(
                product_id=_identifier(item["productId"]),
                quantity=_whole(item["quantity"]),
                price=_money(item["price"]),
            )
        )
    return data_manager.OrderRow(
        order_id=_identifier(doc["id"]),
        items=tuple(items),
        total=_money(doc["total"]),
        payment_method=_text(doc["paymentMethod"]),
        status=_text(doc.get("status"), default=OrderStatus.COMPLETED.value),
        created_at=_timestamp(doc["createdAt"]),
    )


def transaction_from_document(raw: Any) -> data_manager.TransactionRow:
    doc = _mapping(raw)
    order_id = doc.get("orderId")
    return data_manager.TransactionRow(
        transaction_id=_identifier(doc["id"]),
        transaction_type=_text(doc["type"]),
        amount=_money(doc["amount"]),
        description=_text(doc.get("description"), default=""),
        order_id=_text(order_id) if order_id else None,
        created_at=_timestamp(doc["createdAt"]),
    )


def export_all(context: core_logic.RuntimeContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Snapshot every collection into a backup document.

    Monetary values stay :class:`~decimal.Decimal` in the returned mapping;
    :func:`write_document` converts them to JSON numbers.
    """
    now = now if now is not None else datetime.now(UTC)
    document = {
        "products": [product_to_document(product) for product in core_logic.list_products(context)],
        "orders": [order_to_document(order) for order in core_logic.list_orders(context)],
        "transactions": [
            transaction_to_document(transaction) for transaction in core_logic.list_transactions(context)
        ],
        "exportDate": now.isoformat(),
        "version": EXPORT_VERSION,
    }
    log.info(
        "Exported %d products, %d orders, %d transactions",
        len(document["products"]),
        len(document["orders"]),
        len(document["transactions"]),
    )
    return document


def default_export_filename(now: Optional[datetime] = None) -> str:
    now = now if now is not None else datetime.now(UTC)
    return f"pos-backup-{int(now.timestamp() * 1000)}.json"


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def write_document(document: Mapping[str, Any], destination: Path) -> Path:
    """Write a backup or report document as indented UTF-8 JSON."""

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(
        json.dumps(document, indent=2, ensure_ascii=False, default=_json_default),
        encoding="utf-8",
    )
    log.info("Wrote document '%s'", destination)
    return destination


def read_document(source: Path) -> Any:
    """Load a JSON document, keeping non-integer numbers as :class:`~decimal.Decimal`.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
        ValidationError: If the file is not valid UTF-8 JSON.
    """
    source = Path(source).expanduser().resolve()
    text = source.read_bytes()
    try:
        return json.loads(text.decode("utf-8"), parse_float=Decimal)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        log.error("Backup file '%s' is not valid JSON: %s", source, exc)
        raise core_logic.ValidationError(f"Not a valid backup file: {exc}") from exc


def _parse_collection(
    records: List[Any],
    parser: Callable[[Any], _Row],
    label: str,
    errors: List[str],
) -> List[_Row]:
    rows: List[_Row] = []
    for index, raw in enumerate(records):
        try:
            rows.append(parser(raw))
        except KeyError as exc:
            errors.append(f"{label}[{index}]: missing field {exc}")
        except (TypeError, ValueError, InvalidOperation) as exc:
            errors.append(f"{label}[{index}]: {exc}")
    return rows


def parse_document(
    document: Any,
) -> Tuple[List[data_manager.ProductRow], List[data_manager.OrderRow], List[data_manager.TransactionRow]]:
    """Validate a backup document and parse its three collections.

    Raises:
        ValidationError: If the document is not an object, a collection is
            missing or not a list, or any record is malformed. All problems
            are reported together.
    """
    if not isinstance(document, Mapping):
        raise core_logic.ValidationError("Backup document must be a JSON object")

    missing = [key for key in COLLECTION_KEYS if key not in document]
    if missing:
        raise core_logic.ValidationError(f"Backup document is missing: {', '.join(missing)}")
    not_lists = [key for key in COLLECTION_KEYS if not isinstance(document[key], list)]
    if not_lists:
        raise core_logic.ValidationError(f"Backup collections must be lists: {', '.join(not_lists)}")

    errors: List[str] = []
    products = _parse_collection(document["products"], product_from_document, "products", errors)
    orders = _parse_collection(document["orders"], order_from_document, "orders", errors)
    transactions = _parse_collection(document["transactions"], transaction_from_document, "transactions", errors)
    if errors:
        raise core_logic.ValidationError(errors)
    return products, orders, transactions


def import_all(context: core_logic.RuntimeContext, document: Any) -> ImportResult:
    """Overwrite products, orders, and transactions with a backup document.

    There is no merge: whatever the workbook held before is replaced. The
    document is validated completely first, so a malformed backup changes
    nothing.

    Args:
        context (core_logic.RuntimeContext): Context whose workbook is
            overwritten.
        document (Any): Parsed backup, e.g. from :func:`read_document` or
            :func:`export_all`.

    Returns:
        ImportResult: Record counts, with ``requires_reload`` set.

    Raises:
        ValidationError: If the document fails validation.
    """
    try:
        products, orders, transactions = parse_document(document)
    except core_logic.ValidationError as exc:
        log.error("Import rejected: %s", exc)
        raise

    workbook = context.workbook
    with core_logic.ledger_transaction(context):
        data_manager.replace_rows(
            workbook, data_manager.PRODUCTS_SHEET, (data_manager.serialize_product(p) for p in products)
        )
        data_manager.replace_rows(
            workbook, data_manager.ORDERS_SHEET, (data_manager.serialize_order(o) for o in orders)
        )
        data_manager.replace_rows(
            workbook,
            data_manager.ORDER_ITEMS_SHEET,
            (
                data_manager.serialize_order_item(order.order_id, line_number, item)
                for order in orders
                for line_number, item in enumerate(order.items, start=1)
            ),
        )
        data_manager.replace_rows(
            workbook,
            data_manager.TRANSACTIONS_SHEET,
            (data_manager.serialize_transaction(t) for t in transactions),
        )

    log.info(
        "Imported %d products, %d orders, %d transactions",
        len(products),
        len(orders),
        len(transactions),
    )
    return ImportResult(products=len(products), orders=len(orders), transactions=len(transactions))


def require_clear_confirmation(text: Optional[str]) -> None:
    """Check the phrase a user typed before wiping the ledger.

    Raises:
        ValidationError: Unless ``text`` equals ``CLEAR_ALL_CONFIRMATION``.
    """
    if text != CLEAR_ALL_CONFIRMATION:
        log.warning("Clear-all confirmation did not match")
        raise core_logic.ValidationError(f'Type "{CLEAR_ALL_CONFIRMATION}" to confirm')


def clear_all(context: core_logic.RuntimeContext) -> ClearResult:
    """Erase every product, order, and transaction. This cannot be undone once persisted."""

    counts = {}
    with core_logic.ledger_transaction(context):
        for sheet_name in core_logic.LEDGER_SHEETS:
            counts[sheet_name] = data_manager.clear_sheet(context.workbook, sheet_name)

    result = ClearResult(
        products=counts[data_manager.PRODUCTS_SHEET],
        orders=counts[data_manager.ORDERS_SHEET],
        transactions=counts[data_manager.TRANSACTIONS_SHEET],
    )
    log.info(
        "Cleared ledger: %d products, %d orders, %d transactions",
        result.products,
        result.orders,
        result.transactions,
    )
    return result
