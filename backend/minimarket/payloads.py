# Overview: Wire payload normalization shared by the server routes and the offline store.

"""
Product, sale and cash session payloads use the same camelCase wire format
everywhere: on /api/products, inside /api/sync/upload batches and as the
input of the offline LocalStore. These helpers turn that format into the
snake_case/cents dicts the models are built from, and reject malformed
input before anything is written or queued.
"""

from __future__ import annotations

from .money import to_cents
from .validation import (
    MAX_PRICE_CENTS,
    ValidationError,
    coerce_bool,
    coerce_int,
    coerce_str,
    require_choice,
)

ENTITY_TYPES = ("product", "sale", "cash_session")
SYNC_ACTIONS = ("CREATE", "UPDATE", "DELETE")

PAYMENT_METHODS = ("CASH", "CARD", "TRANSFER", "MIXED")
SALE_STATUSES = ("PENDING", "COMPLETED", "CANCELLED", "REFUNDED")
# Statuses that put the sold quantities back on the shelf
RESTOCKING_STATUSES = ("CANCELLED", "REFUNDED")
CASH_SESSION_STATUSES = ("OPEN", "CLOSED")

DEFAULT_UNIT = "unit"
DEFAULT_CATEGORY = "General"

# Conflict reasons reported by /api/sync/upload
PRODUCT_CODE_TAKEN = "Product code already exists"
PRODUCT_NOT_FOUND = "Product not found on server"
SALE_NUMBER_TAKEN = "Sale number already exists"
SALE_NOT_FOUND = "Sale not found on server"
CASH_SESSION_NOT_FOUND = "Cash session not found on server"
SERVER_VERSION_NEWER = "Server version is newer"
NOT_FOUND_REASONS = (PRODUCT_NOT_FOUND, SALE_NOT_FOUND, CASH_SESSION_NOT_FOUND)


def _price(value, field: str) -> int:
    cents = to_cents(value, field)
    if cents < 0:
        raise ValidationError(f"{field} must be >= 0")
    if cents > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} exceeds maximum allowed value")
    return cents


def normalize_product_payload(payload: dict | None, *, partial: bool = False) -> dict:
    """
    Validate a product payload and return model-ready fields.

    partial=False: create semantics (name, code and price required, defaults filled)
    partial=True: patch semantics (validate only provided keys)

    Sync bookkeeping keys (id, localId, lastModified, action) are ignored.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    patch: dict = {}

    def given(key: str) -> bool:
        return not partial or key in payload

    if given("name"):
        patch["name"] = coerce_str(payload.get("name"), "name", max_length=255, required=True)
    if given("code"):
        patch["code"] = coerce_str(payload.get("code"), "code", max_length=64, required=True)
    if given("barcode"):
        patch["barcode"] = coerce_str(payload.get("barcode"), "barcode", max_length=64)
    if given("price"):
        if payload.get("price") is None:
            raise ValidationError("price is required")
        patch["price_cents"] = _price(payload["price"], "price")
    if given("cost"):
        cost = payload.get("cost")
        patch["cost_cents"] = 0 if cost is None else _price(cost, "cost")
    if given("stock"):
        stock = payload.get("stock")
        patch["stock"] = 0 if stock is None else coerce_int(stock, "stock", minimum=0)
    if given("minStock"):
        min_stock = payload.get("minStock")
        patch["min_stock"] = 0 if min_stock is None else coerce_int(min_stock, "minStock", minimum=0)
    if given("maxStock"):
        patch["max_stock"] = coerce_int(payload.get("maxStock"), "maxStock", minimum=0, required=False)
    if given("category"):
        patch["category"] = coerce_str(payload.get("category"), "category", max_length=128) or DEFAULT_CATEGORY
    if given("brand"):
        patch["brand"] = coerce_str(payload.get("brand"), "brand", max_length=128)
    if given("description"):
        patch["description"] = coerce_str(payload.get("description"), "description")
    if given("unit"):
        patch["unit"] = coerce_str(payload.get("unit"), "unit", max_length=32) or DEFAULT_UNIT
    if given("active"):
        active = payload.get("active")
        patch["active"] = True if active is None else coerce_bool(active, "active")

    max_stock = patch.get("max_stock")
    if max_stock is not None and "min_stock" in patch and max_stock < patch["min_stock"]:
        raise ValidationError("maxStock must be >= minStock")

    return patch


def normalize_sale_items(items) -> list[dict]:
    """
    Validate sale items.

    Each returned item has: product_ref (id as sent, may be ""), product_code,
    product_name, quantity, unit_price_cents (None when the caller wants the
    catalog price), discount_cents.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("Sale must contain at least one item")

    normalized = []
    for index, raw in enumerate(items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {index} must be an object")
        product_ref = raw.get("productId")
        product_code = coerce_str(raw.get("productCode"), f"items[{index}].productCode", max_length=64)
        if not product_ref and not product_code:
            raise ValidationError(f"Item {index} requires productId or productCode")
        unit_price = raw.get("unitPrice")
        discount = raw.get("discount")
        normalized.append({
            "product_ref": str(product_ref) if product_ref not in (None, "") else "",
            "product_code": product_code,
            "product_name": coerce_str(raw.get("productName"), f"items[{index}].productName", max_length=255),
            "quantity": coerce_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1),
            "unit_price_cents": None if unit_price is None else _price(unit_price, f"items[{index}].unitPrice"),
            "discount_cents": 0 if discount is None else _price(discount, f"items[{index}].discount"),
            "declared_subtotal": raw.get("subtotal"),
        })
    return normalized


def item_subtotal_cents(quantity: int, unit_price_cents: int, discount_cents: int) -> int:
    subtotal = quantity * unit_price_cents - discount_cents
    if subtotal < 0:
        raise ValidationError("Item discount exceeds item amount")
    return subtotal


def reconcile_sale_totals(item_subtotals: list[int], *, discount_cents: int, tax_cents: int) -> dict:
    """total = subtotal - discount + tax, with subtotal = sum of item subtotals."""
    subtotal = sum(item_subtotals)
    total = subtotal - discount_cents + tax_cents
    if total < 0:
        raise ValidationError("Sale discount exceeds sale amount")
    return {
        "subtotal_cents": subtotal,
        "discount_cents": discount_cents,
        "tax_cents": tax_cents,
        "total_cents": total,
    }


def check_declared_amount(declared, expected_cents: int, field: str) -> None:
    """Reject a client-declared amount that disagrees with the recomputed one."""
    if declared is None:
        return
    if to_cents(declared, field) != expected_cents:
        raise ValidationError(f"{field} does not reconcile with sale items")


def normalize_sale_header(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    discount = payload.get("discount")
    tax = payload.get("tax")
    return {
        "payment_method": require_choice(payload.get("paymentMethod"), "paymentMethod", PAYMENT_METHODS),
        "status": require_choice(payload.get("status"), "status", SALE_STATUSES, default="COMPLETED"),
        "discount_cents": 0 if discount is None else _price(discount, "discount"),
        "tax_cents": 0 if tax is None else _price(tax, "tax"),
        "notes": coerce_str(payload.get("notes"), "notes"),
        "customer_id": coerce_str(payload.get("customerId"), "customerId", max_length=64),
    }
