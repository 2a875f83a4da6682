# Overview: Server side of offline sync; applies uploaded device changes and builds download deltas.

"""
Sync Service

Upload contract (POST /api/sync/upload):
    {products: [...], cashSessions: [...], sales: [...], lastSyncTimestamp}

Items are applied one at a time, each in its own transaction, in the order
products -> cash sessions -> sales so that a sale can reference a product or
cash session created earlier in the same batch. One failing item never
aborts the rest of the batch.

Per item:
- CREATE: a replay of an already applied CREATE (same localId) is
  acknowledged again. Otherwise an existing natural key (product code,
  sale number) is reported as a conflict.
- UPDATE: the server copy wins (conflict) when its updated_at is newer than
  the client's lastModified; otherwise the client copy is applied.
- DELETE (products only): soft delete.

Download contract (GET|POST /api/sync/download): everything with
updated_at > lastSyncTimestamp, plus a new syncTimestamp taken before the
queries run so nothing committed during the request is skipped.
"""

from __future__ import annotations

import logging

from flask import current_app

from ..extensions import db
from ..models import CashSession, Product, Sale, SaleItem, SyncEvent, User
from ..payloads import (
    CASH_SESSION_NOT_FOUND,
    CASH_SESSION_STATUSES,
    PRODUCT_CODE_TAKEN,
    PRODUCT_NOT_FOUND,
    RESTOCKING_STATUSES,
    SALE_NOT_FOUND,
    SALE_NUMBER_TAKEN,
    SALE_STATUSES,
    SERVER_VERSION_NEWER,
    SYNC_ACTIONS,
    check_declared_amount,
    item_subtotal_cents,
    normalize_product_payload,
    normalize_sale_header,
    normalize_sale_items,
    reconcile_sale_totals,
)
from ..money import to_cents
from ..time_utils import to_utc_z, utcnow
from ..validation import ConflictError, ValidationError, coerce_datetime, coerce_str, require_choice
from .concurrency import lock_for_update, run_with_retry
from .products_service import apply_product_patch, ensure_unique_keys, find_active_by_code

logger = logging.getLogger(__name__)

UPLOAD_BUCKETS = (
    ("products", "product"),
    ("cashSessions", "cash_session"),
    ("sales", "sale"),
)


def _empty_bucket() -> dict:
    return {"processed": 0, "errors": 0, "conflicts": [], "items": []}


def _by_server_id(model, raw_id):
    """Look a record up by its wire id; anything that is not an integer id is unknown."""
    if raw_id in (None, ""):
        return None
    try:
        return db.session.get(model, int(raw_id))
    except (TypeError, ValueError):
        return None


def _by_local_id(model, local_id):
    if not local_id:
        return None
    return db.session.query(model).filter(model.client_local_id == str(local_id)).first()


def _reject_if_stale(record, item: dict) -> None:
    last_modified = coerce_datetime(item.get("lastModified"), "lastModified", required=True)
    if record.updated_at > last_modified:
        raise ConflictError(SERVER_VERSION_NEWER, details={
            "serverId": str(record.id),
            "serverData": record.to_dict(),
            "clientData": item,
        })


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

def _apply_product(item: dict, user: User) -> str | None:
    action = require_choice(item.get("action"), "action", SYNC_ACTIONS)
    local_id = coerce_str(item.get("localId"), "localId", max_length=64)

    if action == "CREATE":
        replay = _by_local_id(Product, local_id)
        if replay is not None:
            return str(replay.id)

        fields = normalize_product_payload(item)
        existing = find_active_by_code(fields["code"]) if fields["active"] else None
        if existing is not None:
            raise ConflictError(PRODUCT_CODE_TAKEN, details={
                "serverId": str(existing.id),
                "serverData": existing.to_dict(),
                "clientData": item,
            })
        product = Product(client_local_id=local_id, created_by_user_id=user.id)
        apply_product_patch(product, fields)
        ensure_unique_keys(product)
        db.session.add(product)
        db.session.commit()
        return str(product.id)

    product = _by_server_id(Product, item.get("id"))

    if action == "DELETE":
        # Deleting something the server never had leaves the desired end state
        if product is not None and product.active:
            product.active = False
            db.session.commit()
        return str(product.id) if product is not None else None

    if product is None:
        raise ConflictError(PRODUCT_NOT_FOUND, details={
            "serverId": item.get("id") or None,
            "clientData": item,
        })
    _reject_if_stale(product, item)

    fields = normalize_product_payload(item)
    with db.session.no_autoflush:
        apply_product_patch(product, fields)
        ensure_unique_keys(product)
    db.session.commit()
    return str(product.id)


# ---------------------------------------------------------------------------
# Cash sessions
# ---------------------------------------------------------------------------

def _cash_session_fields(item: dict) -> dict:
    end_amount = item.get("endAmount")
    total_sales = item.get("totalSales")
    return {
        "start_amount_cents": to_cents(item.get("startAmount") or 0, "startAmount"),
        "end_amount_cents": None if end_amount is None else to_cents(end_amount, "endAmount"),
        "total_sales_cents": 0 if total_sales is None else to_cents(total_sales, "totalSales"),
        "status": require_choice(item.get("status"), "status", CASH_SESSION_STATUSES, default="OPEN"),
        "opened_at": coerce_datetime(item.get("openedAt"), "openedAt") or utcnow(),
        "closed_at": coerce_datetime(item.get("closedAt"), "closedAt"),
        "notes": coerce_str(item.get("notes"), "notes"),
    }


def _apply_cash_session(item: dict, user: User) -> str:
    action = require_choice(item.get("action"), "action", ("CREATE", "UPDATE"))
    local_id = coerce_str(item.get("localId"), "localId", max_length=64)

    if action == "CREATE":
        replay = _by_local_id(CashSession, local_id)
        if replay is not None:
            return str(replay.id)
        cash_session = CashSession(client_local_id=local_id, user_id=user.id, **_cash_session_fields(item))
        db.session.add(cash_session)
        db.session.commit()
        return str(cash_session.id)

    cash_session = _by_server_id(CashSession, item.get("id")) or _by_local_id(CashSession, local_id)
    if cash_session is None:
        raise ConflictError(CASH_SESSION_NOT_FOUND, details={
            "serverId": item.get("id") or None,
            "clientData": item,
        })
    _reject_if_stale(cash_session, item)
    for key, value in _cash_session_fields(item).items():
        setattr(cash_session, key, value)
    db.session.commit()
    return str(cash_session.id)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------

def _resolve_sale_product(line: dict) -> Product:
    product = _by_server_id(Product, line["product_ref"])
    if product is None and line["product_code"]:
        product = find_active_by_code(line["product_code"])
    if product is None:
        raise ValidationError(f"Unknown product: {line['product_ref'] or line['product_code']}")
    return product


def _change_stock(product_id: int, delta: int) -> None:
    """Apply a stock delta under a row lock. Never goes below zero."""
    product = lock_for_update(db.session.query(Product).filter(Product.id == product_id)).one()
    product.stock = max(product.stock + delta, 0)


def _create_sale(item: dict, user: User) -> str:
    local_id = coerce_str(item.get("localId"), "localId", max_length=64)
    replay = _by_local_id(Sale, local_id)
    if replay is not None:
        return str(replay.id)

    sale_number = coerce_str(item.get("saleNumber"), "saleNumber", max_length=16, required=True)
    existing = db.session.query(Sale).filter(Sale.sale_number == sale_number).first()
    if existing is not None:
        raise ConflictError(SALE_NUMBER_TAKEN, details={
            "serverId": str(existing.id),
            "serverData": existing.to_dict(),
            "clientData": item,
        })

    header = normalize_sale_header(item)
    lines = normalize_sale_items(item.get("items"))
    sale_items = []
    for position, line in enumerate(lines):
        if line["unit_price_cents"] is None:
            raise ValidationError(f"items[{position + 1}].unitPrice is required")
        product = _resolve_sale_product(line)
        subtotal = item_subtotal_cents(line["quantity"], line["unit_price_cents"], line["discount_cents"])
        check_declared_amount(line["declared_subtotal"], subtotal, f"items[{position + 1}].subtotal")
        sale_items.append(SaleItem(
            position=position,
            product_id=product.id,
            product_code=product.code,
            product_name=line["product_name"] or product.name,
            quantity=line["quantity"],
            unit_price_cents=line["unit_price_cents"],
            discount_cents=line["discount_cents"],
            subtotal_cents=subtotal,
        ))

    totals = reconcile_sale_totals(
        [si.subtotal_cents for si in sale_items],
        discount_cents=header["discount_cents"],
        tax_cents=header["tax_cents"],
    )
    check_declared_amount(item.get("subtotal"), totals["subtotal_cents"], "subtotal")
    check_declared_amount(item.get("total"), totals["total_cents"], "total")

    cash_session = (
        _by_server_id(CashSession, item.get("cashSessionId"))
        or _by_local_id(CashSession, item.get("cashSessionLocalId"))
    )

    restocked = header["status"] in RESTOCKING_STATUSES
    sale = Sale(
        client_local_id=local_id,
        sale_number=sale_number,
        date=coerce_datetime(item.get("date"), "date") or utcnow(),
        payment_method=header["payment_method"],
        status=header["status"],
        stock_restored=restocked,
        user_id=user.id,
        customer_id=header["customer_id"],
        notes=header["notes"],
        cash_session_id=cash_session.id if cash_session is not None else None,
        items=sale_items,
        **totals,
    )
    db.session.add(sale)
    if not restocked:
        for si in sale_items:
            _change_stock(si.product_id, -si.quantity)
    db.session.commit()
    return str(sale.id)


def _update_sale(item: dict, user: User) -> str:
    sale = _by_server_id(Sale, item.get("id")) or _by_local_id(Sale, item.get("localId"))
    if sale is None:
        raise ConflictError(SALE_NOT_FOUND, details={
            "serverId": item.get("id") or None,
            "clientData": item,
        })
    _reject_if_stale(sale, item)

    new_status = require_choice(item.get("status"), "status", SALE_STATUSES, default=sale.status)
    if sale.status in RESTOCKING_STATUSES and new_status != sale.status:
        raise ValidationError(f"Sale {sale.sale_number} is {sale.status} and cannot change status")
    if new_status in RESTOCKING_STATUSES and not sale.stock_restored:
        for si in sale.items:
            if si.product_id is not None:
                _change_stock(si.product_id, si.quantity)
        sale.stock_restored = True
    sale.status = new_status
    if "notes" in item:
        sale.notes = coerce_str(item.get("notes"), "notes")
    db.session.commit()
    return str(sale.id)


def _apply_sale(item: dict, user: User) -> str:
    action = require_choice(item.get("action"), "action", ("CREATE", "UPDATE"))
    if action == "CREATE":
        return _create_sale(item, user)
    return _update_sale(item, user)


HANDLERS = {
    "product": _apply_product,
    "cash_session": _apply_cash_session,
    "sale": _apply_sale,
}


def _process_item(bucket: dict, entity_type: str, item, user: User) -> None:
    local_id = item.get("localId") if isinstance(item, dict) else None
    outcome = {
        "localId": local_id,
        "action": item.get("action") if isinstance(item, dict) else None,
        "status": "processed",
        "serverId": None,
        "error": None,
    }
    try:
        if not isinstance(item, dict):
            raise ValidationError("Item must be an object")
        outcome["serverId"] = run_with_retry(lambda: HANDLERS[entity_type](item, user))
        bucket["processed"] += 1
    except ConflictError as exc:
        db.session.rollback()
        conflict = {"localId": local_id, "reason": str(exc), **exc.details}
        bucket["conflicts"].append(conflict)
        outcome.update(status="conflict", serverId=exc.details.get("serverId"), error=str(exc))
    except ValidationError as exc:
        db.session.rollback()
        bucket["errors"] += 1
        outcome.update(status="error", error=str(exc))
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to apply %s sync item %s", entity_type, local_id)
        bucket["errors"] += 1
        outcome.update(status="error", error="Internal server error")
    bucket["items"].append(outcome)


def _record_event(*, user: User, direction: str, summary: dict, processed: int = 0, conflicts: int = 0,
                  errors: int = 0, checkpoint: str | None = None, ip_address: str | None = None) -> None:
    db.session.add(SyncEvent(
        user_id=user.id,
        direction=direction,
        success=True,
        processed=processed,
        conflicts=conflicts,
        errors=errors,
        summary=summary,
        client_checkpoint=checkpoint,
        ip_address=ip_address,
    ))
    db.session.commit()


def process_upload(payload, *, user: User, ip_address: str | None = None) -> dict:
    """
    Apply one upload batch. Returns the response body.

    Raises ValidationError only for a malformed envelope; item problems are
    reported per item.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid sync data format")
    for key, _ in UPLOAD_BUCKETS:
        if payload.get(key) is not None and not isinstance(payload[key], list):
            raise ValidationError(f"{key} must be a list")
    checkpoint = payload.get("lastSyncTimestamp")
    coerce_datetime(checkpoint, "lastSyncTimestamp")

    results = {key: _empty_bucket() for key, _ in UPLOAD_BUCKETS}
    for key, entity_type in UPLOAD_BUCKETS:
        for item in payload.get(key) or []:
            _process_item(results[key], entity_type, item, user)

    processed = sum(r["processed"] for r in results.values())
    conflicts = sum(len(r["conflicts"]) for r in results.values())
    errors = sum(r["errors"] for r in results.values())
    _record_event(
        user=user,
        direction="upload",
        summary={key: {"processed": r["processed"], "conflicts": len(r["conflicts"]), "errors": r["errors"]}
                 for key, r in results.items()},
        processed=processed,
        conflicts=conflicts,
        errors=errors,
        checkpoint=checkpoint,
        ip_address=ip_address,
    )
    logger.info("Upload from user %s: %d processed, %d conflicts, %d errors", user.id, processed, conflicts, errors)

    return {
        "success": True,
        "results": results,
        "syncTimestamp": to_utc_z(utcnow()),
        "message": (
            f"Processed {results['products']['processed']} products, "
            f"{results['cashSessions']['processed']} cash sessions and "
            f"{results['sales']['processed']} sales"
        ),
    }


def build_download(
    *,
    user: User,
    last_sync=None,
    include_products: bool = True,
    include_sales: bool = True,
    own_sales_only: bool = False,
    ip_address: str | None = None,
) -> dict:
    """Changes since last_sync, oldest first. Deleted products are included (active=false)."""
    since = coerce_datetime(last_sync, "lastSyncTimestamp")
    # Captured before querying: rows committed meanwhile show up again next time
    sync_timestamp = to_utc_z(utcnow())

    products: list[dict] = []
    if include_products:
        query = db.session.query(Product)
        if since is not None:
            query = query.filter(Product.updated_at > since)
        products = [p.to_dict() for p in query.order_by(Product.updated_at.asc(), Product.id.asc())]

    sales: list[dict] = []
    if include_sales:
        query = db.session.query(Sale)
        if since is not None:
            query = query.filter(Sale.updated_at > since)
        if own_sales_only:
            query = query.filter(Sale.user_id == user.id)
        sales = [s.to_dict() for s in query.order_by(Sale.updated_at.asc(), Sale.id.asc())]

    _record_event(
        user=user,
        direction="download",
        summary={
            "products": len(products),
            "sales": len(sales),
            "includeProducts": include_products,
            "includeSales": include_sales,
            "includeOwnSalesOnly": own_sales_only,
        },
        processed=len(products) + len(sales),
        checkpoint=to_utc_z(since) if since else None,
        ip_address=ip_address,
    )

    return {
        "success": True,
        "data": {
            "products": products,
            "sales": sales,
            "syncTimestamp": sync_timestamp,
        },
        "statistics": {
            "productsCount": len(products),
            "salesCount": len(sales),
            "lastSyncTimestamp": to_utc_z(since) if since else None,
            "newSyncTimestamp": sync_timestamp,
        },
    }
