# Overview: Wire-format snapshots of local records.

"""
Snapshots use the same camelCase format the server speaks: `id` is the
server id ("" until one is known), `localId` is the device id, money is a
decimal number and timestamps are ISO-8601 with a trailing Z.
"""

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..money import from_cents
from ..time_utils import to_utc_z
from .models import LocalCashSession, LocalProduct, LocalSale, LocalSaleItem


def pending_sold_quantity(session: Session, product_id: str) -> int:
    """
    Units of a product sold by sales the server has not seen yet.

    The server decrements stock itself when it ingests a sale, so these
    units must not be subtracted twice.
    """
    total = (
        session.query(func.coalesce(func.sum(LocalSaleItem.quantity), 0))
        .join(LocalSale, LocalSale.id == LocalSaleItem.sale_id)
        .filter(
            LocalSaleItem.product_id == product_id,
            LocalSale.server_id.is_(None),
            LocalSale.stock_restored.is_(False),
        )
        .scalar()
    )
    return int(total or 0)


def product_to_dict(product: LocalProduct, *, stock: int | None = None) -> dict:
    return {
        "id": product.server_id or "",
        "localId": product.id,
        "name": product.name,
        "code": product.code,
        "barcode": product.barcode,
        "price": from_cents(product.price_cents),
        "cost": from_cents(product.cost_cents),
        "stock": product.stock if stock is None else stock,
        "minStock": product.min_stock,
        "maxStock": product.max_stock,
        "category": product.category,
        "brand": product.brand,
        "description": product.description,
        "unit": product.unit,
        "active": bool(product.active),
        "lastModified": to_utc_z(product.last_modified),
        "action": product.action,
        "synced": bool(product.synced),
    }


def product_snapshot(session: Session, product: LocalProduct) -> dict:
    """Upload snapshot: stock as it was before still-unsynced local sales."""
    return product_to_dict(product, stock=product.stock + pending_sold_quantity(session, product.id))


def sale_item_to_dict(item: LocalSaleItem) -> dict:
    product = item.product
    return {
        "productId": (product.server_id if product is not None else None) or item.product_server_id or "",
        "productLocalId": item.product_id,
        "productCode": item.product_code,
        "productName": item.product_name,
        "quantity": item.quantity,
        "unitPrice": from_cents(item.unit_price_cents),
        "discount": from_cents(item.discount_cents),
        "subtotal": from_cents(item.subtotal_cents),
    }


def sale_to_dict(sale: LocalSale) -> dict:
    cash_session = sale.cash_session
    return {
        "id": sale.server_id or "",
        "localId": sale.id,
        "saleNumber": sale.sale_number,
        "date": to_utc_z(sale.date),
        "subtotal": from_cents(sale.subtotal_cents),
        "tax": from_cents(sale.tax_cents),
        "discount": from_cents(sale.discount_cents),
        "total": from_cents(sale.total_cents),
        "paymentMethod": sale.payment_method,
        "userId": sale.user_id,
        "customerId": sale.customer_id,
        "notes": sale.notes,
        "status": sale.status,
        "cashSessionId": (cash_session.server_id if cash_session is not None else None) or "",
        "cashSessionLocalId": sale.cash_session_id,
        "items": [sale_item_to_dict(item) for item in sale.items],
        "lastModified": to_utc_z(sale.last_modified),
        "action": sale.action,
        "synced": bool(sale.synced),
    }


def cash_session_to_dict(cash_session: LocalCashSession) -> dict:
    return {
        "id": cash_session.server_id or "",
        "localId": cash_session.id,
        "userId": cash_session.user_id,
        "startAmount": from_cents(cash_session.start_amount_cents),
        "endAmount": from_cents(cash_session.end_amount_cents),
        "totalSales": from_cents(cash_session.total_sales_cents),
        "status": cash_session.status,
        "openedAt": to_utc_z(cash_session.opened_at),
        "closedAt": to_utc_z(cash_session.closed_at),
        "notes": cash_session.notes,
        "lastModified": to_utc_z(cash_session.last_modified),
        "action": cash_session.action,
        "synced": bool(cash_session.synced),
    }


def snapshot(session: Session, entity_type: str, entity) -> dict:
    if entity_type == "product":
        return product_snapshot(session, entity)
    if entity_type == "sale":
        return sale_to_dict(entity)
    return cash_session_to_dict(entity)
