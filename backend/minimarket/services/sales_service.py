# Overview: Service-layer read operations for sales recorded on the server.

"""
Sales Service

Sales are written by sync uploads (see sync_service). This module only
serves them back to the API: filtered listings and single sales.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Sale
from ..payloads import PAYMENT_METHODS, SALE_STATUSES
from ..time_utils import day_bounds
from ..validation import require_choice


def list_sales(
    *,
    day=None,
    user_id: int | None = None,
    payment_method: str | None = None,
    status: str | None = None,
    limit: int | None = None,
) -> dict:
    """Newest first. `day` is a date; the filter covers that UTC day."""
    query = db.session.query(Sale)
    if day is not None:
        start, end = day_bounds(day)
        query = query.filter(Sale.date >= start, Sale.date < end)
    if user_id is not None:
        query = query.filter(Sale.user_id == user_id)
    if payment_method:
        query = query.filter(Sale.payment_method == require_choice(payment_method, "paymentMethod", PAYMENT_METHODS))
    if status:
        query = query.filter(Sale.status == require_choice(status, "status", SALE_STATUSES))

    query = query.order_by(Sale.date.desc(), Sale.id.desc())
    if limit:
        query = query.limit(min(limit, 500))

    sales = query.all()
    return {
        "items": [s.to_dict() for s in sales],
        "count": len(sales),
        "totalAmount": sum(s.total_cents for s in sales) / 100,
    }


def get_sale(sale_id: int) -> dict | None:
    sale = db.session.get(Sale, sale_id)
    return sale.to_dict() if sale else None
