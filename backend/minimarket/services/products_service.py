# backend/minimarket/services/products_service.py
"""
Products Service

Catalog reads and writes on the server of record. Patches come from
payloads.normalize_product_payload (snake_case, cents).
"""
from __future__ import annotations

from ..extensions import db
from ..models import Product
from ..validation import ConflictError

PRODUCT_MUTABLE_FIELDS = {
    "name", "code", "barcode", "price_cents", "cost_cents", "stock", "min_stock",
    "max_stock", "category", "brand", "description", "unit", "active",
}


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def find_active_by_code(code: str, *, exclude_id: int | None = None) -> Product | None:
    query = db.session.query(Product).filter(Product.code == code, Product.active.is_(True))
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    return query.first()


def ensure_unique_keys(p: Product) -> None:
    """Code and barcode are unique among active products."""
    if not p.active:
        return
    if find_active_by_code(p.code, exclude_id=p.id):
        raise ConflictError("Product code already exists")
    if p.barcode:
        query = db.session.query(Product).filter(Product.barcode == p.barcode, Product.active.is_(True))
        if p.id is not None:
            query = query.filter(Product.id != p.id)
        if query.first():
            raise ConflictError("Barcode already exists")


def list_products(
    *,
    search: str | None = None,
    category: str | None = None,
    active: bool | None = True,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing with optional filters and pagination.

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    base_query = db.session.query(Product)
    if active is not None:
        base_query = base_query.filter(Product.active.is_(active))
    if category:
        base_query = base_query.filter(Product.category == category)
    if search:
        term = search.strip().lower()
        base_query = base_query.filter(db.or_(
            db.func.lower(Product.name).contains(term, autoescape=True),
            db.func.lower(Product.code).contains(term, autoescape=True),
            Product.barcode.contains(search.strip(), autoescape=True),
        ))
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    # If no pagination requested, return all items
    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)  # Default 20, max 100
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def create_product(*, patch: dict, created_by_user_id: int | None = None) -> dict:
    """
    Create product using a validated patch dict.

    Raises:
        ConflictError: If the code (or barcode) is taken by an active product
    """
    p = Product(created_by_user_id=created_by_user_id)
    apply_product_patch(p, patch)
    ensure_unique_keys(p)
    db.session.add(p)
    db.session.commit()
    return p.to_dict()


def update_product(*, product_id: int, patch: dict) -> dict | None:
    p = db.session.get(Product, product_id)
    if p is None:
        return None
    with db.session.no_autoflush:
        apply_product_patch(p, patch)
        try:
            ensure_unique_keys(p)
        except ConflictError:
            db.session.rollback()
            raise
    db.session.commit()
    return p.to_dict()


def delete_product(*, product_id: int) -> bool:
    """Soft delete: sales keep referencing the row."""
    p = db.session.get(Product, product_id)
    if p is None:
        return False
    p.active = False
    db.session.commit()
    return True
