# Overview: Flask API routes for products operations; parses input and returns JSON responses.

"""
Product catalog routes.

SECURITY: All routes require authentication.
- Reads are open to every role
- Writes require the admin role
"""
from flask import Blueprint, request, g, current_app

from ..services import products_service
from ..payloads import normalize_product_payload
from ..validation import ValidationError, ConflictError
from ..decorators import require_auth, require_role

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _active_filter(raw: str | None) -> bool | None:
    if raw is None or raw == "":
        return True
    if raw.lower() == "all":
        return None
    return raw.lower() in {"1", "true", "yes"}


@products_bp.get("")
@require_auth
def list_products():
    """
    List products with optional filters and pagination.

    Query params:
    - search: matches name, code or barcode
    - category: exact category
    - active: true (default), false or all
    - page / per_page: pagination (per_page default 20, max 100)
    """
    return products_service.list_products(
        search=request.args.get("search"),
        category=request.args.get("category"),
        active=_active_filter(request.args.get("active")),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.post("")
@require_auth
@require_role("admin")
def create_product_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = normalize_product_payload(payload, partial=False)
        created = products_service.create_product(patch=patch, created_by_user_id=g.current_user.id)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409
    except Exception:
        current_app.logger.exception("Failed to create product")
        return {"error": "Internal server error"}, 500

    return created, 201


@products_bp.put("/<int:product_id>")
@require_auth
@require_role("admin")
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = normalize_product_payload(payload, partial=True)
        updated = products_service.update_product(product_id=product_id, patch=patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409

    if not updated:
        return {"error": "Product not found"}, 404

    return updated, 200


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role("admin")
def delete_product_route(product_id: int):
    """Soft delete; the product stays visible to sync downloads as inactive."""
    if not products_service.delete_product(product_id=product_id):
        return {"error": "Product not found"}, 404

    return {"ok": True}, 200
