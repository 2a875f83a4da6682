# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""Sales read API. Sales are created by registers through /api/sync/upload."""

from datetime import date

from flask import Blueprint, request, jsonify, g

from ..services import sales_service
from ..decorators import require_auth


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.get("")
@require_auth
def list_sales_route():
    """
    List sales, newest first.

    Query params: date (YYYY-MM-DD), userId, paymentMethod, status, limit.
    Cashiers only see their own sales.
    """
    try:
        raw_day = request.args.get("date")
        day = date.fromisoformat(raw_day) if raw_day else None
        user_id = request.args.get("userId", type=int)
        if not g.current_user.is_admin:
            user_id = g.current_user.id

        result = sales_service.list_sales(
            day=day,
            user_id=user_id,
            payment_method=request.args.get("paymentMethod"),
            status=request.args.get("status"),
            limit=request.args.get("limit", type=int),
        )
    except ValueError as e:
        # ValidationError is a ValueError; so is a malformed date
        return jsonify({"error": str(e)}), 400

    return jsonify(result), 200


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    sale = sales_service.get_sale(sale_id)
    if sale is None or (not g.current_user.is_admin and sale["userId"] != g.current_user.id):
        return jsonify({"error": "Sale not found"}), 404
    return jsonify({"sale": sale}), 200
