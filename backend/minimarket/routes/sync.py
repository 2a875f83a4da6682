# Overview: Flask API routes for offline sync; parses input and returns JSON responses.

"""
Offline register sync endpoints.

POST /api/sync/upload      apply a batch of queued device changes
GET|POST /api/sync/download changes since the device checkpoint

Both are attributed to the authenticated user; sales uploaded by a
register are recorded under that user.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import sync_service
from ..validation import ValidationError, coerce_bool
from ..decorators import require_auth


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/upload")
@require_auth
def upload_route():
    payload = request.get_json(silent=True)
    try:
        result = sync_service.process_upload(payload, user=g.current_user, ip_address=request.remote_addr)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process sync upload")
        return jsonify({"success": False, "error": "Internal server error"}), 500

    return jsonify(result), 200


def _flag(params: dict, key: str, default: bool) -> bool:
    value = params.get(key)
    if value is None or value == "":
        return default
    return coerce_bool(value, key)


@sync_bp.route("/download", methods=["GET", "POST"])
@require_auth
def download_route():
    """
    Query string (GET) or JSON body (POST):
    lastSyncTimestamp, includeProducts, includeSales, includeOwnSalesOnly.
    Include flags default to true; includeOwnSalesOnly defaults to false.
    """
    if request.method == "POST":
        params = request.get_json(silent=True) or {}
        if not isinstance(params, dict):
            return jsonify({"success": False, "error": "Invalid JSON payload"}), 400
    else:
        params = request.args.to_dict()

    try:
        result = sync_service.build_download(
            user=g.current_user,
            last_sync=params.get("lastSyncTimestamp"),
            include_products=_flag(params, "includeProducts", True),
            include_sales=_flag(params, "includeSales", True),
            own_sales_only=_flag(params, "includeOwnSalesOnly", False),
            ip_address=request.remote_addr,
        )
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to build sync download")
        return jsonify({"success": False, "error": "Internal server error"}), 500

    return jsonify(result), 200
