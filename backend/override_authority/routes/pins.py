# Overview: Flask API routes for manager PIN administration.

"""
Manager PIN API Routes

SECURITY:
- Admin-only writes; PIN hashes are never returned
- Setting a PIN rotates out the manager's previous one
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_admin, require_auth, require_role
from ..errors import ValidationError
from ..services import credential_service
from ..time_utils import parse_iso_datetime
from ..validation import parse_bool, require_json_object


pins_bp = Blueprint("manager_pins", __name__, url_prefix="/api/manager-pins")


def _parse_moment(value, field: str):
    if value in (None, ""):
        return None
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


@pins_bp.get("/")
@pins_bp.get("")
@require_auth
@require_admin
def list_pins_route():
    include_inactive = parse_bool(request.args.get("include_inactive", "false"), "include_inactive")
    return jsonify({"pins": credential_service.list_manager_pins(include_inactive)}), 200


@pins_bp.post("/")
@pins_bp.post("")
@require_auth
@require_admin
def set_pin_route():
    """
    Request body:
    {
        "user_id": 7,
        "pin": "4821",
        "approval_level": "manager",
        "max_daily_overrides": 20,           (optional)
        "valid_from": "2025-01-01T00:00Z",   (optional)
        "valid_until": "2025-12-31T23:59Z"   (optional)
    }
    """
    data = require_json_object(request.get_json(silent=True))
    if data.get("user_id") is None:
        raise ValidationError("user_id is required")

    record = credential_service.set_manager_pin(
        data.get("user_id"),
        data.get("pin"),
        data.get("approval_level", "manager"),
        max_daily_overrides=data.get("max_daily_overrides"),
        valid_from=_parse_moment(data.get("valid_from"), "valid_from"),
        valid_until=_parse_moment(data.get("valid_until"), "valid_until"),
        created_by=g.current_user.id,
    )
    return jsonify({"pin": record.to_dict()}), 201


@pins_bp.delete("/<int:user_id>")
@require_auth
@require_admin
def deactivate_pin_route(user_id: int):
    count = credential_service.deactivate_manager_pin(user_id)
    return jsonify({"deactivated": count}), 200


@pins_bp.get("/access/<int:user_id>")
@require_auth
@require_role("manager", "admin")
def access_route(user_id: int):
    return jsonify({
        "user_id": user_id,
        "has_manager_access": credential_service.has_manager_access(user_id),
    }), 200
