# Overview: Flask API routes for override thresholds, approval ladders and exceptions.

"""
Override Threshold API Routes

Reads are open to any authenticated caller (checkout screens pre-filter who
may approve). Writes are admin-only and rejected before the service runs.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..services import evaluation_service, threshold_service
from ..validation import parse_bool, require_json_object


thresholds_bp = Blueprint("override_thresholds", __name__, url_prefix="/api/override-thresholds")


# =============================================================================
# THRESHOLDS
# =============================================================================

@thresholds_bp.get("/")
@thresholds_bp.get("")
@require_auth
def list_thresholds_route():
    """
    Query params:
    - channel: pos | quote | online
    - category_id
    - include_inactive: true to include deactivated thresholds
    """
    include_inactive = parse_bool(request.args.get("include_inactive", "false"), "include_inactive")
    thresholds = threshold_service.get_thresholds_with_config(
        channel=request.args.get("channel"),
        include_inactive=include_inactive,
        category_id=request.args.get("category_id"),
    )
    return jsonify({"thresholds": thresholds}), 200


@thresholds_bp.get("/grouped")
@require_auth
def grouped_thresholds_route():
    return jsonify({"thresholds": threshold_service.get_override_thresholds()}), 200


@thresholds_bp.get("/<int:threshold_id>")
@require_auth
def get_threshold_route(threshold_id: int):
    threshold = threshold_service.get_threshold(threshold_id)
    return jsonify({"threshold": threshold_service.serialize_threshold(threshold)}), 200


@thresholds_bp.post("/")
@thresholds_bp.post("")
@require_auth
@require_admin
def create_threshold_route():
    """
    Request body:
    {
        "override_type": "discount_percent",
        "name": "Discount Percentage",
        "threshold_value": 15,
        "default_approval_level": "manager",
        "channel": "pos",                (optional)
        "category_id": 4,                (optional)
        "approval_levels": [
            {"approval_level": "shift_lead", "max_value": 15},
            {"approval_level": "manager", "max_value": 35},
            {"approval_level": "admin", "is_unlimited": true}
        ]
    }
    """
    data = require_json_object(request.get_json(silent=True))
    threshold = threshold_service.create_threshold(data, created_by=g.current_user.id)
    return jsonify({"threshold": threshold_service.serialize_threshold(threshold)}), 201


@thresholds_bp.put("/<int:threshold_id>")
@require_auth
@require_admin
def update_threshold_route(threshold_id: int):
    data = require_json_object(request.get_json(silent=True))
    threshold = threshold_service.update_threshold(threshold_id, data)
    return jsonify({"threshold": threshold_service.serialize_threshold(threshold)}), 200


@thresholds_bp.delete("/<int:threshold_id>")
@require_auth
@require_admin
def deactivate_threshold_route(threshold_id: int):
    threshold = threshold_service.deactivate_threshold(threshold_id)
    return jsonify({"threshold": threshold_service.serialize_threshold(threshold)}), 200


# =============================================================================
# APPROVAL LADDER
# =============================================================================

@thresholds_bp.get("/<int:threshold_id>/levels")
@require_auth
def list_levels_route(threshold_id: int):
    levels = threshold_service.get_approval_levels(threshold_id)
    return jsonify({"approval_levels": [rung.to_dict() for rung in levels]}), 200


@thresholds_bp.put("/<int:threshold_id>/levels/<level>")
@require_auth
@require_admin
def set_level_route(threshold_id: int, level: str):
    """
    Request body:
    {"max_value": 35} or {"is_unlimited": true}, optional "description"
    """
    data = require_json_object(request.get_json(silent=True))
    rung = threshold_service.set_approval_level(
        threshold_id,
        level,
        data.get("max_value"),
        is_unlimited=parse_bool(data.get("is_unlimited", False), "is_unlimited"),
        description=data.get("description"),
    )
    return jsonify({"approval_level": rung.to_dict()}), 200


@thresholds_bp.delete("/<int:threshold_id>/levels/<level>")
@require_auth
@require_admin
def delete_level_route(threshold_id: int, level: str):
    threshold_service.delete_approval_level(threshold_id, level)
    return jsonify({"deleted": True}), 200


@thresholds_bp.get("/<int:threshold_id>/required-level")
@require_auth
def required_level_route(threshold_id: int):
    result = evaluation_service.get_required_approval_level(threshold_id, request.args.get("value"))
    return jsonify(result), 200


@thresholds_bp.get("/<int:threshold_id>/can-approve")
@require_auth
def can_approve_route(threshold_id: int):
    """Query params: level, value."""
    level = request.args.get("level")
    value = request.args.get("value")
    allowed = evaluation_service.can_user_approve_value(level, threshold_id, value)
    return jsonify({"threshold_id": threshold_id, "level": level, "can_approve": allowed}), 200


# =============================================================================
# EXCEPTIONS
# =============================================================================

@thresholds_bp.get("/<int:threshold_id>/exceptions")
@require_auth
def list_exceptions_route(threshold_id: int):
    include_inactive = parse_bool(request.args.get("include_inactive", "false"), "include_inactive")
    exceptions = threshold_service.list_exceptions(threshold_id, include_inactive)
    return jsonify({"exceptions": [exc.to_dict() for exc in exceptions]}), 200


@thresholds_bp.post("/<int:threshold_id>/exceptions")
@require_auth
@require_admin
def add_exception_route(threshold_id: int):
    """
    Request body:
    {"exception_type": "product", "product_id": 17, "reason": "Clearance line"}
    """
    data = require_json_object(request.get_json(silent=True))
    exc = threshold_service.add_exception(threshold_id, data, created_by=g.current_user.id)
    return jsonify({"exception": exc.to_dict()}), 201


@thresholds_bp.delete("/exceptions/<int:exception_id>")
@require_auth
@require_admin
def deactivate_exception_route(exception_id: int):
    exc = threshold_service.deactivate_exception(exception_id)
    return jsonify({"exception": exc.to_dict()}), 200
