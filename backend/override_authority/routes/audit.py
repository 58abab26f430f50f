# Overview: Flask API routes for override audit history and summaries.

"""
Override Audit API Routes

Read-only reporting over the append-only override log. Limited to managers
and admins.
"""

from flask import Blueprint, jsonify, request

from ..decorators import require_auth, require_role
from ..services import audit_service


audit_bp = Blueprint("override_audit", __name__, url_prefix="/api/override-audit")


@audit_bp.get("/history")
@require_auth
@require_role("manager", "admin")
def history_route():
    """
    Query params:
    - start, end: ISO-8601 datetimes
    - override_type, manager_id, cashier_id, request_id, transaction_id
    - was_approved: true | false
    - limit (max 500), offset
    """
    args = request.args
    result = audit_service.get_override_history(
        start=args.get("start"),
        end=args.get("end"),
        override_type=args.get("override_type"),
        manager_id=args.get("manager_id"),
        cashier_id=args.get("cashier_id"),
        was_approved=args.get("was_approved"),
        request_id=args.get("request_id"),
        transaction_id=args.get("transaction_id"),
        limit=args.get("limit", 100),
        offset=args.get("offset", 0),
    )
    return jsonify(result), 200


@audit_bp.get("/summary")
@require_auth
@require_role("manager", "admin")
def summary_route():
    """Query params: start, end, group_by (day | month | manager)."""
    result = audit_service.get_override_summary(
        start=request.args.get("start"),
        end=request.args.get("end"),
        group_by=request.args.get("group_by", "day"),
    )
    return jsonify(result), 200
