# Overview: Flask API routes for override evaluation, PIN approval and remote requests.

# backend/override_authority/routes/overrides.py
"""
Override API Routes

WHY: Checkout and pricing screens ask here whether an action needs sign-off,
then either collect a manager PIN on the spot (verify-pin / approve) or open
a request a manager resolves from another device.

DESIGN:
- Evaluation routes are read-only and write no audit rows
- Every PIN-gated route writes exactly one audit row per call
- Errors propagate as OverrideError and are rendered by the app-level handler

SECURITY:
- All routes require an authenticated caller; manual log entries require
  a manager or admin and are always attributed to the caller
- Lockout is keyed by client address, by the targeted manager when user_id
  is given, and by request for resolutions
- PIN failures are reported generically (attempts remaining / locked)
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_info, require_auth, require_role
from ..errors import ForbiddenError
from ..services import audit_service, evaluation_service, request_service, verification_service
from ..services.rate_limit_service import get_rate_limiter
from ..time_utils import to_utc_z, utcnow
from ..validation import require_json_object


overrides_bp = Blueprint("overrides", __name__, url_prefix="/api/overrides")


def _json_body() -> dict:
    return require_json_object(request.get_json(silent=True))


# =============================================================================
# EVALUATION
# =============================================================================

@overrides_bp.post("/check")
@require_auth
def check_requires_approval_route():
    """
    Request body:
    {
        "override_type": "discount_percent",
        "value": 20,
        "context": {"channel": "pos", "category_id": 3, "product_id": 17}
    }
    """
    data = _json_body()
    decision = evaluation_service.check_requires_approval(
        data.get("override_type"),
        data.get("value"),
        data.get("context"),
    )
    return jsonify(decision.to_dict()), 200


@overrides_bp.post("/check-discount")
@require_auth
def check_discount_route():
    """
    Request body:
    {
        "original_price": 100,
        "discounted_price": 50,
        "quantity": 1,
        "cost": 60,          (optional)
        "context": {...}     (optional)
    }
    """
    data = _json_body()
    decision = evaluation_service.check_discount_approval(
        data.get("original_price"),
        data.get("discounted_price"),
        data.get("quantity", 1),
        data.get("cost"),
        data.get("context"),
    )
    return jsonify(decision.to_dict()), 200


# =============================================================================
# SYNCHRONOUS APPROVAL
# =============================================================================

@overrides_bp.post("/verify-pin")
@require_auth
def verify_pin_route():
    """
    Bare manager PIN check.

    Request body:
    {
        "pin": "4821",
        "required_level": "manager",  (optional)
        "user_id": 7                  (optional, restricts to one manager)
    }

    Returns 401 with attempts_remaining on failure, 429 while locked.
    """
    data = _json_body()
    result = verification_service.validate_manager_pin(
        data.get("pin"),
        data.get("required_level"),
        data.get("user_id"),
        client=client_info(),
        cashier_id=g.current_user.id,
    )
    return jsonify(result), 200


@overrides_bp.post("/approve")
@require_auth
def approve_override_route():
    """
    Evaluate and approve an override with a manager PIN in one call.

    Request body:
    {
        "pin": "4821",
        "override_type": "discount_percent",
        "value": 20,
        "original_value": 100,
        "override_value": 80,
        "reason": "Damaged packaging",
        "context": {"transaction_id": 55, "shift_id": 3, "register_id": 1},
        "product_name": "Desk Lamp"
    }
    """
    data = _json_body()
    result = verification_service.approve_override(
        data.get("pin"),
        data.get("override_type"),
        client=client_info(),
        value=data.get("value"),
        original_value=data.get("original_value"),
        override_value=data.get("override_value"),
        required_level=data.get("required_level"),
        reason=data.get("reason"),
        context=data.get("context"),
        cashier_id=g.current_user.id,
        product_name=data.get("product_name"),
    )
    return jsonify(result), 200


# Fields only the server may set on a manual entry.
SERVER_OWNED_LOG_FIELDS = ("approved_by", "approval_level", "verification_method", "request_id", "threshold_snapshot")


@overrides_bp.post("/log")
@require_auth
@require_role("manager", "admin")
def log_override_route():
    """
    Record an override decision a manager made outside the PIN flows.

    SECURITY: approved_by is always the caller and the method is always
    manual, so no one can file an entry in another manager's name or pass
    it off as PIN-verified. cashier_id defaults to the caller; ip_address
    and user agent always come from the request.
    """
    data = _json_body()
    details = {k: v for k, v in data.items() if k not in SERVER_OWNED_LOG_FIELDS}
    details.update(client_info().audit_fields())
    details.setdefault("cashier_id", g.current_user.id)
    details["approved_by"] = g.current_user.id
    details["verification_method"] = "manual"
    entry = audit_service.log_override(details)
    return jsonify({"log_id": entry.id}), 201


# =============================================================================
# REMOTE APPROVAL REQUESTS
# =============================================================================

@overrides_bp.post("/requests")
@require_auth
def create_request_route():
    """
    Open a pending request for a manager to resolve elsewhere.

    Request body:
    {
        "override_type": "void_transaction",
        "value": 240,                 (optional, evaluated for the tier)
        "payload": {...},             (optional, opaque to this service)
        "transaction_id": 55,
        "shift_id": 3,
        "register_id": 1,
        "reason": "Customer changed mind",
        "expires_in_minutes": 10
    }
    """
    data = _json_body()
    override_request = request_service.create_override_request(data, g.current_user.id)
    return jsonify({
        "request_id": override_request.id,
        "request_code": override_request.request_code,
        "expires_at": to_utc_z(override_request.expires_at),
        "request": override_request.to_dict(),
    }), 201


@overrides_bp.get("/requests/pending")
@require_auth
def pending_requests_route():
    now = utcnow()
    requests = request_service.get_pending_requests(
        request.args.get("shift_id"),
        request.args.get("register_id"),
        request.args.get("limit", 50),
        now=now,
    )
    return jsonify({
        "requests": [r.to_dict(now) for r in requests],
        "count": len(requests),
    }), 200


@overrides_bp.get("/requests/<int:request_id>")
@require_auth
def get_request_route(request_id: int):
    override_request = request_service.get_request(request_id)
    return jsonify({"request": override_request.to_dict(utcnow())}), 200


@overrides_bp.get("/requests/code/<code>")
@require_auth
def get_request_by_code_route(code: str):
    override_request = request_service.get_request_by_code(code)
    return jsonify({"request": override_request.to_dict(utcnow())}), 200


@overrides_bp.post("/requests/<int:request_id>/resolve")
@require_auth
def resolve_request_route(request_id: int):
    """
    Request body:
    {
        "pin": "4821",
        "approved": true,
        "reason": "..."  (recorded as the denial reason when approved is false)
    }

    409 when the request is already resolved, cancelled or expired.
    """
    data = _json_body()
    result = request_service.resolve_request(
        request_id,
        data.get("pin"),
        data.get("approved"),
        data.get("reason"),
        client=client_info(),
    )
    return jsonify(result), 200


@overrides_bp.post("/requests/code/<code>/resolve")
@require_auth
def resolve_request_by_code_route(code: str):
    data = _json_body()
    result = request_service.resolve_request_by_code(
        code,
        data.get("pin"),
        data.get("approved"),
        data.get("reason"),
        client=client_info(),
    )
    return jsonify(result), 200


@overrides_bp.post("/requests/<int:request_id>/cancel")
@require_auth
def cancel_request_route(request_id: int):
    data = request.get_json(silent=True) or {}
    override_request = request_service.cancel_request(
        request_id,
        g.current_user.id,
        data.get("reason"),
        client=client_info(),
    )
    return jsonify({"request": override_request.to_dict(utcnow())}), 200


# =============================================================================
# LOCKOUT STATUS
# =============================================================================

@overrides_bp.get("/lockout-status")
@require_auth
def lockout_status_route():
    """
    Lockout state for the caller's own address. Admins may inspect any key
    with ?origin=pin:10.0.0.5 (or pin-user:7, request:12, login:jdoe).
    """
    origin = request.args.get("origin")
    if origin and not g.current_user.is_admin:
        raise ForbiddenError("Only admins may inspect other lockout keys")

    key = origin or client_info().origin
    try:
        status = get_rate_limiter().get_lockout_status(key)
    except Exception:
        current_app.logger.exception("Failed to read lockout status")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(status), 200
