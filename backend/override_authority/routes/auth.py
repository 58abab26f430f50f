# Overview: Flask API routes for caller sessions; parses input and returns JSON responses.

"""
Authentication API routes

SECURITY FEATURES:
- Login throttling through the same rate limiter that guards manager PINs
- Session management with token-based auth
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth
from ..services import auth_service, session_service
from ..services.rate_limit_service import get_rate_limiter, login_key
from ..time_utils import seconds_until, to_utc_z
from ..validation import require_json_object


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate a caller and create a session token.

    Token must be included in the Authorization header for protected routes.
    """
    data = require_json_object(request.get_json(silent=True))
    username = data.get("username")
    password = data.get("password")

    if not all([username, password]):
        return jsonify({"error": "username and password required"}), 400

    limiter = get_rate_limiter()
    outcome = limiter.acquire(login_key(username))
    if not outcome.admitted:
        return jsonify({
            "error": "Account temporarily locked due to too many failed login attempts",
            "locked": True,
            "locked_until": to_utc_z(outcome.locked_until),
            "retry_after_seconds": seconds_until(outcome.locked_until),
        }), 429

    user = auth_service.authenticate(username, password)

    if not user:
        if outcome.locked_until is not None:
            return jsonify({
                "error": "Account locked due to too many failed login attempts",
                "locked": True,
                "locked_until": to_utc_z(outcome.locked_until),
                "retry_after_seconds": seconds_until(outcome.locked_until),
            }), 429
        return jsonify({
            "error": "Invalid credentials",
            "attempts_remaining": outcome.attempts_remaining,
        }), 401

    limiter.reset(outcome.key)

    session, token = session_service.create_session(
        user_id=user.id,
        user_agent=request.headers.get("User-Agent"),
        ip_address=request.remote_addr,
    )

    return jsonify({
        "user": user.to_dict(),
        "token": token,
        "session": session.to_dict(),
        "message": "Login successful"
    }), 200


@auth_bp.post("/logout")
@require_auth
def logout_route():
    token = request.headers.get("Authorization", "").split(" ", 1)[1]
    session_service.revoke_session(token)
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/validate")
@require_auth
def validate_route():
    return jsonify({
        "valid": True,
        "user": g.current_user.to_dict(),
        "session": g.session_context.session.to_dict(),
    }), 200
