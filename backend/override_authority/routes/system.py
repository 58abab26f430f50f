# backend/override_authority/routes/system.py
"""
System health endpoint.

Reports database reachability and the state of the PIN rate limiter store
for deployment checks.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import ManagerPin, OverrideRequest, OverrideThreshold, User
from ..services.rate_limit_service import get_rate_limiter
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        threshold_count = db.session.query(OverrideThreshold).filter_by(is_active=True).count()
        pin_count = db.session.query(ManagerPin).filter_by(is_active=True).count()
        pending_count = db.session.query(OverrideRequest).filter(
            OverrideRequest.status == "pending",
            OverrideRequest.expires_at > utcnow(),
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "active_thresholds": threshold_count,
                "active_manager_pins": pin_count,
                "pending_requests": pending_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_rate_limiter_health() -> dict:
    """
    A memory store is healthy but degraded when the app runs several
    workers: lockouts are then per process.
    """
    try:
        limiter = get_rate_limiter()
        store = current_app.config.get("OVERRIDE_RATE_LIMIT_STORE", "memory")
        limiter.get_lockout_status("health-check")
        return {
            "status": "healthy",
            "details": {
                "store": store,
                "max_attempts": limiter.max_attempts,
                "lockout_minutes": int(limiter.lockout_duration.total_seconds() / 60),
            }
        }
    except Exception:
        current_app.logger.exception("Rate limiter health check failed")
        return {
            "status": "unhealthy",
            "error": "Rate limiter error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: All systems healthy
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    limiter_health = check_rate_limiter_health()

    all_checks = [database_health, limiter_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")

    overall_status = "unhealthy" if unhealthy_count else "healthy"
    http_status = 503 if unhealthy_count else 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "rate_limiter": limiter_health,
        }
    }

    return response, http_status
