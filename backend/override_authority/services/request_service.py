# Overview: Asynchronous override requests: create, queue, resolve remotely, expire.

"""
Override Request Lifecycle

pending -> approved | denied | expired | cancelled, each terminal.

- Created with a short code (OVR-XXXXXX) a cashier can read out to a manager
  on another device, and an expiry (OVERRIDE_REQUEST_TTL_MINUTES).
- Resolution verifies the manager PIN at the request's tier, then moves
  the request out of pending with a compare-and-swap UPDATE committed in the
  same transaction as its audit row. Two racing resolutions cannot both
  win; the loser gets ConflictError and its own audit row.
- Expiry is lazy: a pending request past expires_at reads as expired and
  cannot be resolved. expire_stale_requests() rewrites such rows eagerly.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..extensions import db
from ..levels import EVENT_TYPES, ApprovalLevel, OverrideType, RequestStatus
from ..models import OverrideRequest, User
from ..time_utils import utcnow
from ..validation import parse_bool, parse_int, parse_number
from . import audit_service, evaluation_service, threshold_service
from .rate_limit_service import request_key
from .verification_service import ClientInfo, run_verification


logger = logging.getLogger(__name__)

# No 0/O or 1/I: codes are read aloud
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
CODE_PREFIX = "OVR-"
PENDING_MAX_LIMIT = 200


def generate_request_code() -> str:
    for _ in range(10):
        code = CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        if not db.session.query(OverrideRequest.id).filter_by(request_code=code).first():
            return code
    raise RuntimeError("Could not allocate a unique override request code")


def _ttl_minutes(expires_in_minutes) -> int:
    config = current_app.config
    if expires_in_minutes is None:
        return int(config.get("OVERRIDE_REQUEST_TTL_MINUTES", 10))
    minutes = parse_int(expires_in_minutes, "expires_in_minutes")
    low = int(config.get("OVERRIDE_REQUEST_MIN_TTL_MINUTES", 1))
    high = int(config.get("OVERRIDE_REQUEST_MAX_TTL_MINUTES", 60))
    if not low <= minutes <= high:
        raise ValidationError(f"expires_in_minutes must be between {low} and {high}")
    return minutes


def create_override_request(details: dict, requested_by: int, *, now: datetime | None = None) -> OverrideRequest:
    """
    Open a pending request.

    details: override_type (required), value (evaluated against the
    threshold), required_level, threshold_id, original_value,
    requested_value, reason, payload, context ids, product fields,
    expires_in_minutes.
    """
    if not isinstance(details, dict):
        raise ValidationError("Invalid JSON payload")
    now = now or utcnow()

    override_type = OverrideType.parse(details.get("override_type"))
    if override_type is OverrideType.PIN_VERIFICATION:
        raise ValidationError("pin_verification cannot be requested")
    if db.session.get(User, requested_by) is None:
        raise NotFoundError(f"User {requested_by} not found")

    payload = details.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    context = details.get("context") or {}
    if not isinstance(context, dict):
        raise ValidationError("context must be an object")

    threshold = None
    threshold_id = parse_int(details.get("threshold_id"), "threshold_id")
    if threshold_id is not None:
        threshold = threshold_service.get_threshold(threshold_id)

    if details.get("required_level"):
        level = ApprovalLevel.parse(details["required_level"], field="required_level")
    elif details.get("value") is not None or override_type in EVENT_TYPES:
        decision = evaluation_service.check_requires_approval(override_type, details.get("value"), context, now=now)
        if decision.requires_approval and not decision.approvable:
            raise ConflictError(decision.message)
        threshold = threshold or decision.threshold
        level = decision.required_level or (
            ApprovalLevel.parse(threshold.default_approval_level) if threshold else ApprovalLevel.MANAGER
        )
    elif threshold is not None:
        level = ApprovalLevel.parse(threshold.default_approval_level)
    else:
        level = ApprovalLevel.MANAGER

    reason = details.get("reason")
    request = OverrideRequest(
        request_code=generate_request_code(),
        override_type=override_type.value,
        threshold_id=threshold.id if threshold else None,
        required_level=level.value,
        transaction_id=parse_int(details.get("transaction_id"), "transaction_id"),
        quotation_id=parse_int(details.get("quotation_id"), "quotation_id"),
        shift_id=parse_int(details.get("shift_id"), "shift_id"),
        register_id=parse_int(details.get("register_id"), "register_id"),
        requested_by=requested_by,
        requested_at=now,
        original_value=parse_number(details.get("original_value"), "original_value", required=False),
        requested_value=parse_number(details.get("requested_value"), "requested_value", required=False),
        product_id=parse_int(details.get("product_id"), "product_id"),
        product_name=(str(details["product_name"]).strip()[:255] if details.get("product_name") else None),
        quantity=parse_int(details.get("quantity"), "quantity"),
        reason=str(reason).strip() if reason else None,
        payload=payload,
        status=RequestStatus.PENDING.value,
        expires_at=now + timedelta(minutes=_ttl_minutes(details.get("expires_in_minutes"))),
    )
    db.session.add(request)
    db.session.commit()

    logger.info("Override request %s opened for %s (%s)", request.request_code, override_type.value, level.value)
    return request


def get_request(request_id: int) -> OverrideRequest:
    request = db.session.get(OverrideRequest, request_id)
    if request is None:
        raise NotFoundError(f"Override request {request_id} not found")
    return request


def get_request_by_code(code: str) -> OverrideRequest:
    code = (code or "").strip().upper()
    if code and not code.startswith(CODE_PREFIX):
        code = CODE_PREFIX + code
    request = db.session.query(OverrideRequest).filter_by(request_code=code).first()
    if request is None:
        raise NotFoundError(f"Override request {code} not found")
    return request


def get_pending_requests(
    shift_id=None,
    register_id=None,
    limit=50,
    *,
    now: datetime | None = None,
) -> list[OverrideRequest]:
    """Approval queue: pending and unexpired, oldest first."""
    now = now or utcnow()
    limit = parse_int(limit, "limit", minimum=1) or 50
    limit = min(limit, PENDING_MAX_LIMIT)

    query = db.session.query(OverrideRequest).filter(
        OverrideRequest.status == RequestStatus.PENDING.value,
        OverrideRequest.expires_at > now,
    )
    shift_id = parse_int(shift_id, "shift_id")
    if shift_id is not None:
        query = query.filter(OverrideRequest.shift_id == shift_id)
    register_id = parse_int(register_id, "register_id")
    if register_id is not None:
        query = query.filter(OverrideRequest.register_id == register_id)

    return query.order_by(OverrideRequest.requested_at.asc(), OverrideRequest.id.asc()).limit(limit).all()


def _request_log_fields(request: OverrideRequest) -> dict:
    return {
        "request_id": request.id,
        "override_type": request.override_type,
        "threshold_id": request.threshold_id,
        "threshold_snapshot": threshold_service.snapshot(request.threshold) if request.threshold_id else None,
        "transaction_id": request.transaction_id,
        "quotation_id": request.quotation_id,
        "shift_id": request.shift_id,
        "register_id": request.register_id,
        "cashier_id": request.requested_by,
        "original_value": request.original_value,
        "override_value": request.requested_value,
        "product_id": request.product_id,
        "product_name": request.product_name,
        "quantity": request.quantity,
    }


def _transition(request_id: int, status: RequestStatus, *, now: datetime, resolved_by=None, reason=None) -> None:
    """
    Compare-and-swap out of pending. Does not commit.

    Raises ConflictError when the request is no longer pending or has
    expired.
    """
    result = db.session.execute(
        update(OverrideRequest)
        .where(
            OverrideRequest.id == request_id,
            OverrideRequest.status == RequestStatus.PENDING.value,
            OverrideRequest.expires_at > now,
        )
        .values(
            status=status.value,
            resolved_by=resolved_by,
            resolved_at=now,
            resolution_reason=reason,
            version_id=OverrideRequest.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Override request is no longer pending")


def _conflict_message(request: OverrideRequest, now: datetime) -> str | None:
    status = request.effective_status(now)
    if status == RequestStatus.PENDING.value:
        return None
    if status == RequestStatus.EXPIRED.value:
        return "Override request has expired"
    return f"Override request already {status}"


def resolve_request(
    request_id: int,
    pin,
    approved,
    reason: str | None = None,
    *,
    client: ClientInfo,
    now: datetime | None = None,
) -> dict:
    """
    Approve or deny a pending request with a manager PIN.

    Failed PIN checks leave the request pending. Every call that reaches a
    known request writes exactly one audit row.
    """
    request = get_request(request_id)
    return _resolve(request, pin, approved, reason, client=client, now=now)


def resolve_request_by_code(code: str, pin, approved, reason: str | None = None, *, client: ClientInfo, now=None) -> dict:
    request = get_request_by_code(code)
    return _resolve(request, pin, approved, reason, client=client, now=now)


def _resolve(request: OverrideRequest, pin, approved, reason, *, client: ClientInfo, now) -> dict:
    if approved is None:
        raise ValidationError("approved is required")
    approved = parse_bool(approved, "approved")
    if pin is None or str(pin).strip() == "":
        raise ValidationError("PIN is required")
    reason = reason.strip() if isinstance(reason, str) and reason.strip() else None
    now = now or utcnow()

    log_fields = _request_log_fields(request)
    log_fields["verification_method"] = "remote"
    if approved:
        log_fields["reason"] = request.reason
    else:
        log_fields["denial_reason"] = reason or "Denied by manager"

    conflict = _conflict_message(request, now)
    if conflict:
        audit_service.log_override(
            {**log_fields, **client.audit_fields(), "was_approved": False, "denial_reason": conflict},
            now=now,
        )
        raise ConflictError(conflict)

    status = RequestStatus.APPROVED if approved else RequestStatus.DENIED
    request_id = request.id

    def _apply(manager):
        _transition(request_id, status, now=now, resolved_by=manager.manager_id, reason=reason)

    manager, entry = run_verification(
        pin,
        client=client,
        required_level=ApprovalLevel.parse(request.required_level),
        extra_keys=[request_key(request_id)],
        log_fields=log_fields,
        granted=approved,
        within=_apply,
        now=now,
    )

    logger.info("Override request %s %s by manager %s", request.request_code, status.value, manager.manager_id)
    return {
        "approved": approved,
        "status": status.value,
        "log_id": entry.id,
        "request_id": request_id,
        "manager_id": manager.manager_id,
        "manager_name": manager.manager_name,
    }


def cancel_request(request_id: int, caller_id: int, reason: str | None = None, *, client: ClientInfo | None = None,
                   now: datetime | None = None) -> OverrideRequest:
    """The requester withdraws a pending request."""
    request = get_request(request_id)
    now = now or utcnow()
    if request.requested_by != caller_id:
        raise ForbiddenError("Only the requester can cancel an override request")

    conflict = _conflict_message(request, now)
    if conflict:
        raise ConflictError(conflict)

    reason = reason.strip() if isinstance(reason, str) and reason.strip() else "Cancelled by requester"
    client = client or ClientInfo()
    audit_service.log_override(
        {
            **_request_log_fields(request),
            **client.audit_fields(),
            "verification_method": "manual",
            "was_approved": False,
            "denial_reason": reason,
        },
        within=lambda: _transition(request.id, RequestStatus.CANCELLED, now=now, reason=reason),
        now=now,
    )
    return get_request(request_id)


def expire_stale_requests(now: datetime | None = None) -> int:
    """Rewrite pending requests past their expiry as expired. Returns the count."""
    now = now or utcnow()
    result = db.session.execute(
        update(OverrideRequest)
        .where(
            OverrideRequest.status == RequestStatus.PENDING.value,
            OverrideRequest.expires_at <= now,
        )
        .values(
            status=RequestStatus.EXPIRED.value,
            version_id=OverrideRequest.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount:
        logger.info("Expired %d stale override requests", result.rowcount)
    return result.rowcount
