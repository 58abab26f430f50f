# Overview: Manager PIN verification with lockout, and the synchronous approval flows.

"""
Credential Verification

Every PIN-gated action (verify-now, approve-now, resolve a request) runs
through run_verification(), which writes exactly one audit row per call.

PER ATTEMPT:
1. Any lock key locked        -> RateLimitedError, no PIN comparison
2. Count the attempt against every lock key; refused the same way if a
   concurrent attempt locked one of them first
3. Compare against active PINs (optionally one manager's)
4. Reject expired PINs, PINs below the required tier, exhausted daily caps
5. Failure: the count stands, answer with a generic UnauthorizedError
   (attempts remaining, lockout if this one tripped it)
6. Success: usage counted and audit row written in one transaction, then
   the lock keys are cleared

SECURITY: callers never learn which check failed or whether a PIN exists
for a given manager. The audit row records the specific reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..errors import ConflictError, RateLimitedError, UnauthorizedError, ValidationError
from ..levels import ApprovalLevel, OverrideType
from ..time_utils import utcnow
from ..validation import parse_int, parse_number
from . import audit_service, credential_service, evaluation_service, threshold_service
from .rate_limit_service import credential_key, get_rate_limiter, origin_key


logger = logging.getLogger(__name__)

CONTEXT_FIELDS = ("transaction_id", "quotation_id", "shift_id", "register_id", "product_id", "quantity")


@dataclass
class VerifiedManager:
    manager_id: int
    manager_name: str
    approval_level: ApprovalLevel
    remaining_overrides: int | None
    pin_id: int

    def to_dict(self) -> dict:
        return {
            "manager_id": self.manager_id,
            "manager_name": self.manager_name,
            "approval_level": self.approval_level.value,
            "remaining_overrides": self.remaining_overrides,
        }


@dataclass
class ClientInfo:
    ip_address: str | None = None
    user_agent: str | None = None
    device_id: str | None = None

    @property
    def origin(self) -> str:
        return origin_key(self.ip_address)

    def audit_fields(self) -> dict:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_id": self.device_id,
        }


def lock_keys(client: ClientInfo, user_id: int | None = None, extra=()) -> list[str]:
    keys = [client.origin]
    if user_id is not None and current_app.config.get("OVERRIDE_LOCK_BY_CREDENTIAL", True):
        keys.append(credential_key(user_id))
    keys.extend(extra)
    return keys


def _require_pin(pin) -> str:
    if pin is None or str(pin).strip() == "":
        raise ValidationError("PIN is required")
    return str(pin).strip()


def match_credential(
    pin: str,
    *,
    required_level: ApprovalLevel | None,
    user_id: int | None,
    now: datetime,
) -> VerifiedManager:
    """
    Find the manager this PIN belongs to and check it may act.

    Raises UnauthorizedError with an internal detail; counting the failure
    is the caller's job.
    """
    match = None
    for candidate in credential_service.active_pins(user_id, now):
        if credential_service.check_pin(pin, candidate):
            match = candidate
            break

    if match is None:
        raise UnauthorizedError(detail="PIN did not match an active credential")
    if match.valid_until is not None and match.valid_until <= now:
        raise UnauthorizedError(detail="PIN expired")

    level = ApprovalLevel.parse(match.approval_level)
    if required_level is not None and level < required_level:
        raise UnauthorizedError(
            detail=f"Approval level {level.value} below required {required_level.value}"
        )

    remaining = match.remaining_on(now.date())
    if remaining == 0:
        raise UnauthorizedError(detail="Daily override limit reached")

    return VerifiedManager(
        manager_id=match.user_id,
        manager_name=match.user.display_name,
        approval_level=level,
        remaining_overrides=remaining,
        pin_id=match.id,
    )


def run_verification(
    pin,
    *,
    client: ClientInfo,
    log_fields: dict,
    required_level: ApprovalLevel | None = None,
    user_id: int | None = None,
    extra_keys=(),
    granted: bool = True,
    within=None,
    now: datetime | None = None,
):
    """
    Verify a PIN and record the outcome. Returns (manager, log_entry).

    granted: whether a valid PIN means the action was approved (False when a
    manager uses their PIN to deny a request). Only grants count against
    the daily cap.
    within: extra work committed atomically with a successful verification
    (e.g. the request status change). An OverrideError it raises is audited
    as a denial.
    """
    pin = _require_pin(pin)
    now = now or utcnow()
    limiter = get_rate_limiter()
    keys = lock_keys(client, user_id, extra_keys)
    base = {**log_fields, **client.audit_fields(), "verification_method": log_fields.get("verification_method", "pin")}

    locked_until = limiter.locked_until(keys, now)
    outcomes = []
    if locked_until is None:
        outcomes = [limiter.acquire(key, now) for key in keys]
        refused = [o.locked_until for o in outcomes if not o.admitted]
        if refused:
            locked_until = max(refused)
    if locked_until is not None:
        audit_service.log_override(
            {**base, "was_approved": False, "denial_reason": "Too many failed PIN attempts"},
            now=now,
        )
        raise RateLimitedError(locked_until)

    manager = None
    try:
        manager = match_credential(pin, required_level=required_level, user_id=user_id, now=now)

        def _commit_work():
            if granted and not credential_service.consume_daily_use(manager.pin_id, now.date(), now):
                raise UnauthorizedError(detail="Daily override limit reached")
            if within is not None:
                within(manager)

        entry = audit_service.log_override(
            {
                **base,
                "approved_by": manager.manager_id,
                "approval_level": manager.approval_level.value,
                "was_approved": granted,
            },
            within=_commit_work,
            now=now,
        )
    except UnauthorizedError as exc:
        failure = _combine(outcomes)
        audit_service.log_override(
            {**base, "was_approved": False, "denial_reason": exc.detail},
            now=now,
        )
        raise UnauthorizedError(
            attempts_remaining=failure.attempts_remaining,
            locked_until=failure.locked_until,
        )
    except ConflictError as exc:
        # The PIN itself was good
        _clear(limiter, keys)
        audit_service.log_override(
            {
                **base,
                "approved_by": manager.manager_id if manager else None,
                "approval_level": manager.approval_level.value if manager else None,
                "was_approved": False,
                "denial_reason": exc.message,
            },
            now=now,
        )
        raise

    _clear(limiter, keys)

    if granted and manager.remaining_overrides is not None:
        manager.remaining_overrides -= 1
    return manager, entry


@dataclass
class _CombinedFailure:
    attempts_remaining: int
    locked_until: datetime | None


def _combine(outcomes) -> _CombinedFailure:
    locks = [o.locked_until for o in outcomes if o.locked_until is not None]
    return _CombinedFailure(
        attempts_remaining=min(o.attempts_remaining for o in outcomes),
        locked_until=max(locks) if locks else None,
    )


def _clear(limiter, keys) -> None:
    for key in keys:
        limiter.reset(key)


def validate_manager_pin(
    pin,
    required_level=None,
    user_id=None,
    *,
    client: ClientInfo,
    cashier_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Bare credential check: is this a valid manager PIN at the required tier?

    Raises RateLimitedError / UnauthorizedError. One audit row per call.
    """
    level = ApprovalLevel.parse(required_level, field="required_level") if required_level else None
    user_id = parse_int(user_id, "user_id")

    manager, entry = run_verification(
        pin,
        client=client,
        required_level=level,
        user_id=user_id,
        log_fields={
            "override_type": OverrideType.PIN_VERIFICATION.value,
            "cashier_id": cashier_id,
        },
        now=now,
    )
    return {"valid": True, "log_id": entry.id, **manager.to_dict()}


def _check_reason(threshold, reason: str | None) -> None:
    if threshold is None or not threshold.require_reason:
        return
    minimum = max(1, threshold.reason_min_length or 0)
    if reason is None or len(reason.strip()) < minimum:
        if minimum > 1:
            raise ValidationError(f"A reason of at least {minimum} characters is required")
        raise ValidationError("A reason is required for this override")


def approve_override(
    pin,
    override_type,
    *,
    client: ClientInfo,
    value=None,
    original_value=None,
    override_value=None,
    required_level=None,
    reason: str | None = None,
    context: dict | None = None,
    cashier_id: int | None = None,
    product_name: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Synchronous approve: evaluate, verify the manager PIN on the spot, record.

    required_level, when given, overrides the evaluated tier. value is the
    quantity evaluated against the threshold (percent, amount, margin).
    """
    override_type = OverrideType.parse(override_type)
    if override_type is OverrideType.PIN_VERIFICATION:
        raise ValidationError("Use verify-pin for a bare PIN check")
    now = now or utcnow()
    context = dict(context or {})

    decision = evaluation_service.check_requires_approval(override_type, value, context, now=now)
    threshold = decision.threshold
    level = ApprovalLevel.parse(required_level, field="required_level") if required_level else decision.required_level

    reason = reason.strip() if isinstance(reason, str) else None
    _check_reason(threshold if decision.requires_approval else None, reason)

    log_fields = {
        "override_type": override_type.value,
        "threshold_id": threshold.id if threshold else None,
        "threshold_snapshot": threshold_service.snapshot(threshold),
        "cashier_id": cashier_id,
        "original_value": parse_number(original_value, "original_value", required=False),
        "override_value": parse_number(override_value, "override_value", required=False),
        "product_name": product_name,
        "reason": reason,
    }
    for key in CONTEXT_FIELDS:
        log_fields[key] = parse_int(context.get(key), key)

    def _refuse_unapprovable(_manager):
        raise ConflictError(decision.message or "No approval level can authorize this override")

    manager, entry = run_verification(
        pin,
        client=client,
        required_level=level,
        log_fields=log_fields,
        within=None if decision.approvable else _refuse_unapprovable,
        now=now,
    )
    logger.info(
        "%s approved by manager %s (log %s)", override_type.value, manager.manager_id, entry.id,
    )
    return {
        "approved": True,
        "log_id": entry.id,
        "required_level": level.value if level else None,
        **manager.to_dict(),
    }
