# Overview: Append-only override audit log and its reporting queries.

"""
Override Audit Log

WHY: The override log is the system of record for compliance and dispute
resolution. Every verification attempt and every override decision,
granted or denied, produces exactly one row.

FAIL CLOSED: an audit write is the only operation retried automatically.
If it still cannot be written the action is reported as not authorized
(AuditWriteError), and any work bundled into the same transaction (PIN
usage, request resolution) is rolled back with it.

Rows are never updated or deleted (see models.audit).
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import AuditWriteError, OverrideError, ValidationError
from ..extensions import db
from ..levels import ApprovalLevel, OverrideType
from ..models import OverrideLog, User
from ..time_utils import parse_iso_datetime, utcnow
from ..validation import parse_bool, parse_int, parse_number
from .concurrency import run_with_retry


logger = logging.getLogger(__name__)

CONTEXT_ID_FIELDS = ("request_id", "threshold_id", "transaction_id", "quotation_id", "shift_id", "register_id",
                     "cashier_id", "approved_by", "product_id", "quantity")
TEXT_FIELDS = {
    "product_name": 255,
    "reason": None,
    "denial_reason": None,
    "ip_address": 45,
    "user_agent": 512,
    "device_id": 100,
}
VERIFICATION_METHODS = {"pin", "remote", "manual"}

HISTORY_MAX_LIMIT = 500
SUMMARY_GROUPS = {"day": "%Y-%m-%d", "month": "%Y-%m", "manager": None}


def build_entry_fields(details: dict) -> dict:
    """Validate audit details into OverrideLog column values."""
    if not isinstance(details, dict):
        raise ValidationError("Invalid audit payload")

    override_type = OverrideType.parse(details.get("override_type"))
    if "was_approved" not in details or details["was_approved"] is None:
        raise ValidationError("was_approved is required")
    was_approved = parse_bool(details["was_approved"], "was_approved")

    fields = {
        "override_type": override_type.value,
        "was_approved": was_approved,
    }
    for key in CONTEXT_ID_FIELDS:
        fields[key] = parse_int(details.get(key), key)

    for key, max_length in TEXT_FIELDS.items():
        value = details.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if max_length is not None:
            value = value[:max_length]
        fields[key] = value or None

    level = details.get("approval_level")
    fields["approval_level"] = ApprovalLevel.parse(level).value if level else None

    method = details.get("verification_method") or "pin"
    if method not in VERIFICATION_METHODS:
        raise ValidationError("verification_method must be one of: manual, pin, remote")
    fields["verification_method"] = method

    original = parse_number(details.get("original_value"), "original_value", required=False)
    override = parse_number(details.get("override_value"), "override_value", required=False)
    fields["original_value"] = original
    fields["override_value"] = override
    if original is not None and override is not None:
        fields["difference_value"] = round(override - original, 4)
        if original != 0:
            fields["difference_percent"] = round(((override - original) / original) * 100, 4)

    if not was_approved and not fields.get("denial_reason"):
        fields["denial_reason"] = "Denied"

    snapshot = details.get("threshold_snapshot")
    if snapshot is not None and not isinstance(snapshot, dict):
        raise ValidationError("threshold_snapshot must be an object")
    fields["threshold_snapshot"] = snapshot

    return fields


def log_override(details: dict, *, within=None, now: datetime | None = None) -> OverrideLog:
    """
    Append one audit row and commit.

    within: optional callable run inside the same transaction before the
    commit (and re-run on retry). An OverrideError it raises aborts the
    write and propagates unchanged.
    """
    fields = build_entry_fields(details)
    fields["created_at"] = now or utcnow()
    attempts = int(current_app.config.get("OVERRIDE_AUDIT_WRITE_ATTEMPTS", 3))

    def _op():
        if within is not None:
            within()
        entry = OverrideLog(**fields)
        db.session.add(entry)
        db.session.commit()
        return entry

    try:
        return run_with_retry(_op, attempts=attempts)
    except OverrideError:
        db.session.rollback()
        raise
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Override audit write failed for %s", fields["override_type"])
        raise AuditWriteError("Override could not be recorded; the action was not authorized")


def _parse_range(start, end) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if isinstance(start, str) else start
        end_dt = parse_iso_datetime(end) if isinstance(end, str) else end
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 datetimes")
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("start must be before end")
    return start_dt, end_dt


def get_override_history(
    *,
    start=None,
    end=None,
    override_type=None,
    manager_id=None,
    cashier_id=None,
    was_approved=None,
    request_id=None,
    transaction_id=None,
    limit=100,
    offset=0,
) -> dict:
    """
    Filtered, newest-first page of audit rows.

    Entries for one request are ordered by id, which follows decision order.
    """
    start_dt, end_dt = _parse_range(start, end)
    limit = parse_int(limit, "limit", minimum=1) or 100
    limit = min(limit, HISTORY_MAX_LIMIT)
    offset = parse_int(offset, "offset", minimum=0) or 0

    query = db.session.query(OverrideLog)
    if start_dt:
        query = query.filter(OverrideLog.created_at >= start_dt)
    if end_dt:
        query = query.filter(OverrideLog.created_at <= end_dt)
    if override_type:
        query = query.filter(OverrideLog.override_type == OverrideType.parse(override_type).value)
    if manager_id is not None:
        query = query.filter(OverrideLog.approved_by == parse_int(manager_id, "manager_id"))
    if cashier_id is not None:
        query = query.filter(OverrideLog.cashier_id == parse_int(cashier_id, "cashier_id"))
    if was_approved is not None:
        query = query.filter(OverrideLog.was_approved.is_(parse_bool(was_approved, "was_approved")))
    if request_id is not None:
        query = query.filter(OverrideLog.request_id == parse_int(request_id, "request_id"))
    if transaction_id is not None:
        query = query.filter(OverrideLog.transaction_id == parse_int(transaction_id, "transaction_id"))

    total = query.count()
    rows = query.order_by(OverrideLog.created_at.desc(), OverrideLog.id.desc()).limit(limit).offset(offset).all()

    return {
        "overrides": [row.to_dict() for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def get_override_summary(*, start=None, end=None, group_by: str = "day") -> dict:
    """
    Approved / denied counts and value deltas per period and override type,
    or per approving manager.
    """
    if group_by not in SUMMARY_GROUPS:
        raise ValidationError("group_by must be one of: day, month, manager")
    start_dt, end_dt = _parse_range(start, end)

    approved_count = func.sum(case((OverrideLog.was_approved.is_(True), 1), else_=0))
    denied_count = func.sum(case((OverrideLog.was_approved.is_(False), 1), else_=0))
    avg_difference = func.avg(func.abs(OverrideLog.difference_value))
    total_difference = func.sum(func.abs(OverrideLog.difference_value))

    if group_by == "manager":
        key_expr = OverrideLog.approved_by
        query = db.session.query(
            key_expr.label("manager_id"),
            OverrideLog.override_type,
            func.count(OverrideLog.id),
            approved_count,
            denied_count,
            avg_difference,
            total_difference,
        )
    else:
        key_expr = func.strftime(SUMMARY_GROUPS[group_by], OverrideLog.created_at)
        query = db.session.query(
            key_expr.label("period"),
            OverrideLog.override_type,
            func.count(OverrideLog.id),
            approved_count,
            denied_count,
            avg_difference,
            total_difference,
        )

    if start_dt:
        query = query.filter(OverrideLog.created_at >= start_dt)
    if end_dt:
        query = query.filter(OverrideLog.created_at <= end_dt)

    rows = query.group_by(key_expr, OverrideLog.override_type).order_by(
        key_expr.desc() if group_by != "manager" else key_expr, OverrideLog.override_type
    ).all()

    names = {}
    if group_by == "manager":
        ids = {row[0] for row in rows if row[0] is not None}
        if ids:
            names = {u.id: u.display_name for u in db.session.query(User).filter(User.id.in_(ids)).all()}

    summary = []
    for key, override_type, total_count, approved, denied, avg_diff, total_diff in rows:
        item = {
            "override_type": override_type,
            "total_count": int(total_count or 0),
            "approved_count": int(approved or 0),
            "denied_count": int(denied or 0),
            "avg_difference": round(float(avg_diff), 2) if avg_diff is not None else None,
            "total_difference": round(float(total_diff), 2) if total_diff is not None else 0.0,
        }
        if group_by == "manager":
            item["manager_id"] = key
            item["manager_name"] = names.get(key)
        else:
            item["period"] = key
        summary.append(item)

    return {"group_by": group_by, "summary": summary}
