# Overview: Threshold registry: scoped lookup, approval ladders, exceptions and admin CRUD.

"""
Threshold Registry

WHY: Which actions need a manager, and which manager, is store policy that
changes without a deploy. Admins configure one threshold per override type
and scope (channel, category); each threshold may carry a ladder of approval
tiers with their own ceilings.

INVARIANTS (enforced on every write):
- At most one active threshold per (override_type, channel, category_id).
- Ladder ordered by tier has non-decreasing max_value; at most one rung is
  unlimited and it is the highest tier present.

LOOKUP: the most specific in-effect threshold wins. A category match beats
a channel match, which beats the unscoped default; ties go to the higher
priority, then the older row.
"""

from __future__ import annotations

import logging
from datetime import datetime

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..levels import ApprovalLevel, Channel, OverrideType
from ..models import OverrideThreshold, ThresholdApprovalLevel, ThresholdException
from ..time_utils import to_utc_z, utcnow
from ..validation import (
    ModelValidationPolicy,
    parse_active_days,
    parse_bool,
    parse_int,
    parse_number,
    require_json_object,
    validate_payload,
)


logger = logging.getLogger(__name__)


THRESHOLD_POLICY = ModelValidationPolicy(
    writable_fields={
        "override_type",
        "name",
        "description",
        "channel",
        "category_id",
        "threshold_value",
        "default_approval_level",
        "require_reason",
        "reason_min_length",
        "valid_from",
        "valid_to",
        "active_start_time",
        "active_end_time",
        "active_days",
        "priority",
        "is_active",
    },
    required_on_create={"override_type", "name"},
)

EXCEPTION_POLICY = ModelValidationPolicy(
    writable_fields={
        "exception_type",
        "product_id",
        "category_id",
        "customer_id",
        "customer_tier",
        "user_id",
        "is_exempt",
        "is_active",
        "valid_until",
        "reason",
    },
    required_on_create={"exception_type"},
)

# exception_type -> the context key it matches on
EXCEPTION_MATCH_FIELDS = {
    "product": "product_id",
    "category": "category_id",
    "customer": "customer_id",
    "customer_tier": "customer_tier",
    "user": "user_id",
}

THRESHOLD_GROUPS = {
    "discount": {OverrideType.DISCOUNT_PERCENT, OverrideType.DISCOUNT_AMOUNT},
    "margin": {OverrideType.MARGIN_BELOW, OverrideType.PRICE_BELOW_COST},
    "voids": {OverrideType.VOID_TRANSACTION, OverrideType.VOID_ITEM},
    "refunds": {OverrideType.REFUND_AMOUNT, OverrideType.REFUND_NO_RECEIPT},
}


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def get_threshold(threshold_id: int) -> OverrideThreshold:
    threshold = db.session.get(OverrideThreshold, threshold_id)
    if threshold is None:
        raise NotFoundError(f"Threshold {threshold_id} not found")
    return threshold


def _sunday_based_weekday(moment: datetime) -> int:
    # datetime.weekday(): Monday = 0; stored days use Sunday = 0
    return (moment.weekday() + 1) % 7


def is_in_effect(threshold: OverrideThreshold, now: datetime) -> bool:
    """True when the threshold is active and inside all of its time rules."""
    if not threshold.is_active:
        return False
    if threshold.valid_from is not None and threshold.valid_from > now:
        return False
    if threshold.valid_to is not None and threshold.valid_to < now:
        return False

    if threshold.active_days:
        if _sunday_based_weekday(now) not in threshold.active_days:
            return False

    start, end = threshold.active_start_time, threshold.active_end_time
    if start is not None or end is not None:
        current = now.time()
        if start is not None and end is not None and start > end:
            # Window wraps past midnight (e.g. 22:00-06:00)
            if not (current >= start or current < end):
                return False
        else:
            if start is not None and current < start:
                return False
            if end is not None and current >= end:
                return False
    return True


def find_applicable_threshold(
    override_type: OverrideType,
    *,
    channel: Channel | None = None,
    category_id: int | None = None,
    now: datetime | None = None,
) -> OverrideThreshold | None:
    now = now or utcnow()

    query = db.session.query(OverrideThreshold).filter(
        OverrideThreshold.override_type == override_type.value,
        OverrideThreshold.is_active.is_(True),
    )
    if channel is None:
        query = query.filter(OverrideThreshold.channel.is_(None))
    else:
        query = query.filter(db.or_(OverrideThreshold.channel.is_(None), OverrideThreshold.channel == channel.value))
    if category_id is None:
        query = query.filter(OverrideThreshold.category_id.is_(None))
    else:
        query = query.filter(
            db.or_(OverrideThreshold.category_id.is_(None), OverrideThreshold.category_id == category_id)
        )

    candidates = [t for t in query.all() if is_in_effect(t, now)]
    if not candidates:
        return None

    candidates.sort(
        key=lambda t: (
            t.category_id is None,
            t.channel is None,
            -(t.priority or 0),
            t.id,
        )
    )
    return candidates[0]


def find_exception(threshold: OverrideThreshold, context: dict, now: datetime | None = None) -> ThresholdException | None:
    """First active exempt exception matching the context, or None."""
    now = now or utcnow()
    for exc in threshold.exceptions:
        if not exc.is_active or not exc.is_exempt:
            continue
        if exc.valid_until is not None and exc.valid_until <= now:
            continue
        field = EXCEPTION_MATCH_FIELDS.get(exc.exception_type)
        if field is None:
            continue
        wanted = getattr(exc, field)
        supplied = context.get(field)
        if wanted is not None and supplied is not None and str(wanted) == str(supplied):
            return exc
    return None


# ---------------------------------------------------------------------------
# Ladder
# ---------------------------------------------------------------------------

def ordered_ladder(threshold: OverrideThreshold) -> list[ThresholdApprovalLevel]:
    return sorted(threshold.approval_levels, key=lambda rung: ApprovalLevel.parse(rung.approval_level).rank)


def validate_ladder(rungs) -> None:
    """
    rungs: iterable of (ApprovalLevel, max_value | None, is_unlimited).

    Raises ValidationError when the ladder is not ordered or has a
    misplaced unlimited rung.
    """
    rungs = sorted(rungs, key=lambda rung: rung[0].rank)
    seen = set()
    unlimited = [rung for rung in rungs if rung[2]]

    for level, max_value, is_unlimited in rungs:
        if level in seen:
            raise ValidationError(f"Duplicate approval level: {level.value}")
        seen.add(level)
        if not is_unlimited and max_value is None:
            raise ValidationError(f"max_value is required for {level.value} unless it is unlimited")
        if max_value is not None and max_value < 0:
            raise ValidationError("max_value must be >= 0")

    if len(unlimited) > 1:
        raise ValidationError("Only one approval level may be unlimited")
    if unlimited and unlimited[0][0] != rungs[-1][0]:
        raise ValidationError("The unlimited approval level must be the highest tier")

    previous = None
    for level, max_value, is_unlimited in rungs:
        if is_unlimited:
            continue
        if previous is not None and max_value < previous[1]:
            raise ValidationError(
                f"max_value for {level.value} ({max_value:g}) is below {previous[0].value} ({previous[1]:g})"
            )
        previous = (level, max_value)


def _parse_rung(raw) -> tuple[ApprovalLevel, float | None, bool, str | None]:
    if not isinstance(raw, dict):
        raise ValidationError("approval_levels entries must be objects")
    level = ApprovalLevel.parse(raw.get("approval_level"))
    is_unlimited = parse_bool(raw.get("is_unlimited", False), "is_unlimited")
    max_value = None if is_unlimited else parse_number(raw.get("max_value"), "max_value", minimum=0)
    description = raw.get("description")
    return level, max_value, is_unlimited, (str(description).strip() if description else None)


def _ladder_tuples(threshold: OverrideThreshold, *, skip: ApprovalLevel | None = None):
    return [
        (ApprovalLevel.parse(rung.approval_level), rung.max_value, rung.is_unlimited)
        for rung in threshold.approval_levels
        if skip is None or rung.approval_level != skip.value
    ]


def get_approval_levels(threshold_id: int) -> list[ThresholdApprovalLevel]:
    return ordered_ladder(get_threshold(threshold_id))


def set_approval_level(
    threshold_id: int,
    approval_level,
    max_value=None,
    *,
    is_unlimited: bool = False,
    description: str | None = None,
) -> ThresholdApprovalLevel:
    """Insert or replace one rung; the whole resulting ladder is validated."""
    threshold = get_threshold(threshold_id)
    level = ApprovalLevel.parse(approval_level)
    max_value = None if is_unlimited else parse_number(max_value, "max_value", minimum=0)

    validate_ladder(_ladder_tuples(threshold, skip=level) + [(level, max_value, is_unlimited)])

    rung = next((r for r in threshold.approval_levels if r.approval_level == level.value), None)
    if rung is None:
        rung = ThresholdApprovalLevel(threshold_id=threshold.id, approval_level=level.value)
        threshold.approval_levels.append(rung)
    rung.max_value = max_value
    rung.is_unlimited = is_unlimited
    rung.description = description
    db.session.commit()
    return rung


def delete_approval_level(threshold_id: int, approval_level) -> None:
    threshold = get_threshold(threshold_id)
    level = ApprovalLevel.parse(approval_level)
    rung = next((r for r in threshold.approval_levels if r.approval_level == level.value), None)
    if rung is None:
        raise NotFoundError(f"Approval level {level.value} not configured for threshold {threshold_id}")

    validate_ladder(_ladder_tuples(threshold, skip=level))
    threshold.approval_levels.remove(rung)
    db.session.commit()


def _replace_ladder(threshold: OverrideThreshold, raw_levels) -> None:
    if not isinstance(raw_levels, list):
        raise ValidationError("approval_levels must be a list")
    parsed = [_parse_rung(raw) for raw in raw_levels]
    validate_ladder([(level, max_value, unlimited) for level, max_value, unlimited, _ in parsed])

    threshold.approval_levels.clear()
    # Flush deletes first so the (threshold, level) unique constraint holds
    db.session.flush()
    for level, max_value, unlimited, description in parsed:
        threshold.approval_levels.append(ThresholdApprovalLevel(
            approval_level=level.value,
            max_value=max_value,
            is_unlimited=unlimited,
            description=description,
        ))


# ---------------------------------------------------------------------------
# Threshold CRUD
# ---------------------------------------------------------------------------

def _normalize_threshold_patch(patch: dict, raw: dict) -> dict:
    if "override_type" in patch:
        override_type = OverrideType.parse(patch["override_type"])
        if override_type is OverrideType.PIN_VERIFICATION:
            raise ValidationError("pin_verification cannot have a threshold")
        patch["override_type"] = override_type.value
    if "channel" in patch:
        channel = Channel.parse(patch["channel"])
        patch["channel"] = channel.value if channel else None
    if "default_approval_level" in patch:
        patch["default_approval_level"] = ApprovalLevel.parse(
            patch["default_approval_level"], field="default_approval_level"
        ).value
    if "active_days" in raw:
        patch["active_days"] = parse_active_days(raw["active_days"])
    if patch.get("reason_min_length") is not None and patch["reason_min_length"] < 0:
        raise ValidationError("reason_min_length must be >= 0")
    if patch.get("priority") is not None and patch["priority"] < 0:
        raise ValidationError("priority must be >= 0")
    return patch


def _check_window(threshold: OverrideThreshold) -> None:
    if threshold.valid_from and threshold.valid_to and threshold.valid_from > threshold.valid_to:
        raise ValidationError("valid_from must be before valid_to")


def _ensure_unique_scope(threshold: OverrideThreshold) -> None:
    if not threshold.is_active:
        return
    query = db.session.query(OverrideThreshold).filter(
        OverrideThreshold.override_type == threshold.override_type,
        OverrideThreshold.is_active.is_(True),
    )
    query = query.filter(
        OverrideThreshold.channel.is_(None) if threshold.channel is None
        else OverrideThreshold.channel == threshold.channel
    )
    query = query.filter(
        OverrideThreshold.category_id.is_(None) if threshold.category_id is None
        else OverrideThreshold.category_id == threshold.category_id
    )
    if threshold.id is not None:
        query = query.filter(OverrideThreshold.id != threshold.id)
    existing = query.first()
    if existing:
        raise ConflictError(
            f"An active {threshold.override_type} threshold already exists for this scope (id {existing.id})"
        )


def create_threshold(payload: dict, created_by: int | None = None) -> OverrideThreshold:
    payload = dict(require_json_object(payload))
    raw_levels = payload.pop("approval_levels", None)

    patch = validate_payload(model=OverrideThreshold, payload=payload, policy=THRESHOLD_POLICY, partial=False)
    patch = _normalize_threshold_patch(patch, payload)

    threshold = OverrideThreshold(**patch)
    threshold.created_by = created_by
    if threshold.is_active is None:
        threshold.is_active = True
    _check_window(threshold)

    with db.session.no_autoflush:
        _ensure_unique_scope(threshold)

    db.session.add(threshold)
    try:
        if raw_levels is not None:
            _replace_ladder(threshold, raw_levels)
    except ValidationError:
        db.session.rollback()
        raise
    db.session.commit()

    logger.info("Created %s threshold %s", threshold.override_type, threshold.id)
    return threshold


def update_threshold(threshold_id: int, payload: dict) -> OverrideThreshold:
    threshold = get_threshold(threshold_id)
    payload = dict(require_json_object(payload))
    raw_levels = payload.pop("approval_levels", None)

    patch = validate_payload(model=OverrideThreshold, payload=payload, policy=THRESHOLD_POLICY, partial=True)
    patch = _normalize_threshold_patch(patch, payload)

    try:
        with db.session.no_autoflush:
            for key, value in patch.items():
                setattr(threshold, key, value)
            _check_window(threshold)
            _ensure_unique_scope(threshold)

        if raw_levels is not None:
            _replace_ladder(threshold, raw_levels)
    except (ValidationError, ConflictError):
        db.session.rollback()
        raise
    db.session.commit()
    return threshold


def deactivate_threshold(threshold_id: int) -> OverrideThreshold:
    """Soft delete: audit rows keep pointing at the threshold."""
    threshold = get_threshold(threshold_id)
    threshold.is_active = False
    db.session.commit()
    return threshold


def serialize_threshold(threshold: OverrideThreshold) -> dict:
    data = threshold.to_dict()
    data["approval_levels"] = [rung.to_dict() for rung in ordered_ladder(threshold)]
    data["exception_count"] = sum(1 for exc in threshold.exceptions if exc.is_active)
    return data


def snapshot(threshold: OverrideThreshold | None) -> dict | None:
    """Frozen copy of a threshold and its ladder for the audit log."""
    if threshold is None:
        return None
    return {
        "id": threshold.id,
        "override_type": threshold.override_type,
        "name": threshold.name,
        "channel": threshold.channel,
        "category_id": threshold.category_id,
        "threshold_value": threshold.threshold_value,
        "default_approval_level": threshold.default_approval_level,
        "approval_levels": [
            {
                "approval_level": rung.approval_level,
                "max_value": rung.max_value,
                "is_unlimited": rung.is_unlimited,
            }
            for rung in ordered_ladder(threshold)
        ],
        "captured_at": to_utc_z(utcnow()),
    }


def get_thresholds_with_config(
    channel=None,
    include_inactive: bool = False,
    category_id: int | None = None,
) -> list[dict]:
    """Thresholds with their ordered ladders, for admin screens."""
    query = db.session.query(OverrideThreshold)
    if not include_inactive:
        query = query.filter(OverrideThreshold.is_active.is_(True))

    parsed_channel = Channel.parse(channel)
    if parsed_channel is not None:
        query = query.filter(
            db.or_(OverrideThreshold.channel.is_(None), OverrideThreshold.channel == parsed_channel.value)
        )
    category_id = parse_int(category_id, "category_id")
    if category_id is not None:
        query = query.filter(
            db.or_(OverrideThreshold.category_id.is_(None), OverrideThreshold.category_id == category_id)
        )

    thresholds = query.order_by(
        OverrideThreshold.override_type,
        OverrideThreshold.category_id.is_(None),
        OverrideThreshold.priority.desc(),
        OverrideThreshold.id,
    ).all()
    return [serialize_threshold(t) for t in thresholds]


def get_override_thresholds(now: datetime | None = None) -> dict:
    """Active, in-effect thresholds grouped for UI consumption."""
    now = now or utcnow()
    grouped = {name: [] for name in (*THRESHOLD_GROUPS, "other")}

    thresholds = db.session.query(OverrideThreshold).filter(
        OverrideThreshold.is_active.is_(True)
    ).order_by(OverrideThreshold.override_type, OverrideThreshold.id).all()

    for threshold in thresholds:
        if not is_in_effect(threshold, now):
            continue
        override_type = OverrideType(threshold.override_type)
        formatted = {
            "id": threshold.id,
            "type": override_type.value,
            "label": override_type.label,
            "name": threshold.name,
            "description": threshold.description,
            "value": threshold.threshold_value,
            "required_level": threshold.default_approval_level,
            "require_reason": threshold.require_reason,
            "channel": threshold.channel,
            "category_id": threshold.category_id,
            "approval_levels": [rung.to_dict() for rung in ordered_ladder(threshold)],
        }
        group = next((name for name, types in THRESHOLD_GROUPS.items() if override_type in types), "other")
        grouped[group].append(formatted)

    return grouped


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

def add_exception(threshold_id: int, payload: dict, created_by: int | None = None) -> ThresholdException:
    threshold = get_threshold(threshold_id)
    patch = validate_payload(
        model=ThresholdException,
        payload=require_json_object(payload),
        policy=EXCEPTION_POLICY,
        partial=False,
    )

    exception_type = patch["exception_type"].lower()
    field = EXCEPTION_MATCH_FIELDS.get(exception_type)
    if field is None:
        allowed = ", ".join(EXCEPTION_MATCH_FIELDS)
        raise ValidationError(f"exception_type must be one of: {allowed}")
    if patch.get(field) is None:
        raise ValidationError(f"{field} is required for a {exception_type} exception")
    patch["exception_type"] = exception_type

    exc = ThresholdException(threshold_id=threshold.id, created_by=created_by, **patch)
    db.session.add(exc)
    db.session.commit()
    return exc


def list_exceptions(threshold_id: int, include_inactive: bool = False) -> list[ThresholdException]:
    threshold = get_threshold(threshold_id)
    return [exc for exc in threshold.exceptions if include_inactive or exc.is_active]


def deactivate_exception(exception_id: int) -> ThresholdException:
    exc = db.session.get(ThresholdException, exception_id)
    if exc is None:
        raise NotFoundError(f"Threshold exception {exception_id} not found")
    exc.is_active = False
    db.session.commit()
    return exc


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

DEFAULT_THRESHOLDS = [
    {
        "override_type": "discount_percent",
        "name": "Discount Percentage",
        "description": "Discounts above 15% need a manager, above 25% an area manager",
        "threshold_value": 15,
        "default_approval_level": "manager",
        "require_reason": True,
        "approval_levels": [
            {"approval_level": "shift_lead", "max_value": 15},
            {"approval_level": "manager", "max_value": 25},
            {"approval_level": "area_manager", "is_unlimited": True},
        ],
    },
    {
        "override_type": "discount_amount",
        "name": "Dollar Discount",
        "description": "Discounts above $50 need a manager, above $200 an area manager",
        "threshold_value": 50,
        "default_approval_level": "manager",
        "require_reason": True,
        "approval_levels": [
            {"approval_level": "shift_lead", "max_value": 50},
            {"approval_level": "manager", "max_value": 200},
            {"approval_level": "area_manager", "is_unlimited": True},
        ],
    },
    {
        "override_type": "margin_below",
        "name": "Low Margin Sale",
        "description": "Sale margin falls below 10%",
        "threshold_value": 10,
        "default_approval_level": "manager",
        "require_reason": True,
    },
    {
        "override_type": "price_below_cost",
        "name": "Below Cost Sale",
        "description": "Selling item below cost",
        "threshold_value": 0,
        "default_approval_level": "area_manager",
        "require_reason": True,
    },
    {
        "override_type": "price_override",
        "name": "Manual Price Change",
        "description": "Any manual price override",
        "threshold_value": 0,
        "default_approval_level": "shift_lead",
    },
    {
        "override_type": "void_transaction",
        "name": "Void Transaction",
        "description": "Voiding a completed transaction",
        "default_approval_level": "manager",
        "require_reason": True,
    },
    {
        "override_type": "void_item",
        "name": "Void Item",
        "description": "Voiding item from transaction",
        "default_approval_level": "shift_lead",
    },
    {
        "override_type": "refund_amount",
        "name": "Large Refund",
        "description": "Refund exceeds $100",
        "threshold_value": 100,
        "default_approval_level": "manager",
        "require_reason": True,
    },
    {
        "override_type": "refund_no_receipt",
        "name": "No Receipt Refund",
        "description": "Processing refund without original receipt",
        "default_approval_level": "manager",
        "require_reason": True,
    },
    {
        "override_type": "drawer_adjustment",
        "name": "Drawer Adjustment",
        "description": "Manual cash drawer adjustment",
        "default_approval_level": "manager",
        "require_reason": True,
    },
    {
        "override_type": "negative_inventory",
        "name": "Negative Inventory Sale",
        "description": "Selling item with negative inventory",
        "default_approval_level": "shift_lead",
    },
]


def seed_default_thresholds(created_by: int | None = None) -> int:
    """Idempotent: scopes that already have an active threshold are skipped."""
    created = 0
    for defaults in DEFAULT_THRESHOLDS:
        exists = db.session.query(OverrideThreshold).filter(
            OverrideThreshold.override_type == defaults["override_type"],
            OverrideThreshold.channel.is_(None),
            OverrideThreshold.category_id.is_(None),
            OverrideThreshold.is_active.is_(True),
        ).first()
        if exists:
            continue
        create_threshold(dict(defaults), created_by=created_by)
        created += 1
    return created
