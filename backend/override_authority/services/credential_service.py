# Overview: Manager PIN storage: format rules, rotation, daily caps.

"""
Credential Store

SECURITY:
- PINs are bcrypt-hashed; plaintext never reaches the database or the logs
- Trivial PINs (all one digit, straight runs like 1234 / 9876) are refused
- Setting a PIN deactivates the manager's previous one (rotation keeps the
  old row for the audit trail)
- A PIN past valid_until or over its daily cap stays in the table but no
  longer verifies
"""

from __future__ import annotations

from datetime import date, datetime

from flask import current_app
from sqlalchemy import case, update

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..levels import ApprovalLevel
from ..models import ManagerPin, User
from ..time_utils import utcnow
from ..validation import parse_int
from .auth_service import check_secret, hash_secret


def _pin_length_bounds() -> tuple[int, int]:
    return (
        int(current_app.config.get("OVERRIDE_PIN_MIN_LENGTH", 4)),
        int(current_app.config.get("OVERRIDE_PIN_MAX_LENGTH", 6)),
    )


def _is_straight_run(pin: str) -> bool:
    steps = {int(b) - int(a) for a, b in zip(pin, pin[1:])}
    return steps == {1} or steps == {-1}


def validate_pin_format(pin) -> str:
    """Returns the PIN as a string or raises ValidationError."""
    if pin is None:
        raise ValidationError("PIN is required")
    pin = str(pin).strip()
    low, high = _pin_length_bounds()
    if not pin.isdigit() or not low <= len(pin) <= high:
        raise ValidationError(f"PIN must be {low}-{high} digits")
    if len(set(pin)) == 1:
        raise ValidationError("PIN cannot be a single repeated digit")
    if _is_straight_run(pin):
        raise ValidationError("PIN cannot be a straight sequence")
    return pin


def set_manager_pin(
    user_id: int,
    pin,
    approval_level=ApprovalLevel.MANAGER,
    *,
    max_daily_overrides=None,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    created_by: int | None = None,
) -> ManagerPin:
    """Create or rotate a manager's PIN."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    if not user.is_active:
        raise ValidationError("Cannot assign a PIN to an inactive user")

    pin = validate_pin_format(pin)
    level = ApprovalLevel.parse(approval_level)
    max_daily_overrides = parse_int(max_daily_overrides, "max_daily_overrides", minimum=1)
    if valid_from and valid_until and valid_from >= valid_until:
        raise ValidationError("valid_from must be before valid_until")

    now = utcnow()
    db.session.query(ManagerPin).filter(
        ManagerPin.user_id == user_id,
        ManagerPin.is_active.is_(True),
    ).update({"is_active": False, "updated_at": now}, synchronize_session="fetch")

    record = ManagerPin(
        user_id=user_id,
        pin_hash=hash_secret(pin),
        approval_level=level.value,
        max_daily_overrides=max_daily_overrides,
        override_count_today=0,
        is_active=True,
        valid_from=valid_from,
        valid_until=valid_until,
        created_by=created_by,
    )
    db.session.add(record)
    db.session.commit()
    return record


def deactivate_manager_pin(user_id: int) -> int:
    """Returns the number of PINs deactivated."""
    count = db.session.query(ManagerPin).filter(
        ManagerPin.user_id == user_id,
        ManagerPin.is_active.is_(True),
    ).update({"is_active": False, "updated_at": utcnow()}, synchronize_session="fetch")
    db.session.commit()
    if count == 0:
        raise NotFoundError(f"No active PIN for user {user_id}")
    return count


def active_pins(user_id: int | None = None, now: datetime | None = None) -> list[ManagerPin]:
    """
    Active PINs whose validity window has started.

    Expired PINs are included: verification must still recognize them to
    reject them as expired.
    """
    now = now or utcnow()
    query = db.session.query(ManagerPin).join(User, User.id == ManagerPin.user_id).filter(
        ManagerPin.is_active.is_(True),
        User.is_active.is_(True),
        db.or_(ManagerPin.valid_from.is_(None), ManagerPin.valid_from <= now),
    )
    if user_id is not None:
        query = query.filter(ManagerPin.user_id == user_id)
    return query.order_by(ManagerPin.id).all()


def has_manager_access(user_id: int, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return any(
        pin.valid_until is None or pin.valid_until > now
        for pin in active_pins(user_id, now)
    )


def list_manager_pins(include_inactive: bool = False) -> list[dict]:
    query = db.session.query(ManagerPin)
    if not include_inactive:
        query = query.filter(ManagerPin.is_active.is_(True))
    rows = []
    for record in query.order_by(ManagerPin.user_id, ManagerPin.id).all():
        data = record.to_dict()
        data["manager_name"] = record.user.display_name if record.user else None
        rows.append(data)
    return rows


def consume_daily_use(pin_id: int, today: date, now: datetime) -> bool:
    """
    Count one use against the PIN's daily cap.

    Single conditional UPDATE: the counter rolls over on a new date and the
    row is only touched while the cap has room, so two concurrent approvals
    cannot both take the last use. Does not commit.
    """
    same_day = ManagerPin.last_override_date == today
    result = db.session.execute(
        update(ManagerPin)
        .where(
            ManagerPin.id == pin_id,
            db.or_(
                ManagerPin.max_daily_overrides.is_(None),
                ManagerPin.last_override_date.is_(None),
                ManagerPin.last_override_date != today,
                ManagerPin.override_count_today < ManagerPin.max_daily_overrides,
            ),
        )
        .values(
            override_count_today=case((same_day, ManagerPin.override_count_today + 1), else_=1),
            last_override_date=today,
            last_used_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def check_pin(pin: str, record: ManagerPin) -> bool:
    return check_secret(pin, record.pin_hash)
