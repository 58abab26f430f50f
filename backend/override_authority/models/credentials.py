from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class ManagerPin(db.Model):
    """
    Hashed manager override PIN bound to an approval tier.

    LIFECYCLE: created or rotated by an admin. Rotation deactivates the
    previous row instead of deleting it. A PIN used after valid_until, or
    after max_daily_overrides uses on the current day, is treated as invalid
    but kept.

    SECURITY: pin_hash is bcrypt and is never serialized.
    """
    __tablename__ = "manager_pins"
    __table_args__ = (
        db.Index("ix_manager_pins_user_active", "user_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    pin_hash = db.Column(db.String(255), nullable=False)
    approval_level = db.Column(db.String(32), nullable=False, default="manager", index=True)

    # NULL = unlimited
    max_daily_overrides = db.Column(db.Integer, nullable=True)
    override_count_today = db.Column(db.Integer, nullable=False, default=0)
    last_override_date = db.Column(db.Date, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)  # NULL = no expiry

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("manager_pins", lazy=True))

    def uses_on(self, day) -> int:
        if self.last_override_date != day:
            return 0
        return self.override_count_today or 0

    def remaining_on(self, day) -> int | None:
        if self.max_daily_overrides is None:
            return None
        return max(0, self.max_daily_overrides - self.uses_on(day))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "approval_level": self.approval_level,
            "max_daily_overrides": self.max_daily_overrides,
            "override_count_today": self.override_count_today,
            "last_override_date": self.last_override_date.isoformat() if self.last_override_date else None,
            "is_active": self.is_active,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
        }
