from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class OverrideThreshold(db.Model):
    """
    Configured limit for one override type within one scope.

    Scope is (override_type, channel, category_id); a null channel or
    category means "all". At most one ACTIVE threshold may exist per scope;
    the service layer enforces it because partial unique indexes are not
    portable.

    The ladder of approval tiers lives in threshold_approval_levels. A
    threshold with no ladder falls back to threshold_value and
    default_approval_level.
    """
    __tablename__ = "override_thresholds"
    __table_args__ = (
        db.Index("ix_override_thresholds_scope", "override_type", "channel", "category_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    override_type = db.Column(db.String(32), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Scope
    channel = db.Column(db.String(16), nullable=True)       # pos | quote | online | NULL = all
    category_id = db.Column(db.Integer, nullable=True)

    # Fallback rule when no ladder is configured
    threshold_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)
    default_approval_level = db.Column(db.String(32), nullable=False, default="manager")

    require_reason = db.Column(db.Boolean, nullable=False, default=False)
    reason_min_length = db.Column(db.Integer, nullable=False, default=0)

    # Time rules (all optional)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_to = db.Column(db.DateTime(timezone=True), nullable=True)
    active_start_time = db.Column(db.Time, nullable=True)
    active_end_time = db.Column(db.Time, nullable=True)
    active_days = db.Column(db.JSON, nullable=True)          # [0..6], 0 = Sunday

    priority = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    approval_levels = db.relationship(
        "ThresholdApprovalLevel",
        backref="threshold",
        lazy=True,
        cascade="all, delete-orphan",
    )
    exceptions = db.relationship(
        "ThresholdException",
        backref="threshold",
        lazy=True,
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "override_type": self.override_type,
            "name": self.name,
            "description": self.description,
            "channel": self.channel,
            "category_id": self.category_id,
            "threshold_value": self.threshold_value,
            "default_approval_level": self.default_approval_level,
            "require_reason": self.require_reason,
            "reason_min_length": self.reason_min_length,
            "valid_from": to_utc_z(self.valid_from),
            "valid_to": to_utc_z(self.valid_to),
            "active_start_time": self.active_start_time.isoformat() if self.active_start_time else None,
            "active_end_time": self.active_end_time.isoformat() if self.active_end_time else None,
            "active_days": self.active_days,
            "priority": self.priority,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ThresholdApprovalLevel(db.Model):
    """
    One rung of a threshold's approval ladder.

    INVARIANT (checked on every ladder write): ordered by tier, max_value is
    non-decreasing; at most one rung is unlimited and it is the highest tier
    present.
    """
    __tablename__ = "threshold_approval_levels"
    __table_args__ = (
        db.UniqueConstraint("threshold_id", "approval_level", name="uq_threshold_approval_level"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    threshold_id = db.Column(db.Integer, db.ForeignKey("override_thresholds.id"), nullable=False, index=True)

    approval_level = db.Column(db.String(32), nullable=False)
    max_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)
    is_unlimited = db.Column(db.Boolean, nullable=False, default=False)
    description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "threshold_id": self.threshold_id,
            "approval_level": self.approval_level,
            "max_value": self.max_value,
            "is_unlimited": self.is_unlimited,
            "description": self.description,
        }


class ThresholdException(db.Model):
    """
    Exemption from a threshold for a product, category, customer, customer
    tier or user. An active exempt match lifts the approval requirement.
    """
    __tablename__ = "override_threshold_exceptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    threshold_id = db.Column(db.Integer, db.ForeignKey("override_thresholds.id"), nullable=False, index=True)

    # product | category | customer | customer_tier | user
    exception_type = db.Column(db.String(32), nullable=False)
    product_id = db.Column(db.Integer, nullable=True)
    category_id = db.Column(db.Integer, nullable=True)
    customer_id = db.Column(db.Integer, nullable=True)
    customer_tier = db.Column(db.String(50), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    is_exempt = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "threshold_id": self.threshold_id,
            "exception_type": self.exception_type,
            "product_id": self.product_id,
            "category_id": self.category_id,
            "customer_id": self.customer_id,
            "customer_tier": self.customer_tier,
            "user_id": self.user_id,
            "is_exempt": self.is_exempt,
            "is_active": self.is_active,
            "valid_until": to_utc_z(self.valid_until),
            "reason": self.reason,
        }
