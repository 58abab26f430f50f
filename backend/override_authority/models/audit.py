from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to modify or delete an audit row."""


class OverrideLog(db.Model):
    """
    Audit record of a single override decision or credential check.

    IMMUTABLE: Never update or delete. Append-only; this table is the system
    of record for compliance. Denied attempts carry was_approved=False and a
    denial_reason. approved_by is NULL when no manager was identified (wrong
    PIN, lockout, expired request).

    threshold_snapshot freezes the threshold and its ladder as they were when
    the decision was made.
    """
    __tablename__ = "override_log"
    __table_args__ = (
        db.Index("ix_override_log_audit", "created_at", "override_type", "was_approved"),
        db.Index("ix_override_log_request", "request_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    request_id = db.Column(db.Integer, db.ForeignKey("override_requests.id"), nullable=True)

    override_type = db.Column(db.String(32), nullable=False, index=True)
    threshold_id = db.Column(db.Integer, db.ForeignKey("override_thresholds.id"), nullable=True)

    # Context
    transaction_id = db.Column(db.Integer, nullable=True)
    quotation_id = db.Column(db.Integer, nullable=True)
    shift_id = db.Column(db.Integer, nullable=True)
    register_id = db.Column(db.Integer, nullable=True)

    # Who was involved
    cashier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    approval_level = db.Column(db.String(32), nullable=True)

    # Values
    original_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)
    override_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)
    difference_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)
    difference_percent = db.Column(db.Numeric(8, 4, asdecimal=False), nullable=True)

    # Item context
    product_id = db.Column(db.Integer, nullable=True)
    product_name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.Text, nullable=True)

    # Outcome
    was_approved = db.Column(db.Boolean, nullable=False, index=True)
    denial_reason = db.Column(db.Text, nullable=True)

    verification_method = db.Column(db.String(32), nullable=False, default="pin")  # pin | remote | manual
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    device_id = db.Column(db.String(100), nullable=True)

    threshold_snapshot = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    manager = db.relationship("User", foreign_keys=[approved_by])
    cashier = db.relationship("User", foreign_keys=[cashier_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "override_type": self.override_type,
            "threshold_id": self.threshold_id,
            "transaction_id": self.transaction_id,
            "quotation_id": self.quotation_id,
            "shift_id": self.shift_id,
            "register_id": self.register_id,
            "cashier_id": self.cashier_id,
            "cashier_name": self.cashier.display_name if self.cashier else None,
            "approved_by": self.approved_by,
            "manager_name": self.manager.display_name if self.manager else None,
            "approval_level": self.approval_level,
            "original_value": self.original_value,
            "override_value": self.override_value,
            "difference_value": self.difference_value,
            "difference_percent": self.difference_percent,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "reason": self.reason,
            "was_approved": self.was_approved,
            "denial_reason": self.denial_reason,
            "verification_method": self.verification_method,
            "ip_address": self.ip_address,
            "device_id": self.device_id,
            "threshold_snapshot": self.threshold_snapshot,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(OverrideLog, "before_update")
def _refuse_log_update(mapper, connection, target):
    raise ImmutableRecordError(f"override_log row {target.id} is append-only")


@event.listens_for(OverrideLog, "before_delete")
def _refuse_log_delete(mapper, connection, target):
    raise ImmutableRecordError(f"override_log row {target.id} is append-only")
