from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class OverrideRequest(db.Model):
    """
    Asynchronous approval ticket resolved by a manager on another device.

    STATES: pending -> approved | denied | expired | cancelled. Terminal
    states are final. The pending -> terminal transition is a compare-and-swap
    on status (see request_service), so two resolutions cannot both win.

    A pending row past expires_at is reported as expired on read even before
    the sweep rewrites it.
    """
    __tablename__ = "override_requests"
    __table_args__ = (
        db.Index("ix_override_requests_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Short code read aloud to the approving manager
    request_code = db.Column(db.String(20), nullable=False, unique=True, index=True)

    override_type = db.Column(db.String(32), nullable=False)
    threshold_id = db.Column(db.Integer, db.ForeignKey("override_thresholds.id"), nullable=True)
    required_level = db.Column(db.String(32), nullable=False, default="manager")

    # Context
    transaction_id = db.Column(db.Integer, nullable=True, index=True)
    quotation_id = db.Column(db.Integer, nullable=True)
    shift_id = db.Column(db.Integer, nullable=True, index=True)
    register_id = db.Column(db.Integer, nullable=True, index=True)

    requested_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    original_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)
    requested_value = db.Column(db.Numeric(12, 4, asdecimal=False), nullable=True)

    product_id = db.Column(db.Integer, nullable=True)
    product_name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.Text, nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    threshold = db.relationship("OverrideThreshold")
    requester = db.relationship("User", foreign_keys=[requested_by])
    resolver = db.relationship("User", foreign_keys=[resolved_by])

    def effective_status(self, now) -> str:
        if self.status == "pending" and self.expires_at is not None and self.expires_at <= now:
            return "expired"
        return self.status

    def to_dict(self, now=None) -> dict:
        status = self.effective_status(now) if now is not None else self.status
        return {
            "id": self.id,
            "request_code": self.request_code,
            "override_type": self.override_type,
            "threshold_id": self.threshold_id,
            "required_level": self.required_level,
            "transaction_id": self.transaction_id,
            "quotation_id": self.quotation_id,
            "shift_id": self.shift_id,
            "register_id": self.register_id,
            "requested_by": self.requested_by,
            "requested_by_name": self.requester.display_name if self.requester else None,
            "requested_at": to_utc_z(self.requested_at),
            "original_value": self.original_value,
            "requested_value": self.requested_value,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "reason": self.reason,
            "payload": self.payload,
            "status": status,
            "expires_at": to_utc_z(self.expires_at),
            "resolved_by": self.resolved_by,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolution_reason": self.resolution_reason,
        }
