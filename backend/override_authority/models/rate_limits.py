from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class PinAttemptCounter(db.Model):
    """
    Durable failed-PIN counter for one origin key.

    Used by DatabaseCounterStore so every serving process sees the same
    lockouts. Rows are disposable: a row whose window and lockout have both
    passed is equivalent to no row.
    """
    __tablename__ = "pin_attempt_counters"

    origin = db.Column(db.String(128), primary_key=True)
    failure_count = db.Column(db.Integer, nullable=False, default=0)
    window_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "origin": self.origin,
            "failure_count": self.failure_count,
            "window_expires_at": to_utc_z(self.window_expires_at),
            "locked_until": to_utc_z(self.locked_until),
        }
