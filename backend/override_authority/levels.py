# Overview: Ordered approval tiers, override types, and request states.

from __future__ import annotations

from enum import Enum

from .errors import ValidationError


class ApprovalLevel(str, Enum):
    """
    Approval tiers with a total order: shift_lead < manager < area_manager < admin.

    Comparisons use the rank, never the string value, so
    ``ApprovalLevel.MANAGER >= ApprovalLevel.SHIFT_LEAD`` holds.
    """
    SHIFT_LEAD = "shift_lead"
    MANAGER = "manager"
    AREA_MANAGER = "area_manager"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def _check(self, other):
        if not isinstance(other, ApprovalLevel):
            return NotImplemented
        return other

    def __lt__(self, other):
        other = self._check(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        other = self._check(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        other = self._check(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        other = self._check(other)
        if other is NotImplemented:
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value, *, field: str = "approval_level") -> "ApprovalLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(level.value for level in cls)
            raise ValidationError(f"{field} must be one of: {allowed}")

    @classmethod
    def highest(cls) -> "ApprovalLevel":
        return _LEVEL_ORDER[-1]


_LEVEL_ORDER = [
    ApprovalLevel.SHIFT_LEAD,
    ApprovalLevel.MANAGER,
    ApprovalLevel.AREA_MANAGER,
    ApprovalLevel.ADMIN,
]


class OverrideType(str, Enum):
    DISCOUNT_PERCENT = "discount_percent"
    DISCOUNT_AMOUNT = "discount_amount"
    MARGIN_BELOW = "margin_below"
    PRICE_BELOW_COST = "price_below_cost"
    PRICE_OVERRIDE = "price_override"
    VOID_TRANSACTION = "void_transaction"
    VOID_ITEM = "void_item"
    REFUND_AMOUNT = "refund_amount"
    REFUND_NO_RECEIPT = "refund_no_receipt"
    DRAWER_ADJUSTMENT = "drawer_adjustment"
    TIME_PUNCH_EDIT = "time_punch_edit"
    NEGATIVE_INVENTORY = "negative_inventory"
    CUSTOM = "custom"
    # A bare credential check with no action attached (verify-pin calls)
    PIN_VERIFICATION = "pin_verification"

    @classmethod
    def parse(cls, value, *, field: str = "override_type") -> "OverrideType":
        if isinstance(value, cls):
            return value
        if value is None or str(value).strip() == "":
            raise ValidationError(f"{field} is required")
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown {field}: {value}")

    @property
    def label(self) -> str:
        return _TYPE_LABELS.get(self, self.value)


# value is compared against an upper limit (ladder or threshold_value)
CEILING_TYPES = frozenset({
    OverrideType.DISCOUNT_PERCENT,
    OverrideType.DISCOUNT_AMOUNT,
    OverrideType.REFUND_AMOUNT,
    OverrideType.PRICE_OVERRIDE,
})

# any occurrence needs sign-off while an active threshold exists
EVENT_TYPES = frozenset({
    OverrideType.VOID_TRANSACTION,
    OverrideType.VOID_ITEM,
    OverrideType.REFUND_NO_RECEIPT,
    OverrideType.DRAWER_ADJUSTMENT,
    OverrideType.TIME_PUNCH_EDIT,
    OverrideType.NEGATIVE_INVENTORY,
    OverrideType.CUSTOM,
})

_TYPE_LABELS = {
    OverrideType.DISCOUNT_PERCENT: "Percentage Discount",
    OverrideType.DISCOUNT_AMOUNT: "Amount Discount",
    OverrideType.MARGIN_BELOW: "Low Margin",
    OverrideType.PRICE_BELOW_COST: "Below Cost Sale",
    OverrideType.PRICE_OVERRIDE: "Price Override",
    OverrideType.VOID_TRANSACTION: "Void Transaction",
    OverrideType.VOID_ITEM: "Void Item",
    OverrideType.REFUND_AMOUNT: "Refund",
    OverrideType.REFUND_NO_RECEIPT: "No Receipt Refund",
    OverrideType.DRAWER_ADJUSTMENT: "Drawer Adjustment",
    OverrideType.TIME_PUNCH_EDIT: "Time Punch Edit",
    OverrideType.NEGATIVE_INVENTORY: "Negative Inventory",
    OverrideType.CUSTOM: "Custom Override",
    OverrideType.PIN_VERIFICATION: "PIN Verification",
}


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class Channel(str, Enum):
    POS = "pos"
    QUOTE = "quote"
    ONLINE = "online"

    @classmethod
    def parse(cls, value) -> "Channel | None":
        if value is None or str(value).strip() == "":
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("channel must be one of: pos, quote, online")


class CallerRole(str, Enum):
    """Roles of API callers (distinct from approval tiers)."""
    CASHIER = "cashier"
    MANAGER = "manager"
    ADMIN = "admin"
