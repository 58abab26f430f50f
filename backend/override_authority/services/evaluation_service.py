# Overview: Decides whether an action needs approval and which tier may grant it.

"""
Override Evaluation

Read-only: nothing here writes to the database. Every answer is derived from
the threshold registry as it stands at call time.

LADDER RESOLUTION (amount / percent types):
- value <= lowest rung's max_value           -> no approval needed
- otherwise the lowest higher rung whose max_value >= value, or the
  unlimited rung
- above every finite rung with no unlimited rung -> approval needed but no
  tier can grant it (approvable=False)
- no ladder: value > threshold_value needs default_approval_level

OTHER TYPES:
- margin_below: needs approval when the margin is below threshold_value
- price_below_cost: needs approval when value (price - cost) is negative
- event types (voids, no-receipt refunds, drawer adjustments, ...) always
  need approval while an active threshold exists
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..errors import ValidationError
from ..levels import EVENT_TYPES, ApprovalLevel, Channel, OverrideType
from ..models import OverrideThreshold
from ..time_utils import utcnow
from ..validation import parse_int, parse_number
from . import threshold_service


CONTEXT_KEYS = ("product_id", "category_id", "customer_id", "customer_tier", "user_id")


@dataclass
class ApprovalDecision:
    override_type: OverrideType
    requires_approval: bool
    required_level: ApprovalLevel | None = None
    threshold: OverrideThreshold | None = None
    approvable: bool = True
    exception_applied: bool = False
    value: float | None = None
    message: str | None = None

    @property
    def require_reason(self) -> bool:
        return bool(self.threshold is not None and self.threshold.require_reason and self.requires_approval)

    @property
    def reason_min_length(self) -> int:
        return (self.threshold.reason_min_length or 0) if self.require_reason else 0

    def to_dict(self) -> dict:
        return {
            "override_type": self.override_type.value,
            "requires_approval": self.requires_approval,
            "required_level": self.required_level.value if self.required_level else None,
            "approvable": self.approvable,
            "exception_applied": self.exception_applied,
            "require_reason": self.require_reason,
            "reason_min_length": self.reason_min_length,
            "threshold": threshold_service.serialize_threshold(self.threshold) if self.threshold else None,
            "value": self.value,
            "message": self.message,
        }


@dataclass
class DiscountDecision(ApprovalDecision):
    discount_percent: float = 0.0
    discount_amount: float = 0.0
    margin_percent: float | None = None
    below_cost: bool = False
    triggered: list[ApprovalDecision] = field(default_factory=list)

    # A reason is owed when any triggered rule asks for one, not only the
    # rule that set the level.
    @property
    def require_reason(self) -> bool:
        return any(d.require_reason for d in self.triggered)

    @property
    def reason_min_length(self) -> int:
        return max((d.reason_min_length for d in self.triggered), default=0)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "discount_percent": self.discount_percent,
            "discount_amount": self.discount_amount,
            "margin_percent": self.margin_percent,
            "below_cost": self.below_cost,
            "triggered_rules": [
                {
                    "override_type": d.override_type.value,
                    "required_level": d.required_level.value if d.required_level else None,
                    "approvable": d.approvable,
                    "threshold_id": d.threshold.id if d.threshold else None,
                    "value": d.value,
                    "require_reason": d.require_reason,
                }
                for d in self.triggered
            ],
        })
        return data


def normalize_context(context: dict | None) -> dict:
    context = dict(context or {})
    normalized = {"channel": Channel.parse(context.get("channel"))}
    for key in CONTEXT_KEYS:
        value = context.get(key)
        if key == "customer_tier":
            normalized[key] = str(value).strip() if value not in (None, "") else None
        else:
            normalized[key] = parse_int(value, key)
    return normalized


def resolve_ladder(threshold: OverrideThreshold, value: float) -> tuple[bool, ApprovalLevel | None]:
    """
    Returns (requires_approval, required_level) for a ceiling-type value.

    required_level is None with requires_approval=True when the value is
    above every tier.
    """
    ladder = threshold_service.ordered_ladder(threshold)
    default_level = ApprovalLevel.parse(threshold.default_approval_level)

    if not ladder:
        limit = threshold.threshold_value or 0
        if value > limit:
            return True, default_level
        return False, None

    lowest = ladder[0]
    if lowest.is_unlimited:
        # Single unlimited rung: threshold_value is the only ceiling
        limit = threshold.threshold_value or 0
        if value > limit:
            return True, ApprovalLevel.parse(lowest.approval_level)
        return False, None

    if value <= lowest.max_value:
        return False, None

    for rung in ladder[1:]:
        if rung.is_unlimited or value <= rung.max_value:
            return True, ApprovalLevel.parse(rung.approval_level)
    return True, None


def highest_defined_level(threshold: OverrideThreshold) -> ApprovalLevel:
    levels = [ApprovalLevel.parse(threshold.default_approval_level)]
    levels.extend(ApprovalLevel.parse(rung.approval_level) for rung in threshold.approval_levels)
    return max(levels)


def evaluate_threshold(override_type: OverrideType, threshold: OverrideThreshold, value: float | None) -> ApprovalDecision:
    """Apply one threshold to a value, ignoring exceptions."""
    decision = ApprovalDecision(override_type=override_type, requires_approval=False, threshold=threshold, value=value)

    if override_type in EVENT_TYPES:
        decision.requires_approval = True
        ladder = threshold_service.ordered_ladder(threshold)
        decision.required_level = (
            ApprovalLevel.parse(ladder[0].approval_level) if ladder
            else ApprovalLevel.parse(threshold.default_approval_level)
        )
    elif override_type is OverrideType.MARGIN_BELOW:
        limit = threshold.threshold_value or 0
        if value < limit:
            decision.requires_approval = True
            decision.required_level = ApprovalLevel.parse(threshold.default_approval_level)
    elif override_type is OverrideType.PRICE_BELOW_COST:
        if value < 0:
            decision.requires_approval = True
            decision.required_level = highest_defined_level(threshold)
    else:
        decision.requires_approval, decision.required_level = resolve_ladder(threshold, value)

    if decision.requires_approval and decision.required_level is None:
        decision.approvable = False
        decision.message = f"No approval level can authorize {override_type.label.lower()} of {value:g}"
    elif decision.requires_approval:
        decision.message = f"{override_type.label} requires {decision.required_level.value} approval"
    return decision


def check_requires_approval(override_type, value=None, context: dict | None = None, *, now: datetime | None = None) -> ApprovalDecision:
    """
    Does this action need approval, and from which tier?

    value is required for amount, percent and margin types and optional for
    event types. Raises ValidationError for an unknown type or a
    non-numeric value.
    """
    override_type = OverrideType.parse(override_type)
    if override_type in EVENT_TYPES or override_type is OverrideType.PIN_VERIFICATION:
        value = parse_number(value, "value", required=False)
    else:
        value = parse_number(value, "value")
    ctx = normalize_context(context)
    now = now or utcnow()

    if override_type is OverrideType.PIN_VERIFICATION:
        return ApprovalDecision(override_type=override_type, requires_approval=False, value=value)

    threshold = threshold_service.find_applicable_threshold(
        override_type,
        channel=ctx["channel"],
        category_id=ctx["category_id"],
        now=now,
    )
    if threshold is None:
        return ApprovalDecision(override_type=override_type, requires_approval=False, value=value)

    decision = evaluate_threshold(override_type, threshold, value)
    if decision.requires_approval and threshold_service.find_exception(threshold, ctx, now) is not None:
        return ApprovalDecision(
            override_type=override_type,
            requires_approval=False,
            threshold=threshold,
            exception_applied=True,
            value=value,
            message="Exempt from approval by threshold exception",
        )
    return decision


def _most_restrictive(decisions: list[ApprovalDecision]) -> ApprovalDecision | None:
    fired = [d for d in decisions if d.requires_approval]
    if not fired:
        return None
    blocked = [d for d in fired if not d.approvable]
    if blocked:
        return blocked[0]
    return max(fired, key=lambda d: d.required_level.rank)


def check_discount_approval(
    original_price,
    discounted_price,
    quantity=1,
    cost=None,
    context: dict | None = None,
    *,
    now: datetime | None = None,
) -> DiscountDecision:
    """
    Evaluate a price reduction against percent, amount and margin rules.

    The most restrictive rule wins. A price below cost always needs the
    highest tier defined for below-cost sales (admin when nothing is
    configured), whatever the other rules say.
    """
    original = parse_number(original_price, "original_price", minimum=0)
    discounted = parse_number(discounted_price, "discounted_price", minimum=0)
    qty = parse_number(quantity, "quantity", minimum=0)
    if qty == 0:
        raise ValidationError("quantity must be > 0")
    cost = parse_number(cost, "cost", required=False, minimum=0)
    now = now or utcnow()

    discount_percent = ((original - discounted) / original) * 100 if original > 0 else 0.0
    discount_amount = (original - discounted) * qty

    decisions = [
        check_requires_approval(OverrideType.DISCOUNT_PERCENT, discount_percent, context, now=now),
        check_requires_approval(OverrideType.DISCOUNT_AMOUNT, discount_amount, context, now=now),
    ]

    margin_percent = None
    below_cost = False
    if cost is not None and cost > 0:
        below_cost = discounted < cost
        if discounted > 0:
            margin_percent = ((discounted - cost) / discounted) * 100
            decisions.append(check_requires_approval(OverrideType.MARGIN_BELOW, margin_percent, context, now=now))

    if below_cost:
        decisions.append(_below_cost_decision(discounted - cost, decisions, context, now))

    winner = _most_restrictive(decisions)
    result = DiscountDecision(
        override_type=winner.override_type if winner else OverrideType.DISCOUNT_PERCENT,
        requires_approval=winner is not None,
        required_level=winner.required_level if winner else None,
        threshold=winner.threshold if winner else None,
        approvable=winner.approvable if winner else True,
        exception_applied=any(d.exception_applied for d in decisions) and winner is None,
        value=winner.value if winner else discount_percent,
        message=winner.message if winner else None,
        discount_percent=round(discount_percent, 2),
        discount_amount=round(discount_amount, 2),
        margin_percent=round(margin_percent, 2) if margin_percent is not None else None,
        below_cost=below_cost,
        triggered=[d for d in decisions if d.requires_approval],
    )
    return result


def _below_cost_decision(difference: float, others: list[ApprovalDecision], context, now) -> ApprovalDecision:
    decision = check_requires_approval(OverrideType.PRICE_BELOW_COST, difference, context, now=now)
    if decision.exception_applied:
        return decision
    if decision.threshold is not None:
        return decision

    # No below-cost threshold configured: the highest tier any discount
    # threshold in play defines, else admin.
    levels = [highest_defined_level(d.threshold) for d in others if d.threshold is not None]
    level = max(levels) if levels else ApprovalLevel.highest()
    return ApprovalDecision(
        override_type=OverrideType.PRICE_BELOW_COST,
        requires_approval=True,
        required_level=level,
        value=difference,
        message=f"{OverrideType.PRICE_BELOW_COST.label} requires {level.value} approval",
    )


def get_required_approval_level(threshold_id: int, value) -> dict:
    """Ladder projection for one threshold, ignoring scope and exceptions."""
    threshold = threshold_service.get_threshold(threshold_id)
    override_type = OverrideType(threshold.override_type)
    value = parse_number(value, "value", required=override_type not in EVENT_TYPES)
    decision = evaluate_threshold(override_type, threshold, value)
    return {
        "threshold_id": threshold.id,
        "value": value,
        "requires_approval": decision.requires_approval,
        "required_level": decision.required_level.value if decision.required_level else None,
        "approvable": decision.approvable,
    }


def can_user_approve_value(user_level, threshold_id: int, value) -> bool:
    """Whether a manager at user_level may authorize value under this threshold."""
    level = ApprovalLevel.parse(user_level)
    projection = get_required_approval_level(threshold_id, value)
    if not projection["requires_approval"]:
        return True
    if projection["required_level"] is None:
        return False
    return level >= ApprovalLevel(projection["required_level"])
