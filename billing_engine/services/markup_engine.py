"""
Markup Engine.

Selects the markup rule for a billed transaction and computes its markup.
One rule applies per transaction (no stacking): among the applicable rules
the one with the most conditions wins, then the higher priority, then the
earlier rule.
"""
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any, Sequence

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.markup_rule import MarkupRule, MarkupType, BillingCategory


CENT = Decimal("0.01")
ZERO = Decimal("0")

# Fee type of a shipment rule when the order has no category (D2C)
STANDARD_SHIPMENT_FEE = "Standard"

# (label, min oz inclusive, max oz exclusive)
WEIGHT_BRACKETS = (
    ("<8oz", Decimal("0"), Decimal("8")),
    ("8-16oz", Decimal("8"), Decimal("16")),
    ("1-5lbs", Decimal("16"), Decimal("80")),
    ("5-10lbs", Decimal("80"), Decimal("160")),
    ("10-15lbs", Decimal("160"), Decimal("240")),
    ("15-20lbs", Decimal("240"), Decimal("320")),
    ("20+lbs", Decimal("320"), None),
)


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def shipment_fee_type(order_category: Optional[str]) -> str:
    """Fee type shipment rules match on: the order category, or Standard."""
    return order_category or STANDARD_SHIPMENT_FEE


def weight_bracket(weight_oz: Decimal) -> str:
    for label, min_oz, max_oz in WEIGHT_BRACKETS:
        if weight_oz >= min_oz and (max_oz is None or weight_oz < max_oz):
            return label
    return WEIGHT_BRACKETS[-1][0]


@dataclass
class MarkupContext:
    """What a rule is matched against."""
    client_id: uuid.UUID
    billing_category: BillingCategory
    fee_type: Optional[str] = None
    order_category: Optional[str] = None
    ship_option_id: Optional[str] = None
    weight_oz: Optional[Decimal] = None
    state: Optional[str] = None
    country: Optional[str] = None


@dataclass
class MarkupResult:
    """Markup computed for one base amount."""
    base_amount: Decimal
    markup_amount: Decimal
    billed_amount: Decimal
    markup_percentage: Decimal
    rule_id: Optional[uuid.UUID] = None
    rule_name: Optional[str] = None


def _category_value(value: Any) -> Optional[str]:
    return value.value if isinstance(value, BillingCategory) else value


def rule_matches(rule: MarkupRule, context: MarkupContext) -> bool:
    """True when every criterion the rule specifies holds for the context."""
    if rule.client_id is not None and rule.client_id != context.client_id:
        return False
    if rule.billing_category and rule.billing_category != _category_value(context.billing_category):
        return False
    if rule.fee_type and rule.fee_type != context.fee_type:
        return False
    if rule.order_category is not None and rule.order_category != (context.order_category or None):
        return False
    if rule.ship_option_id and rule.ship_option_id != context.ship_option_id:
        return False

    conditions = rule.conditions or {}
    if context.weight_oz is not None:
        weight_min = conditions.get("weight_min_oz")
        weight_max = conditions.get("weight_max_oz")
        if weight_min is not None and context.weight_oz < Decimal(str(weight_min)):
            return False
        if weight_max is not None and context.weight_oz >= Decimal(str(weight_max)):
            return False

    states = conditions.get("states") or []
    if states and context.state not in states:
        return False
    countries = conditions.get("countries") or []
    if countries and context.country not in countries:
        return False
    ship_option_ids = conditions.get("ship_option_ids") or []
    if ship_option_ids and context.ship_option_id not in ship_option_ids:
        return False

    return True


def count_conditions(rule: MarkupRule) -> int:
    """Specificity of a rule; client-specific rules outrank global ones."""
    conditions = rule.conditions or {}
    count = 0
    if rule.client_id is not None:
        count += 1
    if rule.fee_type:
        count += 1
    if rule.ship_option_id or conditions.get("ship_option_ids"):
        count += 1
    if conditions.get("weight_min_oz") is not None or conditions.get("weight_max_oz") is not None:
        count += 1
    if conditions.get("countries") or conditions.get("states"):
        count += 1
    return count


def find_matching_rule(rules: Sequence[MarkupRule], context: MarkupContext) -> Optional[MarkupRule]:
    """Most specific applicable rule; ties go to priority, then list order."""
    best: Optional[MarkupRule] = None
    best_key = None
    for rule in rules:
        if not rule_matches(rule, context):
            continue
        key = (count_conditions(rule), rule.priority or 0)
        if best_key is None or key > best_key:
            best, best_key = rule, key
    return best


def calculate_markup(base_amount: Decimal, rule: Optional[MarkupRule]) -> MarkupResult:
    """
    Apply one rule to a base amount.

    Percentage markup is base * value / 100. A fixed markup takes the sign
    of the base so refunds reverse the charge's markup.
    """
    base_amount = quantize_money(base_amount)
    if rule is None:
        return MarkupResult(base_amount, ZERO, base_amount, ZERO)

    value = Decimal(str(rule.markup_value))
    if rule.markup_type == MarkupType.FIXED.value:
        markup = value if base_amount >= 0 else -value
    else:
        markup = base_amount * value / Decimal("100")
    markup = quantize_money(markup)

    return MarkupResult(
        base_amount=base_amount,
        markup_amount=markup,
        billed_amount=quantize_money(base_amount + markup),
        markup_percentage=effective_percentage(base_amount, markup),
        rule_id=rule.id,
        rule_name=rule.name,
    )


def apply_percentage(amount: Decimal, percentage: Decimal) -> Decimal:
    """Markup on amount at an already-resolved percentage."""
    return quantize_money(amount * percentage / Decimal("100"))


def effective_percentage(base_amount: Decimal, markup_amount: Decimal) -> Decimal:
    if not base_amount:
        return ZERO
    return (markup_amount / base_amount * Decimal("100")).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


async def load_rules(
    db: AsyncSession,
    client_id: uuid.UUID,
    as_of: Optional[date] = None
) -> List[MarkupRule]:
    """Active client and global rules effective on as_of, in a stable order."""
    as_of = as_of or date.today()
    result = await db.execute(
        select(MarkupRule)
        .where(
            and_(
                MarkupRule.is_active.is_(True),
                MarkupRule.effective_from <= as_of,
                or_(MarkupRule.effective_to.is_(None), MarkupRule.effective_to >= as_of),
                or_(MarkupRule.client_id.is_(None), MarkupRule.client_id == client_id),
            )
        )
        .order_by(MarkupRule.priority.desc(), MarkupRule.created_at, MarkupRule.id)
    )
    return list(result.scalars().all())


def snapshot_rule(rule: MarkupRule) -> Dict[str, Any]:
    """JSON-safe view of a rule for the change history."""
    return {
        "client_id": str(rule.client_id) if rule.client_id else None,
        "name": rule.name,
        "billing_category": rule.billing_category,
        "fee_type": rule.fee_type,
        "order_category": rule.order_category,
        "ship_option_id": rule.ship_option_id,
        "conditions": rule.conditions,
        "markup_type": rule.markup_type,
        "markup_value": str(rule.markup_value),
        "priority": rule.priority,
        "is_active": rule.is_active,
        "effective_from": rule.effective_from.isoformat() if rule.effective_from else None,
        "effective_to": rule.effective_to.isoformat() if rule.effective_to else None,
    }
