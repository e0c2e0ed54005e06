"""Tests for markup rule selection and markup arithmetic."""
import uuid
from datetime import date
from decimal import Decimal

from billing_engine.models.markup_rule import MarkupRule, BillingCategory, MarkupType
from billing_engine.services.markup_engine import (
    MarkupContext,
    calculate_markup,
    find_matching_rule,
    rule_matches,
    weight_bracket,
)

CLIENT_ID = uuid.uuid4()


def rule(name: str, markup_value: str, **kwargs) -> MarkupRule:
    values = {
        "id": uuid.uuid4(),
        "name": name,
        "billing_category": BillingCategory.SHIPMENTS.value,
        "markup_type": MarkupType.PERCENTAGE.value,
        "markup_value": Decimal(markup_value),
        "priority": 0,
        "is_active": True,
        "effective_from": date(2025, 1, 1),
    }
    values.update(kwargs)
    return MarkupRule(**values)


def shipment_context(**kwargs) -> MarkupContext:
    values = {"client_id": CLIENT_ID, "billing_category": BillingCategory.SHIPMENTS, "fee_type": "Standard"}
    values.update(kwargs)
    return MarkupContext(**values)


def test_client_rule_beats_global_rule():
    global_rule = rule("Global shipping", "20")
    client_rule = rule("Client shipping", "12", client_id=CLIENT_ID)

    assert find_matching_rule([global_rule, client_rule], shipment_context()) is client_rule


def test_other_clients_rules_do_not_apply():
    other = rule("Other client", "5", client_id=uuid.uuid4())
    assert find_matching_rule([other], shipment_context()) is None


def test_more_conditions_beat_higher_priority():
    broad = rule("Broad", "20", priority=100)
    narrow = rule("Ground under 1lb", "15", ship_option_id="146", conditions={"weight_max_oz": 16})

    chosen = find_matching_rule([broad, narrow], shipment_context(ship_option_id="146", weight_oz=Decimal("10")))
    assert chosen is narrow


def test_priority_breaks_ties_then_list_order():
    low = rule("Low", "10", priority=1)
    high = rule("High", "30", priority=5)
    assert find_matching_rule([low, high], shipment_context()) is high

    first = rule("First", "10")
    second = rule("Second", "30")
    assert find_matching_rule([first, second], shipment_context()) is first


def test_weight_max_is_exclusive():
    under_a_pound = rule("Under 1lb", "15", conditions={"weight_min_oz": 0, "weight_max_oz": 16})

    assert rule_matches(under_a_pound, shipment_context(weight_oz=Decimal("15.99")))
    assert not rule_matches(under_a_pound, shipment_context(weight_oz=Decimal("16")))
    assert weight_bracket(Decimal("8")) == "8-16oz"
    assert weight_bracket(Decimal("400")) == "20+lbs"


def test_destination_conditions():
    domestic = rule("US only", "10", conditions={"countries": ["US"]})

    assert rule_matches(domestic, shipment_context(country="US"))
    assert not rule_matches(domestic, shipment_context(country="CA"))


def test_percentage_markup():
    result = calculate_markup(Decimal("10.00"), rule("Shipping", "18"))

    assert result.markup_amount == Decimal("1.80")
    assert result.billed_amount == Decimal("11.80")
    assert result.markup_percentage == Decimal("18.0000")


def test_percentage_markup_rounds_half_up_to_cents():
    result = calculate_markup(Decimal("0.25"), rule("Pick fee", "10"))
    assert result.markup_amount == Decimal("0.03")
    assert result.billed_amount == Decimal("0.28")


def test_fixed_markup_follows_sign_of_base():
    fixed = rule("Flat", "1.50", markup_type=MarkupType.FIXED.value)

    assert calculate_markup(Decimal("8.00"), fixed).markup_amount == Decimal("1.50")
    refund = calculate_markup(Decimal("-8.00"), fixed)
    assert refund.markup_amount == Decimal("-1.50")
    assert refund.billed_amount == Decimal("-9.50")


def test_no_rule_means_no_markup():
    result = calculate_markup(Decimal("4.20"), None)
    assert result.markup_amount == Decimal("0")
    assert result.billed_amount == Decimal("4.20")
    assert result.rule_id is None
