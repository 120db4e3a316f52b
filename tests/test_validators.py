from decimal import Decimal

import pytest

from fabrix_orders import schemas, validators
from fabrix_orders.config import Settings
from fabrix_orders.errors import IllegalTransition, ValidationError


def item(price="10.00", quantity=1, name="Denim"):
    return schemas.FabricItem(name=name, price=Decimal(price), quantity=quantity)


def test_validate_order_items():
    assert validators.validate_order_items([item()]) == (True, "")

    ok, message = validators.validate_order_items([])
    assert not ok and "at least one item" in message

    ok, message = validators.validate_order_items([item(quantity=10001)])
    assert not ok and "quantity exceeds maximum" in message

    ok, message = validators.validate_order_items([item(price="1000000.01")])
    assert not ok and "price exceeds maximum" in message

    ok, _ = validators.validate_order_items([item() for _ in range(101)])
    assert not ok


def test_compute_totals_uses_configured_rates():
    settings = Settings(shipping_rates={"standard": Decimal("5.00")}, tax_rate=Decimal("0.088"))
    totals = validators.compute_totals([item("20.00", 2), item("10.00", 1)], "standard", settings)
    assert totals == validators.OrderTotals(Decimal("50.00"), Decimal("5.00"), Decimal("4.40"), Decimal("59.40"))


def test_compute_totals_rounds_tax_half_up():
    settings = Settings(shipping_rates={"standard": Decimal("0")}, tax_rate=Decimal("0.07"))
    totals = validators.compute_totals([item("0.50", 1)], "standard", settings)
    # 0.035 rounds up to 0.04
    assert totals.tax == Decimal("0.04")
    assert totals.total == Decimal("0.54")


def test_compute_totals_rejects_unknown_shipping_method():
    with pytest.raises(ValidationError) as exc_info:
        validators.compute_totals([item()], "teleport", Settings())
    assert exc_info.value.errors[0]["field"] == "shipping_method"


def test_validate_order_total():
    assert validators.validate_order_total(Decimal("50"), Decimal("5"), Decimal("4.40"), Decimal("59.40"))[0]
    ok, message = validators.validate_order_total(Decimal("50"), Decimal("5"), Decimal("4.40"), Decimal("1.00"))
    assert not ok and "mismatch" in message


def test_check_claimed_totals_reports_each_mismatch():
    totals = validators.OrderTotals(Decimal("50.00"), Decimal("5.00"), Decimal("4.40"), Decimal("59.40"))
    validators.check_claimed_totals(None, totals)
    validators.check_claimed_totals(
        schemas.PaymentBreakdown(subtotal="50", shipping="5", tax="4.4", total="59.40"), totals
    )

    claimed = schemas.PaymentBreakdown(subtotal="50", shipping="5", tax="4.40", total="1.00")
    with pytest.raises(ValidationError) as exc_info:
        validators.check_claimed_totals(claimed, totals)
    assert [e["field"] for e in exc_info.value.errors] == ["payment.total"]


@pytest.mark.parametrize("old,new", [
    ("pending", "processing"),
    ("pending", "cancelled"),
    ("processing", "shipped"),
    ("processing", "cancelled"),
    ("shipped", "delivered"),
])
def test_allowed_transitions(old, new):
    assert validators.can_transition(old, new)
    validators.ensure_transition(old, new)


@pytest.mark.parametrize("old,new", [
    ("pending", "shipped"),
    ("pending", "delivered"),
    ("shipped", "cancelled"),
    ("shipped", "processing"),
    ("shipped", "pending"),
    ("delivered", "processing"),
    ("delivered", "cancelled"),
    ("delivered", "shipped"),
    ("cancelled", "pending"),
    ("cancelled", "processing"),
])
def test_forbidden_transitions(old, new):
    assert not validators.can_transition(old, new)
    with pytest.raises(IllegalTransition) as exc_info:
        validators.ensure_transition(old, new)
    assert exc_info.value.current == old
    assert exc_info.value.requested == new


def test_unknown_status_is_rejected():
    ok, message = validators.validate_order_status_transition("pending", "lost")
    assert not ok and "Unknown status" in message
