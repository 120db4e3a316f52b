"""
Business-rule validation for the orders service.

Covers line item limits, server-side order totals and the order status state
machine, beyond what the request schemas already check.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from . import schemas
from .config import Settings
from .errors import IllegalTransition, ValidationError

CENT = Decimal("0.01")

MAX_ITEMS = 100
MAX_QUANTITY = 10000
MAX_PRICE = Decimal("1000000")

# Valid transitions; delivered and cancelled are terminal
VALID_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["processing", "cancelled"],
    "processing": ["shipped", "cancelled"],
    "shipped": ["delivered"],
    "delivered": [],
    "cancelled": [],
}

CANCELLABLE_STATUSES = ("pending", "processing")


class OrderTotals(NamedTuple):
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal


def quantize(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents, half up."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_order_items(items: List[schemas.OrderItemBase]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_ITEMS:
        return False, f"Order cannot contain more than {MAX_ITEMS} items"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.name}: quantity must be positive"

        if item.quantity > MAX_QUANTITY:
            return False, f"Item {item.name}: quantity exceeds maximum ({MAX_QUANTITY})"

        if item.price < 0:
            return False, f"Item {item.name}: price cannot be negative"

        if item.price > MAX_PRICE:
            return False, f"Item {item.name}: price exceeds maximum (1,000,000)"

    return True, ""


def compute_totals(items: List[schemas.OrderItemBase], shipping_method: str, settings: Settings) -> OrderTotals:
    """
    Compute the monetary breakdown of an order from its items.

    Shipping comes from the configured flat rate for the method and tax is the
    configured rate applied to the subtotal.

    Raises:
        ValidationError: If the shipping method is unknown
    """
    if shipping_method not in settings.shipping_rates:
        raise ValidationError(
            f"Unknown shipping method: {shipping_method}",
            [{"field": "shipping_method", "message": f"must be one of {sorted(settings.shipping_rates)}"}],
        )

    subtotal = quantize(sum((Decimal(str(item.price)) * item.quantity for item in items), Decimal("0")))
    shipping = quantize(settings.shipping_rates[shipping_method])
    tax = quantize(subtotal * settings.tax_rate)
    return OrderTotals(subtotal, shipping, tax, subtotal + shipping + tax)


def validate_order_total(subtotal: Decimal, shipping: Decimal, tax: Decimal, total: Decimal) -> Tuple[bool, str]:
    """
    Validate that the total equals subtotal + shipping + tax.

    Returns:
        Tuple of (is_valid, error_message)
    """
    expected = quantize(subtotal) + quantize(shipping) + quantize(tax)
    if quantize(total) != expected:
        return False, f"Order total mismatch: expected {expected}, got {quantize(total)}"
    return True, ""


def check_claimed_totals(claimed: Optional[schemas.PaymentBreakdown], totals: OrderTotals) -> None:
    """
    Compare a client-submitted breakdown with the server computed one.

    Raises:
        ValidationError: If any claimed amount differs from the computed amount
    """
    if claimed is None:
        return

    mismatches = []
    for field, computed in (("subtotal", totals.subtotal), ("shipping", totals.shipping),
                            ("tax", totals.tax), ("total", totals.total)):
        claimed_value = quantize(getattr(claimed, field))
        if claimed_value != computed:
            mismatches.append({"field": f"payment.{field}", "message": f"expected {computed}, got {claimed_value}"})

    if mismatches:
        raise ValidationError("Order totals do not match the items in the order", mismatches)


def can_transition(old_status: str, new_status: str) -> bool:
    return new_status in VALID_TRANSITIONS.get(old_status, [])


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in VALID_TRANSITIONS:
        return False, f"Unknown status: {old_status}"

    if new_status not in VALID_TRANSITIONS:
        return False, f"Unknown status: {new_status}"

    if not can_transition(old_status, new_status):
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""


def ensure_transition(old_status: str, new_status: str) -> None:
    """
    Raises:
        IllegalTransition: If the state machine does not allow the transition
    """
    is_valid, _ = validate_order_status_transition(old_status, new_status)
    if not is_valid:
        raise IllegalTransition(old_status, new_status)
