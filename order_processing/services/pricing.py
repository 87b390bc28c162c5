import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

from audit.utils.jsonsafe import json_safe, snapshot
from order_processing import authority
from order_processing.errors import Unauthorized, WorkflowValidationError
from order_processing.models import STAGE_CANCELLED, Order, stage_capability
from order_processing.results import ServiceResult, service_operation

from .locking import lock_order

logger = logging.getLogger(__name__)

PRICING_CALCULATED = "pricing_calculated"
MONEY = Decimal("0.01")
KG_PER_TON = Decimal("1000")


def _money(x):
    return Decimal(x).quantize(MONEY, rounding=ROUND_HALF_UP)


def _decimal(value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidOperation(value)
    value = Decimal(str(value))
    if not value.is_finite():
        raise InvalidOperation(value)
    return value


def validate_pricing_inputs(order):
    """Return ``{"is_valid": bool, "errors": [...]}`` for the four pricing inputs."""
    errors = []
    try:
        price = _decimal(order.price_per_ton)
        if price is None:
            errors.append("Price per ton is required.")
        elif price < 0:
            errors.append("Price per ton cannot be negative.")
    except InvalidOperation:
        errors.append("Price per ton must be numeric.")
    try:
        weight = _decimal(order.required_weight)
        if weight is None or weight <= 0:
            errors.append("Required weight must be greater than 0.")
    except InvalidOperation:
        errors.append("Required weight must be numeric.")
    for label, attr in (("Cutting fees", "cutting_fees"), ("Discount", "discount")):
        try:
            value = _decimal(getattr(order, attr))
            if value is not None and value < 0:
                errors.append(f"{label} cannot be negative.")
        except InvalidOperation:
            errors.append(f"{label} must be numeric.")
    return {"is_valid": not errors, "errors": errors}


def calculate_order_pricing(order):
    """Total = price_per_ton * tons + cutting fees - discount, never below 0.

    Pure: the result depends only on the four inputs. When the inputs are
    invalid ``total_amount`` is ``None`` and nothing may be committed.
    """
    validation = validate_pricing_inputs(order)
    if not validation["is_valid"]:
        return {
            "is_valid": False,
            "errors": validation["errors"],
            "total_amount": None,
            "breakdown": [],
        }

    price = _decimal(order.price_per_ton)
    weight = _decimal(order.required_weight)
    cutting_fees = _decimal(order.cutting_fees) or Decimal("0")
    discount = _decimal(order.discount) or Decimal("0")

    tons = weight / KG_PER_TON
    material_cost = _money(price * tons)
    subtotal = material_cost + _money(cutting_fees)
    total = max(subtotal - _money(discount), Decimal("0.00"))

    breakdown = [
        {
            "type": "material_cost",
            "description": f"Material cost ({tons:.3f} tons × {price:.2f} per ton)",
            "amount": material_cost,
        }
    ]
    if cutting_fees > 0:
        breakdown.append(
            {"type": "cutting_fees", "description": "Cutting fees", "amount": _money(cutting_fees)}
        )
    if discount > 0:
        breakdown.append(
            {"type": "discount", "description": "Discount", "amount": -_money(discount)}
        )
    return {
        "is_valid": True,
        "errors": [],
        "material_cost": material_cost,
        "cutting_fees": _money(cutting_fees),
        "subtotal": subtotal,
        "discount_amount": _money(discount),
        "total_amount": total,
        "breakdown": breakdown,
    }


def _can_price(actor, order):
    return authority.has_capability(
        actor, stage_capability(order.current_stage)
    ) or authority.has_capability(actor, "stage_invoicing")


def _check_open(actor, order, action):
    if order.current_stage == STAGE_CANCELLED or order.is_deleted:
        raise WorkflowValidationError(f"Order {order.order_number} is closed.")
    if not _can_price(actor, order):
        raise Unauthorized(
            "You are not allowed to change pricing on this order.",
            capability="stage_invoicing",
            subject=order,
            actor=actor,
            action=action,
        )


@service_operation
def apply_order_pricing(order, actor, audit=None):
    order = lock_order(order)
    _check_open(actor, order, "apply_order_pricing")
    calculation = calculate_order_pricing(order)
    if not calculation["is_valid"]:
        raise WorkflowValidationError(errors=calculation["errors"])

    before = snapshot(order, fields=["estimated_price", "final_price", "pricing_calculated"])
    order.estimated_price = calculation["total_amount"]
    order.final_price = calculation["total_amount"]
    order.pricing_breakdown = json_safe(calculation)
    order.pricing_calculated = True
    order.pricing_calculated_at = timezone.now()
    order.pricing_calculated_by = actor
    order.save(
        update_fields=[
            "estimated_price",
            "final_price",
            "pricing_breakdown",
            "pricing_calculated",
            "pricing_calculated_at",
            "pricing_calculated_by",
            "updated_at",
        ]
    )
    audit.log_custom(
        PRICING_CALCULATED,
        order,
        f"Pricing calculated: {calculation['total_amount']}",
        old_values=before,
        new_values=snapshot(order, fields=["estimated_price", "final_price", "pricing_calculated"]),
        metadata={"breakdown": calculation["breakdown"]},
        actor=actor,
    )
    logger.info("Order %s priced at %s", order.order_number, calculation["total_amount"])
    return ServiceResult.ok(order, message="Pricing calculated.", payload=json_safe(calculation))


@service_operation
def update_pricing_inputs(order, actor, audit=None, **changes):
    unknown = set(changes) - set(Order.PRICING_FIELDS)
    if unknown:
        raise WorkflowValidationError(f"Not a pricing input: {', '.join(sorted(unknown))}")
    order = lock_order(order)
    _check_open(actor, order, "update_pricing_inputs")

    tracked = Order.PRICING_FIELDS + ("pricing_calculated",)
    before = snapshot(order, fields=tracked)
    for name, value in changes.items():
        try:
            value = _decimal(value)
        except InvalidOperation:
            raise WorkflowValidationError(f"{name} must be numeric.")
        if value is None and name != "price_per_ton":
            value = Decimal("0")
        setattr(order, name, value)

    validation = validate_pricing_inputs(order)
    # price may legitimately be unset until pricing is requested
    errors = [e for e in validation["errors"] if e != "Price per ton is required."]
    if errors:
        raise WorkflowValidationError(errors=errors)

    # normalise to column precision before comparing
    for name in Order.PRICING_FIELDS:
        value = getattr(order, name)
        if value is not None:
            places = Order._meta.get_field(name).decimal_places
            setattr(order, name, Decimal(value).quantize(Decimal(1).scaleb(-places)))
    after = snapshot(order, fields=Order.PRICING_FIELDS)
    changed = [name for name in Order.PRICING_FIELDS if before.get(name) != after.get(name)]
    if not changed:
        return ServiceResult.ok(order, message="No pricing inputs changed.", payload={"changed_fields": []})

    update_fields = list(changed)
    if order.pricing_calculated:
        order.pricing_calculated = False
        update_fields.append("pricing_calculated")
    order.save(update_fields=update_fields + ["updated_at"])
    audit.log_updated(order, before, snapshot(order, fields=tracked), actor=actor)
    return ServiceResult.ok(
        order,
        message="Pricing inputs updated; pricing must be recalculated.",
        payload={"changed_fields": changed},
    )
