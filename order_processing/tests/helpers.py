from decimal import Decimal

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Permission

from order_processing.models import Order, OrderProcessing, WorkStage


def make_actor(username, *capabilities, **extra):
    """Create a user holding the given order_processing capabilities."""
    User = get_user_model()
    user = User.objects.create_user(
        username=username, password="pass", email=f"{username}@example.com", **extra
    )
    if capabilities:
        perms = Permission.objects.filter(
            content_type__app_label="order_processing", codename__in=capabilities
        )
        user.user_permissions.add(*perms)
    # fresh instance so the permission cache is rebuilt
    return User.objects.get(pk=user.pk)


def make_order(created_by=None, **fields):
    defaults = {
        "required_weight": Decimal("1000"),
        "price_per_ton": Decimal("50"),
        "cutting_fees": Decimal("20"),
        "discount": Decimal("5"),
    }
    defaults.update(fields)
    return Order.objects.create(created_by=created_by, **defaults)


def place_at(order, stage_code, received="0", **processing_fields):
    """Move an order straight to ``stage_code`` with an in-progress processing row."""
    order.current_stage = stage_code
    order.status = Order.STATUS_IN_PROGRESS
    order.save(update_fields=["current_stage", "status"])
    received = Decimal(received)
    processing_fields.setdefault("weight_balance", received)
    return OrderProcessing.objects.create(
        order=order,
        work_stage=WorkStage.objects.get(code=stage_code),
        status=OrderProcessing.STATUS_IN_PROGRESS,
        actual_weight_received=received,
        **processing_fields,
    )
