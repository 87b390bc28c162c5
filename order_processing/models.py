# models.py

from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Max, Q
from django.db.models.functions import Cast, Substr
from django.utils import timezone
from django.utils.translation import get_language

#
# ——————————————————————————————————————
# Stage catalogue
# ——————————————————————————————————————
#
STAGE_CREATION = "creation"
STAGE_REVIEW = "review"
STAGE_MATERIAL_RESERVATION = "material_reservation"
STAGE_SORTING = "sorting"
STAGE_CUTTING = "cutting"
STAGE_PACKAGING = "packaging"
STAGE_INVOICING = "invoicing"
STAGE_DELIVERY = "delivery"
STAGE_DELIVERED = "delivered"
STAGE_CANCELLED = "cancelled"

# (code, English name, Arabic name) in canonical order
WORK_STAGES = [
    (STAGE_CREATION, "Creation", "إنشاء"),
    (STAGE_REVIEW, "Review", "مراجعة"),
    (STAGE_MATERIAL_RESERVATION, "Material Reservation", "حجز المواد"),
    (STAGE_SORTING, "Sorting", "فرز"),
    (STAGE_CUTTING, "Cutting", "قص"),
    (STAGE_PACKAGING, "Packaging", "تعبئة"),
    (STAGE_INVOICING, "Invoicing", "فوترة"),
    (STAGE_DELIVERY, "Delivery", "تسليم"),
]
WORK_STAGE_CODES = [code for code, _, _ in WORK_STAGES]
STAGE_SEQUENCE = WORK_STAGE_CODES + [STAGE_DELIVERED]
TERMINAL_STAGES = {STAGE_DELIVERED, STAGE_CANCELLED}

WORK_STAGE_CHOICES = [(code, name) for code, name, _ in WORK_STAGES]
STAGE_CHOICES = WORK_STAGE_CHOICES + [
    (STAGE_DELIVERED, "Delivered"),
    (STAGE_CANCELLED, "Cancelled"),
]


def stage_capability(code):
    """Capability an actor needs to act on (or move an order into) a stage."""
    if code == STAGE_DELIVERED:
        code = STAGE_DELIVERY
    return f"stage_{code}"


class Warehouse(models.Model):
    """Physical destination for sorted or finished material."""

    MAIN = "MAIN"
    CUTTING = "CUTTING"
    PACKAGING = "PACKAGING"
    OTHER = "OTHER"
    TYPE_CHOICES = [
        (MAIN, "Main"),
        (CUTTING, "Cutting"),
        (PACKAGING, "Packaging"),
        (OTHER, "Other"),
    ]

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=100)
    warehouse_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=MAIN)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["code"]

    def __str__(self):
        return f"{self.code} ({self.name})"


class WorkStageQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True)

    def get_by_code(self, code):
        return self.get(code=code)


class WorkStage(models.Model):
    """A named step of the production sequence.

    Rows are referenced by processing and transfer history and are never
    deleted (``PROTECT`` on every foreign key pointing here).
    """

    code = models.CharField(max_length=32, unique=True, choices=WORK_STAGE_CHOICES)
    name_en = models.CharField(max_length=100)
    name_ar = models.CharField(max_length=100, blank=True)
    order = models.PositiveSmallIntegerField(unique=True)
    is_active = models.BooleanField(default=True)
    mandatory_handover = models.BooleanField(
        default=False,
        help_text="New processing rows for this stage require a handover before the order leaves it.",
    )

    objects = WorkStageQuerySet.as_manager()

    class Meta:
        ordering = ["order"]

    def __str__(self):
        return self.name_en

    @property
    def name(self):
        lang = get_language() or ""
        if lang.startswith("ar") and self.name_ar:
            return self.name_ar
        return self.name_en

    @property
    def capability(self):
        return stage_capability(self.code)

    @property
    def is_sorting(self):
        return self.code == STAGE_SORTING


#
# ——————————————————————————————————————
# Orders
# ——————————————————————————————————————
#
class OrderQuerySet(models.QuerySet):
    def alive(self):
        return self.filter(deleted_at__isnull=True)

    def in_stage(self, stage):
        return self.filter(current_stage=stage)


class Order(models.Model):
    """Material order travelling through the work stages."""

    TYPE_INBOUND = "inbound"
    TYPE_OUTBOUND = "outbound"
    TYPE_CHOICES = [
        (TYPE_INBOUND, "Inbound"),
        (TYPE_OUTBOUND, "Outbound"),
    ]

    STATUS_DRAFT = "draft"
    STATUS_IN_PROGRESS = "in_progress"
    STATUS_COMPLETED = "completed"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_DRAFT, "Draft"),
        (STATUS_IN_PROGRESS, "In progress"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    PRICING_FIELDS = ("price_per_ton", "required_weight", "cutting_fees", "discount")

    order_number = models.CharField(max_length=32, unique=True, blank=True, editable=False)
    order_type = models.CharField(max_length=10, choices=TYPE_CHOICES, default=TYPE_OUTBOUND)
    current_stage = models.CharField(max_length=32, choices=STAGE_CHOICES, default=STAGE_CREATION)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_DRAFT)

    required_weight = models.DecimalField(max_digits=12, decimal_places=3, default=0)
    price_per_ton = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    cutting_fees = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    estimated_price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    final_price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    pricing_breakdown = models.JSONField(default=dict, blank=True)
    pricing_calculated = models.BooleanField(default=False)
    pricing_calculated_at = models.DateTimeField(null=True, blank=True)
    pricing_calculated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="created_orders",
    )
    submitted_at = models.DateTimeField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True)

    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = OrderQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at", "-id"]
        permissions = [
            ("stage_creation", "Can act on the Creation stage"),
            ("stage_review", "Can act on the Review stage"),
            ("stage_material_reservation", "Can act on the Material Reservation stage"),
            ("stage_sorting", "Can act on the Sorting stage"),
            ("stage_cutting", "Can act on the Cutting stage"),
            ("stage_packaging", "Can act on the Packaging stage"),
            ("stage_invoicing", "Can act on the Invoicing stage"),
            ("stage_delivery", "Can act on the Delivery stage"),
            ("skip_stage", "Can skip work stages"),
            ("cancel_order", "Can cancel orders"),
            ("override_sorting", "Can approve sorting for any assignee"),
            ("soft_delete_order", "Can soft delete and restore orders"),
        ]

    def __str__(self):
        return f"{self.order_number} ({self.get_current_stage_display()})"

    def save(self, *args, **kwargs):
        """Auto-generate the order number (ORD-YYYYMMDD-NNNN, per day)."""
        if not self.order_number:
            self.order_number = self.next_order_number()
        super().save(*args, **kwargs)

    @classmethod
    def next_order_number(cls):
        prefix = f"ORD-{timezone.now():%Y%m%d}-"
        # suffixes compared as numbers, not text
        last = cls.objects.filter(order_number__startswith=prefix).aggregate(
            last=Max(Cast(Substr("order_number", len(prefix) + 1), models.IntegerField()))
        )["last"]
        sequence = (last or 0) + 1
        return f"{prefix}{sequence:04d}"

    @property
    def is_terminal(self):
        return self.current_stage in TERMINAL_STAGES

    @property
    def is_deleted(self):
        return self.deleted_at is not None


#
# ——————————————————————————————————————
# Per-stage processing state
# ——————————————————————————————————————
#
class OrderProcessingQuerySet(models.QuerySet):
    def for_stage(self, order, stage):
        if isinstance(stage, WorkStage):
            return self.filter(order=order, work_stage=stage)
        return self.filter(order=order, work_stage__code=stage)

    def sorting(self):
        return self.filter(work_stage__code=STAGE_SORTING)

    def pending_sorting_approval(self):
        return self.sorting().filter(sorting_approved=False).exclude(
            status__in=[OrderProcessing.STATUS_COMPLETED, OrderProcessing.STATUS_CANCELLED]
        )


class OrderProcessing(models.Model):
    """State of one order inside one work stage."""

    STATUS_PENDING = "pending"
    STATUS_IN_PROGRESS = "in_progress"
    STATUS_COMPLETED = "completed"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_IN_PROGRESS, "In progress"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    HANDOVER_NOT_REQUIRED = "not_required"
    HANDOVER_PENDING = "pending"
    HANDOVER_IN_PROGRESS = "in_progress"
    HANDOVER_COMPLETED = "completed"
    HANDOVER_CHOICES = [
        (HANDOVER_NOT_REQUIRED, "Not required"),
        (HANDOVER_PENDING, "Pending"),
        (HANDOVER_IN_PROGRESS, "In progress"),
        (HANDOVER_COMPLETED, "Completed"),
    ]

    DEST_CUTTING_WAREHOUSE = "cutting_warehouse"
    DEST_DIRECT_DELIVERY = "direct_delivery"
    DEST_OTHER_WAREHOUSE = "other_warehouse"
    DESTINATION_CHOICES = [
        (DEST_CUTTING_WAREHOUSE, "Cutting Warehouse"),
        (DEST_DIRECT_DELIVERY, "Direct Delivery"),
        (DEST_OTHER_WAREHOUSE, "Other Warehouse"),
    ]

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="processings")
    work_stage = models.ForeignKey(WorkStage, on_delete=models.PROTECT, related_name="processings")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="assigned_processings",
    )

    # weight ledger: balance = received - transferred, never negative
    actual_weight_received = models.DecimalField(max_digits=12, decimal_places=3, default=0)
    weight_to_transfer = models.DecimalField(max_digits=12, decimal_places=3, default=0)
    weight_balance = models.DecimalField(max_digits=12, decimal_places=3, default=0)
    transfer_destination = models.CharField(max_length=100, blank=True)
    transfer_approved = models.BooleanField(default=False)
    transfer_approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    transfer_approved_at = models.DateTimeField(null=True, blank=True)

    mandatory_handover = models.BooleanField(default=False)
    handover_status = models.CharField(
        max_length=20, choices=HANDOVER_CHOICES, default=HANDOVER_NOT_REQUIRED
    )
    handover_from = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    handover_to = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    handover_requested_at = models.DateTimeField(null=True, blank=True)
    handover_completed_at = models.DateTimeField(null=True, blank=True)
    handover_notes = models.TextField(blank=True)

    # Sorting stage only
    sorting_approved = models.BooleanField(default=False)
    sorting_approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    sorting_approved_at = models.DateTimeField(null=True, blank=True)
    sorting_notes = models.TextField(blank=True)
    roll1_weight = models.DecimalField(max_digits=12, decimal_places=3, null=True, blank=True)
    roll1_width = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    roll1_location = models.CharField(max_length=100, blank=True)
    roll2_weight = models.DecimalField(max_digits=12, decimal_places=3, null=True, blank=True)
    roll2_width = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    roll2_location = models.CharField(max_length=100, blank=True)
    sorting_waste_weight = models.DecimalField(max_digits=12, decimal_places=3, null=True, blank=True)
    waste_reason = models.CharField(max_length=255, blank=True)
    post_sorting_destination = models.CharField(
        max_length=32, choices=DESTINATION_CHOICES, blank=True
    )
    destination_warehouse = models.ForeignKey(
        Warehouse,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="sorted_processings",
    )
    transfer_completed = models.BooleanField(default=False)
    transfer_completed_at = models.DateTimeField(null=True, blank=True)
    transfer_completed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )

    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = OrderProcessingQuerySet.as_manager()

    class Meta:
        ordering = ["order", "work_stage__order"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "work_stage"], name="uniq_order_work_stage"
            ),
            models.CheckConstraint(
                condition=Q(weight_balance__gte=0), name="processing_balance_non_negative"
            ),
        ]

    def __str__(self):
        return f"{self.order.order_number} @ {self.work_stage.name_en} ({self.status})"

    @property
    def is_sorting_stage(self):
        return self.work_stage.code == STAGE_SORTING

    @property
    def total_sorted_weight(self):
        return (
            (self.roll1_weight or Decimal("0"))
            + (self.roll2_weight or Decimal("0"))
            + (self.sorting_waste_weight or Decimal("0"))
        )

    @property
    def handover_blocks_exit(self):
        return self.mandatory_handover and self.handover_status != self.HANDOVER_COMPLETED


#
# ——————————————————————————————————————
# Inter-stage weight transfers
# ——————————————————————————————————————
#
class WeightTransferQuerySet(models.QuerySet):
    def pending(self):
        return self.filter(status=WeightTransfer.STATUS_PENDING)

    def pending_for(self, order, stage):
        """Pending transfers waiting on ``stage`` (the receiving side)."""
        if isinstance(stage, WorkStage):
            return self.pending().filter(order=order, to_stage=stage)
        return self.pending().filter(order=order, to_stage__code=stage)

    def pending_from(self, order, stage):
        if isinstance(stage, WorkStage):
            return self.pending().filter(order=order, from_stage=stage)
        return self.pending().filter(order=order, from_stage__code=stage)


class WeightTransfer(models.Model):
    """Request to move weight from one stage to a later one.

    ``pending`` resolves once, to ``approved`` or ``rejected``.
    """

    STATUS_PENDING = "pending"
    STATUS_APPROVED = "approved"
    STATUS_REJECTED = "rejected"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_APPROVED, "Approved"),
        (STATUS_REJECTED, "Rejected"),
    ]

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="weight_transfers")
    from_stage = models.ForeignKey(
        WorkStage, on_delete=models.PROTECT, related_name="outgoing_transfers"
    )
    to_stage = models.ForeignKey(
        WorkStage, on_delete=models.PROTECT, related_name="incoming_transfers"
    )
    weight_transferred = models.DecimalField(max_digits=12, decimal_places=3)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="requested_weight_transfers",
    )
    requested_at = models.DateTimeField(auto_now_add=True)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    rejected_at = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(blank=True)
    notes = models.TextField(blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = WeightTransferQuerySet.as_manager()

    class Meta:
        ordering = ["-requested_at", "-id"]
        indexes = [
            models.Index(fields=["order", "from_stage", "status"], name="transfer_outgoing_idx"),
            models.Index(fields=["order", "to_stage", "status"], name="transfer_incoming_idx"),
        ]

    def __str__(self):
        return (
            f"{self.weight_transferred}kg {self.from_stage.name_en} → "
            f"{self.to_stage.name_en} ({self.status})"
        )

    @property
    def is_pending(self):
        return self.status == self.STATUS_PENDING
