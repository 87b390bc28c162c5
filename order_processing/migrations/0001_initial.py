import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

WORK_STAGE_CHOICES = [
    ("creation", "Creation"),
    ("review", "Review"),
    ("material_reservation", "Material Reservation"),
    ("sorting", "Sorting"),
    ("cutting", "Cutting"),
    ("packaging", "Packaging"),
    ("invoicing", "Invoicing"),
    ("delivery", "Delivery"),
]
STAGE_CHOICES = WORK_STAGE_CHOICES + [
    ("delivered", "Delivered"),
    ("cancelled", "Cancelled"),
]


def user_fk(related_name, on_delete=django.db.models.deletion.SET_NULL):
    return models.ForeignKey(
        blank=True,
        null=True,
        on_delete=on_delete,
        related_name=related_name,
        to=settings.AUTH_USER_MODEL,
    )


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Warehouse",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=50, unique=True)),
                ("name", models.CharField(max_length=100)),
                (
                    "warehouse_type",
                    models.CharField(
                        choices=[("MAIN", "Main"), ("CUTTING", "Cutting"), ("PACKAGING", "Packaging"), ("OTHER", "Other")],
                        default="MAIN",
                        max_length=20,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={"ordering": ["code"]},
        ),
        migrations.CreateModel(
            name="WorkStage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(choices=WORK_STAGE_CHOICES, max_length=32, unique=True)),
                ("name_en", models.CharField(max_length=100)),
                ("name_ar", models.CharField(blank=True, max_length=100)),
                ("order", models.PositiveSmallIntegerField(unique=True)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "mandatory_handover",
                    models.BooleanField(
                        default=False,
                        help_text="New processing rows for this stage require a handover before the order leaves it.",
                    ),
                ),
            ],
            options={"ordering": ["order"]},
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_number", models.CharField(blank=True, editable=False, max_length=32, unique=True)),
                (
                    "order_type",
                    models.CharField(
                        choices=[("inbound", "Inbound"), ("outbound", "Outbound")],
                        default="outbound",
                        max_length=10,
                    ),
                ),
                ("current_stage", models.CharField(choices=STAGE_CHOICES, default="creation", max_length=32)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="draft",
                        max_length=20,
                    ),
                ),
                ("required_weight", models.DecimalField(decimal_places=3, default=0, max_digits=12)),
                ("price_per_ton", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("cutting_fees", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("estimated_price", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                ("final_price", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                ("pricing_breakdown", models.JSONField(blank=True, default=dict)),
                ("pricing_calculated", models.BooleanField(default=False)),
                ("pricing_calculated_at", models.DateTimeField(blank=True, null=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("pricing_calculated_by", user_fk("+")),
                ("created_by", user_fk("created_orders")),
                ("deleted_by", user_fk("+")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "permissions": [
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
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderProcessing",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("actual_weight_received", models.DecimalField(decimal_places=3, default=0, max_digits=12)),
                ("weight_to_transfer", models.DecimalField(decimal_places=3, default=0, max_digits=12)),
                ("weight_balance", models.DecimalField(decimal_places=3, default=0, max_digits=12)),
                ("transfer_destination", models.CharField(blank=True, max_length=100)),
                ("transfer_approved", models.BooleanField(default=False)),
                ("transfer_approved_at", models.DateTimeField(blank=True, null=True)),
                ("mandatory_handover", models.BooleanField(default=False)),
                (
                    "handover_status",
                    models.CharField(
                        choices=[
                            ("not_required", "Not required"),
                            ("pending", "Pending"),
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                        ],
                        default="not_required",
                        max_length=20,
                    ),
                ),
                ("handover_requested_at", models.DateTimeField(blank=True, null=True)),
                ("handover_completed_at", models.DateTimeField(blank=True, null=True)),
                ("handover_notes", models.TextField(blank=True)),
                ("sorting_approved", models.BooleanField(default=False)),
                ("sorting_approved_at", models.DateTimeField(blank=True, null=True)),
                ("sorting_notes", models.TextField(blank=True)),
                ("roll1_weight", models.DecimalField(blank=True, decimal_places=3, max_digits=12, null=True)),
                ("roll1_width", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("roll1_location", models.CharField(blank=True, max_length=100)),
                ("roll2_weight", models.DecimalField(blank=True, decimal_places=3, max_digits=12, null=True)),
                ("roll2_width", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("roll2_location", models.CharField(blank=True, max_length=100)),
                ("sorting_waste_weight", models.DecimalField(blank=True, decimal_places=3, max_digits=12, null=True)),
                ("waste_reason", models.CharField(blank=True, max_length=255)),
                (
                    "post_sorting_destination",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("cutting_warehouse", "Cutting Warehouse"),
                            ("direct_delivery", "Direct Delivery"),
                            ("other_warehouse", "Other Warehouse"),
                        ],
                        max_length=32,
                    ),
                ),
                ("transfer_completed", models.BooleanField(default=False)),
                ("transfer_completed_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="processings",
                        to="order_processing.order",
                    ),
                ),
                (
                    "work_stage",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="processings",
                        to="order_processing.workstage",
                    ),
                ),
                ("assigned_to", user_fk("assigned_processings")),
                ("transfer_approved_by", user_fk("+")),
                ("handover_from", user_fk("+")),
                ("handover_to", user_fk("+")),
                ("sorting_approved_by", user_fk("+")),
                (
                    "destination_warehouse",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="sorted_processings",
                        to="order_processing.warehouse",
                    ),
                ),
                ("transfer_completed_by", user_fk("+")),
            ],
            options={
                "ordering": ["order", "work_stage__order"],
                "constraints": [
                    models.UniqueConstraint(fields=("order", "work_stage"), name="uniq_order_work_stage"),
                    models.CheckConstraint(
                        condition=models.Q(weight_balance__gte=0),
                        name="processing_balance_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WeightTransfer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("weight_transferred", models.DecimalField(decimal_places=3, max_digits=12)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("approved", "Approved"), ("rejected", "Rejected")],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("requested_at", models.DateTimeField(auto_now_add=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("rejected_at", models.DateTimeField(blank=True, null=True)),
                ("rejection_reason", models.TextField(blank=True)),
                ("notes", models.TextField(blank=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="weight_transfers",
                        to="order_processing.order",
                    ),
                ),
                (
                    "from_stage",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="outgoing_transfers",
                        to="order_processing.workstage",
                    ),
                ),
                (
                    "to_stage",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="incoming_transfers",
                        to="order_processing.workstage",
                    ),
                ),
                (
                    "requested_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="requested_weight_transfers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                ("approved_by", user_fk("+")),
                ("rejected_by", user_fk("+")),
            ],
            options={
                "ordering": ["-requested_at", "-id"],
                "indexes": [
                    models.Index(fields=["order", "from_stage", "status"], name="transfer_outgoing_idx"),
                    models.Index(fields=["order", "to_stage", "status"], name="transfer_incoming_idx"),
                ],
            },
        ),
    ]
