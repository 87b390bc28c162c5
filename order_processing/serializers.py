from rest_framework import serializers

from audit.models import AuditLogEntry

from .models import (
    STAGE_SEQUENCE,
    Order,
    OrderProcessing,
    WeightTransfer,
    WorkStage,
)


class WorkStageSerializer(serializers.ModelSerializer):
    name = serializers.CharField(read_only=True)

    class Meta:
        model = WorkStage
        fields = ["id", "code", "name", "name_en", "name_ar", "order", "is_active", "mandatory_handover"]


class OrderSerializer(serializers.ModelSerializer):
    current_stage_display = serializers.CharField(source="get_current_stage_display", read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "order_type",
            "current_stage",
            "current_stage_display",
            "status",
            "required_weight",
            "price_per_ton",
            "cutting_fees",
            "discount",
            "estimated_price",
            "final_price",
            "pricing_calculated",
            "pricing_breakdown",
            "submitted_at",
            "approved_at",
            "started_at",
            "completed_at",
            "cancelled_at",
            "cancellation_reason",
            "deleted_at",
            "created_at",
        ]
        read_only_fields = fields


class OrderProcessingSerializer(serializers.ModelSerializer):
    stage = serializers.CharField(source="work_stage.code", read_only=True)
    order_number = serializers.CharField(source="order.order_number", read_only=True)

    class Meta:
        model = OrderProcessing
        fields = [
            "id",
            "order",
            "order_number",
            "stage",
            "status",
            "assigned_to",
            "actual_weight_received",
            "weight_to_transfer",
            "weight_balance",
            "transfer_destination",
            "transfer_approved",
            "mandatory_handover",
            "handover_status",
            "handover_from",
            "handover_to",
            "sorting_approved",
            "roll1_weight",
            "roll1_width",
            "roll1_location",
            "roll2_weight",
            "roll2_width",
            "roll2_location",
            "sorting_waste_weight",
            "waste_reason",
            "post_sorting_destination",
            "destination_warehouse",
            "transfer_completed",
            "version",
        ]
        read_only_fields = fields


class WeightTransferSerializer(serializers.ModelSerializer):
    from_stage = serializers.SlugRelatedField(slug_field="code", read_only=True)
    to_stage = serializers.SlugRelatedField(slug_field="code", read_only=True)

    class Meta:
        model = WeightTransfer
        fields = [
            "id",
            "order",
            "from_stage",
            "to_stage",
            "weight_transferred",
            "status",
            "requested_by",
            "requested_at",
            "approved_by",
            "approved_at",
            "rejected_by",
            "rejected_at",
            "rejection_reason",
            "notes",
        ]
        read_only_fields = fields


class AuditLogEntrySerializer(serializers.ModelSerializer):
    actor = serializers.SlugRelatedField(slug_field="username", read_only=True)

    class Meta:
        model = AuditLogEntry
        fields = [
            "id",
            "event_type",
            "subject_type",
            "subject_id",
            "actor",
            "old_values",
            "new_values",
            "description",
            "metadata",
            "created_at",
        ]
        read_only_fields = fields


#
# Action payloads
#
class StageMoveSerializer(serializers.Serializer):
    target_stage = serializers.ChoiceField(choices=STAGE_SEQUENCE)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class SkipStageSerializer(serializers.Serializer):
    target_stage = serializers.ChoiceField(choices=STAGE_SEQUENCE)
    reason = serializers.CharField()


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField()


class TransferRequestSerializer(serializers.Serializer):
    order = serializers.PrimaryKeyRelatedField(queryset=Order.objects.alive())
    from_stage = serializers.SlugRelatedField(slug_field="code", queryset=WorkStage.objects.all())
    to_stage = serializers.SlugRelatedField(slug_field="code", queryset=WorkStage.objects.all())
    weight = serializers.DecimalField(max_digits=12, decimal_places=3)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class SortingResultsSerializer(serializers.Serializer):
    roll1_weight = serializers.DecimalField(max_digits=12, decimal_places=3, required=False, allow_null=True)
    roll1_width = serializers.DecimalField(max_digits=8, decimal_places=2, required=False, allow_null=True)
    roll1_location = serializers.CharField(required=False, allow_blank=True)
    roll2_weight = serializers.DecimalField(max_digits=12, decimal_places=3, required=False, allow_null=True)
    roll2_width = serializers.DecimalField(max_digits=8, decimal_places=2, required=False, allow_null=True)
    roll2_location = serializers.CharField(required=False, allow_blank=True)
    sorting_waste_weight = serializers.DecimalField(max_digits=12, decimal_places=3, required=False, allow_null=True)
    waste_reason = serializers.CharField(required=False, allow_blank=True)
    sorting_notes = serializers.CharField(required=False, allow_blank=True)
    version = serializers.IntegerField(required=False)


class SortingApprovalSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    version = serializers.IntegerField(required=False)


class DestinationSerializer(serializers.Serializer):
    destination_type = serializers.ChoiceField(choices=OrderProcessing.DESTINATION_CHOICES)
    destination_warehouse = serializers.IntegerField(required=False, allow_null=True)
    version = serializers.IntegerField(required=False)


class HandoverRequestSerializer(serializers.Serializer):
    to_user = serializers.IntegerField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
