from django.contrib.auth import get_user_model
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from audit.models import AuditLogEntry

from . import services
from .authority import current_actor
from .models import Order, OrderProcessing, WeightTransfer
from .serializers import (
    AuditLogEntrySerializer,
    DestinationSerializer,
    HandoverRequestSerializer,
    OrderProcessingSerializer,
    OrderSerializer,
    ReasonSerializer,
    SkipStageSerializer,
    SortingApprovalSerializer,
    SortingResultsSerializer,
    StageMoveSerializer,
    TransferRequestSerializer,
    WeightTransferSerializer,
)

ERROR_STATUS = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "missing_destination": status.HTTP_400_BAD_REQUEST,
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_resolved": status.HTTP_409_CONFLICT,
    "already_transferred": status.HTTP_409_CONFLICT,
    "concurrent_modification": status.HTTP_409_CONFLICT,
    "out_of_order": status.HTTP_409_CONFLICT,
    "handover_required": status.HTTP_409_CONFLICT,
    "insufficient_weight": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "negative_balance": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def result_response(result, serializer_class=None, success_status=status.HTTP_200_OK):
    data = result.as_dict()
    if not result.success:
        return Response(data, status=ERROR_STATUS.get(result.kind, status.HTTP_400_BAD_REQUEST))
    if serializer_class is not None and result.value is not None:
        data["data"] = serializer_class(result.value).data
    return Response(data, status=success_status)


class OrderViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = OrderSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = Order.objects.alive()
        stage = self.request.query_params.get("stage")
        if stage:
            qs = qs.in_stage(stage)
        return qs

    @action(detail=True, methods=["post"])
    def advance(self, request, pk=None):
        order = self.get_object()
        payload = StageMoveSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = services.advance(
            order,
            payload.validated_data["target_stage"],
            current_actor(request),
            notes=payload.validated_data["notes"],
        )
        return result_response(result, OrderSerializer)

    @action(detail=True, methods=["post"])
    def skip(self, request, pk=None):
        order = self.get_object()
        payload = SkipStageSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = services.skip_stage(
            order,
            payload.validated_data["target_stage"],
            current_actor(request),
            payload.validated_data["reason"],
        )
        return result_response(result, OrderSerializer)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        order = self.get_object()
        payload = ReasonSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = services.cancel(order, current_actor(request), payload.validated_data["reason"])
        return result_response(result, OrderSerializer)

    @action(detail=True, methods=["get"])
    def pricing(self, request, pk=None):
        order = self.get_object()
        calculation = services.calculate_order_pricing(order)
        return Response(
            {
                "is_valid": calculation["is_valid"],
                "errors": calculation["errors"],
                "total_amount": calculation["total_amount"],
                "breakdown": calculation["breakdown"],
                "pricing_calculated": order.pricing_calculated,
            }
        )

    @action(detail=True, methods=["post"], url_path="apply-pricing")
    def apply_pricing(self, request, pk=None):
        order = self.get_object()
        result = services.apply_order_pricing(order, current_actor(request))
        return result_response(result, OrderSerializer)


class OrderProcessingViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = OrderProcessingSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = OrderProcessing.objects.select_related("order", "work_stage").filter(
            order__deleted_at__isnull=True
        )
        order = self.request.query_params.get("order")
        stage = self.request.query_params.get("stage")
        if order:
            qs = qs.filter(order_id=order)
        if stage:
            qs = qs.filter(work_stage__code=stage)
        return qs

    @action(detail=True, methods=["get"], url_path="sorting-summary")
    def sorting_summary(self, request, pk=None):
        return Response(services.sorting_summary(self.get_object()))

    @action(detail=True, methods=["post"], url_path="record-sorting")
    def record_sorting(self, request, pk=None):
        processing = self.get_object()
        payload = SortingResultsSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = dict(payload.validated_data)
        version = data.pop("version", None)
        result = services.record_sorting_results(
            processing, current_actor(request), expected_version=version, **data
        )
        return result_response(result, OrderProcessingSerializer)

    @action(detail=True, methods=["post"], url_path="approve-sorting")
    def approve_sorting(self, request, pk=None):
        processing = self.get_object()
        payload = SortingApprovalSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = services.approve_sorting(
            processing,
            current_actor(request),
            notes=payload.validated_data["notes"],
            expected_version=payload.validated_data.get("version"),
        )
        return result_response(result, OrderProcessingSerializer)

    @action(detail=True, methods=["post"], url_path="transfer-destination")
    def transfer_destination(self, request, pk=None):
        processing = self.get_object()
        payload = DestinationSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = services.transfer_to_destination(
            processing,
            current_actor(request),
            destination_warehouse_id=payload.validated_data.get("destination_warehouse"),
            destination_type=payload.validated_data["destination_type"],
            expected_version=payload.validated_data.get("version"),
        )
        return result_response(result, OrderProcessingSerializer)

    @action(detail=True, methods=["post"], url_path="request-handover")
    def request_handover(self, request, pk=None):
        processing = self.get_object()
        payload = HandoverRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        to_actor = None
        if payload.validated_data.get("to_user"):
            to_actor = get_object_or_404(get_user_model(), pk=payload.validated_data["to_user"])
        result = services.request_handover(
            processing,
            current_actor(request),
            to_actor=to_actor,
            notes=payload.validated_data["notes"],
        )
        return result_response(result, OrderProcessingSerializer)

    @action(detail=True, methods=["post"], url_path="confirm-handover")
    def confirm_handover(self, request, pk=None):
        processing = self.get_object()
        result = services.confirm_handover(
            processing, current_actor(request), notes=request.data.get("notes", "")
        )
        return result_response(result, OrderProcessingSerializer)

    @action(detail=True, methods=["post"], url_path="cancel-handover")
    def cancel_handover(self, request, pk=None):
        processing = self.get_object()
        result = services.cancel_handover(processing, current_actor(request))
        return result_response(result, OrderProcessingSerializer)


class WeightTransferViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = WeightTransferSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = WeightTransfer.objects.select_related("from_stage", "to_stage")
        order = self.request.query_params.get("order")
        status_filter = self.request.query_params.get("status")
        if order:
            qs = qs.filter(order_id=order)
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def create(self, request):
        payload = TransferRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        result = services.request_transfer(
            data["order"],
            data["from_stage"],
            data["to_stage"],
            data["weight"],
            current_actor(request),
            notes=data["notes"],
        )
        return result_response(result, WeightTransferSerializer, status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        transfer = self.get_object()
        result = services.approve_transfer(current_actor(request), transfer)
        return result_response(result, WeightTransferSerializer)

    @action(detail=True, methods=["post"])
    def reject(self, request, pk=None):
        transfer = self.get_object()
        payload = ReasonSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = services.reject_transfer(
            current_actor(request), transfer, payload.validated_data["reason"]
        )
        return result_response(result, WeightTransferSerializer)


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = AuditLogEntrySerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = AuditLogEntry.objects.select_related("actor")
        for param in ("event_type", "subject_type", "subject_id"):
            value = self.request.query_params.get(param)
            if value:
                qs = qs.filter(**{param: value})
        return qs
