import logging

from django.db import transaction
from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.accounts.models import UserRole
from apps.audit.services import record_audit
from apps.common.permissions import RolePermission, resolve_role
from apps.orders.checklist import set_checklist_item
from apps.orders.dispatcher import queue_email
from apps.orders.models import ActivityType, Order, PaymentType
from apps.orders.payments import create_checkout_session, record_payment, verify_checkout_session
from apps.orders.projections import checklist_progress, dashboard_kpis
from apps.orders.serializers import (
    AssignInstallationSerializer,
    ChecklistToggleSerializer,
    EngineerStatusSerializer,
    OrderActivitySerializer,
    OrderCreateSerializer,
    OrderPaymentSerializer,
    OrderSerializer,
    OrderUpdateSerializer,
    OverrideSerializer,
    PaymentSessionSerializer,
    RecordPaymentSerializer,
    TransitionSerializer,
    VerifyPaymentSerializer,
)
from apps.orders.services import record_activity
from apps.orders.workflow import (
    advance_engineer_status,
    assign_installation,
    ensure_allowed,
    override_status,
    request_transition,
    sign_agreement as sign_order_agreement,
)

logger = logging.getLogger(__name__)


class OrderViewSet(viewsets.ModelViewSet):
    queryset = (
        Order.objects.select_related("client", "engineer", "created_by")
        .prefetch_related("payments", "checklist_items")
        .order_by("-created_at")
    )
    serializer_class = OrderSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    capability_map = {
        "list": ["orders.view"],
        "retrieve": ["orders.view"],
        "create": ["orders.create"],
        "partial_update": ["orders.manage"],
        "destroy": ["orders.delete"],
        "override": ["orders.override"],
        "engineer_status": ["jobs.update"],
        "assign": ["orders.schedule"],
        "sign_agreement": ["orders.sign_agreement"],
        "checklist": ["orders.view"],
        "payments": ["payments.record"],
        "payment_session": ["payments.create"],
        "verify_payment": ["payments.verify"],
        "activity": ["orders.view"],
        "dashboard": ["dashboard.view"],
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        role = resolve_role(self.request.user)
        if role == UserRole.CLIENT:
            queryset = queryset.filter(client__user=self.request.user)
        elif role == UserRole.ENGINEER:
            queryset = queryset.filter(engineer__user=self.request.user)

        status_param = self.request.query_params.get("status")
        engineer = self.request.query_params.get("engineer")
        install_date = self.request.query_params.get("install_date")
        query = self.request.query_params.get("q")
        if status_param:
            queryset = queryset.filter(status=status_param)
        if engineer:
            queryset = queryset.filter(engineer_id=engineer)
        if install_date:
            queryset = queryset.filter(scheduled_install_date=install_date)
        if query:
            queryset = queryset.filter(
                Q(order_number__icontains=query)
                | Q(client__full_name__icontains=query)
                | Q(client__email__icontains=query)
                | Q(postcode__icontains=query)
            )
        return queryset

    def get_serializer_class(self):
        if self.action == "create":
            return OrderCreateSerializer
        if self.action == "partial_update":
            return OrderUpdateSerializer
        return OrderSerializer

    def _order_response(self, order, status_code=200):
        order = self.get_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order, context=self.get_serializer_context()).data, status=status_code)

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        with transaction.atomic():
            order = serializer.save(created_by=request.user)
            record_activity(
                order,
                ActivityType.ORDER_CREATED,
                f"Order {order.order_number} created",
                details={"total_amount": str(order.total_amount), "client_id": str(order.client_id)},
                actor=request.user,
            )
            queue_email(order, "quote_accepted")
        logger.info("Order %s created for client %s", order.order_number, order.client_id)
        return self._order_response(order, status_code=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        order = self.get_object()
        serializer = self.get_serializer(order, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return self._order_response(order)

    def destroy(self, request, *args, **kwargs):
        order = self.get_object()
        with transaction.atomic():
            summary = {
                "order_number": order.order_number,
                "activities": order.activities.count(),
                "payments": order.payments.count(),
                "checklist_items": order.checklist_items.count(),
            }
            record_audit(
                actor=request.user,
                action="order.delete",
                entity_type="order",
                entity_id=order.id,
                payload=summary,
            )
            order.activities.all().delete()
            order.payments.all().delete()
            order.checklist_items.all().delete()
            order.delete()
        logger.warning("Order %s deleted by %s", summary["order_number"], request.user)
        return Response({"deleted": True, **summary}, status=200)

    @action(detail=True, methods=["post"])
    def transition(self, request, pk=None):
        order = self.get_object()
        serializer = TransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        request_transition(order, serializer.validated_data["status"], request.user, notes=serializer.validated_data["notes"])
        return self._order_response(order)

    @action(detail=True, methods=["post"])
    def override(self, request, pk=None):
        order = self.get_object()
        serializer = OverrideSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        override_status(order, serializer.validated_data["status"], request.user, serializer.validated_data["notes"])
        return self._order_response(order)

    @action(detail=True, methods=["post"], url_path="engineer-status")
    def engineer_status(self, request, pk=None):
        order = self.get_object()
        serializer = EngineerStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        notes = serializer.validated_data.get("engineer_notes")
        advance_engineer_status(order, serializer.validated_data["engineer_status"], request.user)
        if notes is not None:
            order.engineer_notes = notes
            order.save(update_fields=["engineer_notes", "updated_at"])
        return self._order_response(order)

    @action(detail=True, methods=["post"])
    def assign(self, request, pk=None):
        order = self.get_object()
        serializer = AssignInstallationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        warnings = assign_installation(
            order,
            serializer.validated_data["engineer"],
            serializer.validated_data["scheduled_install_date"],
            serializer.validated_data["time_window"],
            request.user,
        )
        response = self._order_response(order)
        response.data["scheduling_warnings"] = warnings
        return response

    @action(detail=True, methods=["post"], url_path="sign-agreement")
    def sign_agreement(self, request, pk=None):
        order = self.get_object()
        sign_order_agreement(order, request.user)
        return self._order_response(order)

    @action(detail=True, methods=["get", "post"])
    def checklist(self, request, pk=None):
        order = self.get_object()
        if request.method == "POST":
            ensure_allowed(order, request.user, "checklist.update")
            serializer = ChecklistToggleSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            set_checklist_item(
                order,
                serializer.validated_data["item_key"],
                serializer.validated_data["completed"],
                actor=request.user,
            )
            order = self.get_queryset().get(pk=order.pk)
        return Response(checklist_progress(order), status=200)

    @action(detail=True, methods=["post"])
    def payments(self, request, pk=None):
        order = self.get_object()
        serializer = RecordPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = record_payment(
            order,
            serializer.validated_data["amount"],
            serializer.validated_data["payment_type"],
            request.user,
        )
        return Response(
            {
                "payment": OrderPaymentSerializer(payment).data,
                "order": OrderSerializer(self.get_queryset().get(pk=order.pk), context=self.get_serializer_context()).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="payment-session")
    def payment_session(self, request, pk=None):
        order = self.get_object()
        serializer = PaymentSessionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payment_type = serializer.validated_data["payment_type"]
        amount = serializer.validated_data.get("amount")
        if amount is None:
            if payment_type == PaymentType.DEPOSIT and order.deposit_amount and not order.amount_paid:
                amount = order.deposit_amount
            else:
                amount = order.balance_due
        origin = serializer.validated_data.get("origin") or request.headers.get("Origin")

        payment, checkout_url = create_checkout_session(order, amount, payment_type, request.user, origin)
        return Response(
            {"url": checkout_url, "session_id": payment.stripe_session_id, "payment": OrderPaymentSerializer(payment).data},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="verify-payment")
    def verify_payment(self, request, pk=None):
        order = self.get_object()
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = verify_checkout_session(order, serializer.validated_data["session_id"], request.user)
        return Response(
            {
                "payment": OrderPaymentSerializer(payment).data,
                "order": OrderSerializer(self.get_queryset().get(pk=order.pk), context=self.get_serializer_context()).data,
            },
            status=200,
        )

    @action(detail=True, methods=["get"])
    def activity(self, request, pk=None):
        order = self.get_object()
        queryset = order.activities.select_related("created_by")
        activity_type = request.query_params.get("type")
        if activity_type:
            queryset = queryset.filter(activity_type=activity_type)
        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(OrderActivitySerializer(page, many=True).data)
        return Response(OrderActivitySerializer(queryset, many=True).data)

    @action(detail=False, methods=["get"])
    def dashboard(self, request):
        return Response(dashboard_kpis(self.get_queryset()), status=200)
