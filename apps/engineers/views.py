from django.db import transaction
from django.db.models import Count, Q
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.response import Response

from apps.audit.services import record_audit
from apps.common.permissions import RolePermission, has_capability
from apps.engineers.models import Engineer, EngineerWorkingDay
from apps.engineers.serializers import EngineerSerializer, EngineerWorkingDaySerializer, WorkingWeekSerializer
from apps.orders.models import OrderStatus

OPEN_JOB_STATUSES = (OrderStatus.SCHEDULED, OrderStatus.IN_PROGRESS, OrderStatus.REVISIT_REQUIRED)


class EngineerViewSet(viewsets.ModelViewSet):
    serializer_class = EngineerSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "put", "patch", "delete", "head", "options"]
    capability_map = {
        "list": ["engineers.view"],
        "retrieve": ["engineers.view"],
        "create": ["engineers.manage"],
        "update": ["engineers.manage"],
        "partial_update": ["engineers.manage"],
        "destroy": ["engineers.manage"],
    }

    def get_queryset(self):
        queryset = Engineer.objects.annotate(
            open_jobs=Count("orders", filter=Q(orders__status__in=OPEN_JOB_STATUSES)),
        ).order_by("name")
        region = self.request.query_params.get("region")
        available = self.request.query_params.get("available")
        if region:
            queryset = queryset.filter(region__iexact=region)
        if str(available).lower() in {"1", "true", "yes"}:
            queryset = queryset.filter(availability=True)
        return queryset

    def perform_destroy(self, instance):
        # Orders keep their history; the assignment is simply cleared.
        record_audit(
            actor=self.request.user,
            action="engineer.delete",
            entity_type="engineer",
            entity_id=instance.id,
            payload={"name": instance.name, "open_jobs": instance.orders.filter(status__in=OPEN_JOB_STATUSES).count()},
        )
        instance.delete()

    @action(detail=True, methods=["get", "put"], url_path="working-days")
    def working_days(self, request, pk=None):
        engineer = self.get_object()
        own_pattern = engineer.user_id is not None and engineer.user_id == request.user.id
        capability = "engineers.view" if request.method == "GET" else "engineers.manage"
        if not own_pattern and not has_capability(request.user, capability):
            raise PermissionDenied()

        if request.method == "PUT":
            serializer = WorkingWeekSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            with transaction.atomic():
                engineer.working_days.all().delete()
                EngineerWorkingDay.objects.bulk_create(
                    [EngineerWorkingDay(engineer=engineer, **entry) for entry in serializer.validated_data["days"]]
                )

        days = engineer.working_days.order_by("day_of_week")
        return Response({"days": EngineerWorkingDaySerializer(days, many=True).data})
