from django.db.models import Count, Q
from rest_framework import viewsets
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.response import Response

from apps.accounts.models import UserRole
from apps.audit.services import record_audit
from apps.clients.models import Client, ClientBlockedDate
from apps.clients.serializers import ClientBlockedDateSerializer, ClientSerializer
from apps.common.permissions import RolePermission, resolve_role


class ClientViewSet(viewsets.ModelViewSet):
    serializer_class = ClientSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    capability_map = {
        "list": ["clients.view"],
        "retrieve": ["clients.view"],
        "create": ["clients.manage"],
        "partial_update": ["clients.manage"],
        "destroy": ["clients.manage"],
    }

    def get_queryset(self):
        queryset = Client.objects.annotate(order_count=Count("orders")).order_by("full_name")
        if resolve_role(self.request.user) == UserRole.CLIENT:
            return queryset.filter(user=self.request.user)

        query = self.request.query_params.get("q")
        if query:
            queryset = queryset.filter(
                Q(full_name__icontains=query) | Q(email__icontains=query) | Q(phone__icontains=query) | Q(postcode__icontains=query)
            )
        return queryset

    def perform_create(self, serializer):
        client = serializer.save()
        record_audit(
            actor=self.request.user,
            action="client.create",
            entity_type="client",
            entity_id=client.id,
            payload={"email": client.email},
        )

    def destroy(self, request, *args, **kwargs):
        client = self.get_object()
        if client.orders.exists():
            return Response(
                {"code": "client_has_orders", "detail": "Delete the client's orders before deleting the client.", "fields": {}},
                status=400,
            )
        return super().destroy(request, *args, **kwargs)

    def perform_destroy(self, instance):
        record_audit(
            actor=self.request.user,
            action="client.delete",
            entity_type="client",
            entity_id=instance.id,
            payload={"email": instance.email, "full_name": instance.full_name},
        )
        instance.delete()


class ClientBlockedDateViewSet(viewsets.ModelViewSet):
    """Dates a client cannot host an installation. Clients manage their own; staff manage any."""

    serializer_class = ClientBlockedDateSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "delete", "head", "options"]
    capability_map = {
        "list": ["clients.block_dates"],
        "retrieve": ["clients.block_dates"],
        "create": ["clients.block_dates"],
        "destroy": ["clients.block_dates"],
    }

    def get_queryset(self):
        queryset = ClientBlockedDate.objects.select_related("client").order_by("blocked_date")
        if resolve_role(self.request.user) == UserRole.CLIENT:
            queryset = queryset.filter(client__user=self.request.user)

        client = self.request.query_params.get("client")
        if client:
            queryset = queryset.filter(client_id=client)
        return queryset

    def perform_create(self, serializer):
        if resolve_role(self.request.user) == UserRole.CLIENT:
            client = getattr(self.request.user, "client_profile", None)
            if client is None:
                raise PermissionDenied("Your account is not linked to a client record.")
        else:
            client = serializer.validated_data.get("client")
            if client is None:
                raise ValidationError({"client": ["This field is required."]})

        blocked_date = serializer.validated_data["blocked_date"]
        if ClientBlockedDate.objects.filter(client=client, blocked_date=blocked_date).exists():
            raise ValidationError({"blocked_date": ["This date is already blocked."]})
        serializer.save(client=client)
