from rest_framework import serializers
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.common.permissions import RolePermission
from apps.engineers.models import Engineer
from apps.orders.models import Order
from apps.scheduling.conflicts import client_blocked_entry, detect_conflicts
from apps.scheduling.services import MapboxClient, default_client, recommend_engineers


class RecommendationQuerySerializer(serializers.Serializer):
    order = serializers.PrimaryKeyRelatedField(queryset=Order.objects.select_related("client"))
    date = serializers.DateField()


class ConflictQuerySerializer(RecommendationQuerySerializer):
    engineer = serializers.PrimaryKeyRelatedField(queryset=Engineer.objects.all(), required=False)


class DistanceRequestSerializer(serializers.Serializer):
    origins = serializers.ListField(child=serializers.CharField(), allow_empty=False, max_length=12)
    destinations = serializers.ListField(child=serializers.CharField(), allow_empty=False, max_length=12)


class EngineerRecommendationView(APIView):
    permission_classes = [RolePermission]
    capability_map = {"get": ["orders.schedule"]}

    def get(self, request):
        serializer = RecommendationQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        order = serializer.validated_data["order"]
        install_date = serializer.validated_data["date"]
        return Response(
            {
                "order": str(order.pk),
                "postcode": order.postcode,
                "date": install_date.isoformat(),
                "client_blocked": client_blocked_entry(order.client, install_date) is not None,
                "recommendations": recommend_engineers(order, install_date, client=default_client()),
            }
        )


class SchedulingConflictView(APIView):
    permission_classes = [RolePermission]
    capability_map = {"get": ["orders.schedule"]}

    def get(self, request):
        serializer = ConflictQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        order = serializer.validated_data["order"]
        install_date = serializer.validated_data["date"]
        engineer = serializer.validated_data.get("engineer", order.engineer)
        return Response(
            {
                "order": str(order.pk),
                "engineer": str(engineer.pk) if engineer else None,
                "date": install_date.isoformat(),
                "conflicts": detect_conflicts(order, engineer, install_date),
            }
        )


class DistanceMatrixView(APIView):
    permission_classes = [RolePermission]
    capability_map = {"post": ["orders.schedule"]}

    def post(self, request):
        serializer = DistanceRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        client = MapboxClient()
        return Response(client.distances(serializer.validated_data["origins"], serializer.validated_data["destinations"]))
