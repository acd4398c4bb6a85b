from django.utils import timezone
from rest_framework import serializers

from apps.clients.models import Client, ClientBlockedDate


class ClientSerializer(serializers.ModelSerializer):
    order_count = serializers.IntegerField(read_only=True, required=False)

    class Meta:
        model = Client
        fields = ["id", "user", "full_name", "email", "phone", "address", "postcode", "order_count", "created_at", "updated_at"]
        read_only_fields = ["id", "order_count", "created_at", "updated_at"]

    def validate_full_name(self, value):
        if not str(value).strip():
            raise serializers.ValidationError("Full name is required.")
        return value


class ClientBlockedDateSerializer(serializers.ModelSerializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all(), required=False)

    class Meta:
        model = ClientBlockedDate
        fields = ["id", "client", "blocked_date", "reason", "created_at"]
        read_only_fields = ["id", "created_at"]
        validators = []

    def validate_blocked_date(self, value):
        if value < timezone.localdate():
            raise serializers.ValidationError("Only today or future dates can be blocked.")
        return value
