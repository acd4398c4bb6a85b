from decimal import Decimal

from rest_framework import serializers

from apps.clients.models import Client
from apps.engineers.models import Engineer
from apps.orders.models import Order, OrderActivity, OrderPayment, PaymentType
from apps.orders.projections import checklist_progress, progress_steps, status_badge
from apps.orders.workflow import available_transitions


class OrderPaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderPayment
        fields = [
            "id",
            "payment_type",
            "amount",
            "status",
            "stripe_session_id",
            "stripe_payment_intent_id",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class OrderActivitySerializer(serializers.ModelSerializer):
    created_by_username = serializers.CharField(source="created_by.username", read_only=True, default=None)

    class Meta:
        model = OrderActivity
        fields = ["id", "activity_type", "description", "details", "created_by", "created_by_username", "created_at"]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    client_name = serializers.CharField(source="client.full_name", read_only=True)
    engineer_name = serializers.CharField(source="engineer.name", read_only=True, default=None)
    balance_due = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    is_fully_paid = serializers.BooleanField(read_only=True)
    badge = serializers.SerializerMethodField()
    progress = serializers.SerializerMethodField()
    checklist = serializers.SerializerMethodField()
    available_transitions = serializers.SerializerMethodField()
    payments = OrderPaymentSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "client",
            "client_name",
            "engineer",
            "engineer_name",
            "status",
            "engineer_status",
            "total_amount",
            "deposit_amount",
            "amount_paid",
            "balance_due",
            "is_fully_paid",
            "paid_at",
            "job_address",
            "postcode",
            "scheduled_install_date",
            "time_window",
            "agreement_signed_at",
            "installation_notes",
            "engineer_notes",
            "engineer_signed_off_at",
            "manual_status_override",
            "manual_status_notes",
            "badge",
            "progress",
            "checklist",
            "available_transitions",
            "payments",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_badge(self, obj):
        return status_badge(obj)

    def get_progress(self, obj):
        return progress_steps(obj)

    def get_checklist(self, obj):
        return checklist_progress(obj)

    def get_available_transitions(self, obj):
        request = self.context.get("request")
        if request is None:
            return []
        return available_transitions(obj, request.user)


class OrderCreateSerializer(serializers.ModelSerializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())

    class Meta:
        model = Order
        fields = [
            "client",
            "total_amount",
            "deposit_amount",
            "job_address",
            "postcode",
            "installation_notes",
        ]

    def validate_total_amount(self, value):
        if value <= Decimal("0.00"):
            raise serializers.ValidationError("Total amount must be greater than zero.")
        return value

    def validate(self, attrs):
        deposit = attrs.get("deposit_amount") or Decimal("0.00")
        if deposit < 0 or deposit > attrs["total_amount"]:
            raise serializers.ValidationError({"deposit_amount": "Deposit must be between zero and the total amount."})
        client = attrs["client"]
        attrs.setdefault("job_address", client.address)
        attrs.setdefault("postcode", client.postcode)
        return attrs


class OrderUpdateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Order
        fields = ["job_address", "postcode", "installation_notes", "engineer_notes", "time_window"]


class TransitionSerializer(serializers.Serializer):
    status = serializers.CharField()
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class OverrideSerializer(serializers.Serializer):
    status = serializers.CharField()
    notes = serializers.CharField(allow_blank=True)


class EngineerStatusSerializer(serializers.Serializer):
    engineer_status = serializers.CharField()
    engineer_notes = serializers.CharField(required=False, allow_blank=True)


class AssignInstallationSerializer(serializers.Serializer):
    engineer = serializers.PrimaryKeyRelatedField(queryset=Engineer.objects.all(), allow_null=True)
    scheduled_install_date = serializers.DateField(allow_null=True)
    time_window = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_engineer(self, value):
        if value is not None and not value.availability:
            raise serializers.ValidationError("This engineer is not available for bookings.")
        return value


class ChecklistToggleSerializer(serializers.Serializer):
    item_key = serializers.CharField()
    completed = serializers.BooleanField()


class RecordPaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_type = serializers.ChoiceField(choices=PaymentType.choices, default=PaymentType.BALANCE)


class PaymentSessionSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    payment_type = serializers.ChoiceField(choices=PaymentType.choices, default=PaymentType.DEPOSIT)
    origin = serializers.URLField(required=False, allow_blank=True)


class VerifyPaymentSerializer(serializers.Serializer):
    session_id = serializers.CharField()

