import uuid
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    SCHEDULED = "scheduled", "Scheduled"
    IN_PROGRESS = "in_progress", "In progress"
    COMPLETED = "completed", "Completed"
    REVISIT_REQUIRED = "revisit_required", "Revisit required"


class EngineerStatus(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    ON_WAY = "on_way", "On way"
    IN_PROGRESS = "in_progress", "Started"
    COMPLETED = "completed", "Complete"


class TransitionTrigger(models.TextChoices):
    PAYMENT_RECEIVED = "payment_received", "Payment received"
    INSTALL_BOOKED = "install_booked", "Install booked"
    JOB_STARTED = "job_started", "Job started"
    SIGN_OFF = "sign_off", "Engineer sign-off"
    ISSUE_FLAGGED = "issue_flagged", "Issue flagged"
    MANUAL_OVERRIDE = "manual_override", "Manual override"


class PaymentType(models.TextChoices):
    DEPOSIT = "deposit", "Deposit"
    BALANCE = "balance", "Balance"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    EXPIRED = "expired", "Expired"


class ChecklistItem(models.TextChoices):
    DOORS_TESTED = "doors_tested", "All doors tested"
    DRAWERS_ALIGNED = "drawers_aligned", "Drawers properly aligned"
    PUSH_MECHANISM = "push_mechanism", "Push-to-open mechanism functional"
    AREA_CLEANED = "area_cleaned", "Installation area cleaned"
    CUSTOMER_WALKTHROUGH = "customer_walkthrough", "Customer walkthrough completed"
    WARRANTY_EXPLAINED = "warranty_explained", "Warranty information provided"


class ActivityType(models.TextChoices):
    ORDER_CREATED = "order_created", "Order created"
    STATUS_CHANGE = "status_change", "Status change"
    MANUAL_OVERRIDE = "manual_override", "Manual override"
    ENGINEER_ASSIGNED = "engineer_assigned", "Engineer assigned"
    ENGINEER_STATUS_UPDATE = "engineer_status_update", "Engineer status update"
    AGREEMENT_SIGNED = "agreement_signed", "Agreement signed"
    PAYMENT_SESSION_CREATED = "payment_session_created", "Payment session created"
    PAYMENT_RECEIVED = "payment_received", "Payment received"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    PAYMENT_SESSION_EXPIRED = "payment_session_expired", "Payment session expired"
    PAYMENT_OVERPAID = "payment_overpaid", "Payment exceeds balance"
    EMAIL_SENT = "email_sent", "Email sent"
    EMAIL_FAILED = "email_failed", "Email failed"
    EMAIL_SKIPPED = "email_skipped", "Email skipped"


def generate_order_number():
    return f"ORD-{timezone.localdate():%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class Order(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=32, unique=True, default=generate_order_number)
    client = models.ForeignKey("clients.Client", on_delete=models.PROTECT, related_name="orders")
    engineer = models.ForeignKey(
        "engineers.Engineer",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    status = models.CharField(max_length=24, choices=OrderStatus.choices, default=OrderStatus.PENDING)
    engineer_status = models.CharField(max_length=16, choices=EngineerStatus.choices, default=EngineerStatus.SCHEDULED)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    deposit_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    paid_at = models.DateTimeField(null=True, blank=True)
    job_address = models.CharField(max_length=255, blank=True)
    postcode = models.CharField(max_length=16, blank=True)
    scheduled_install_date = models.DateField(null=True, blank=True)
    time_window = models.CharField(max_length=32, blank=True)
    agreement_signed_at = models.DateTimeField(null=True, blank=True)
    installation_notes = models.TextField(null=True, blank=True)
    engineer_notes = models.TextField(blank=True)
    engineer_signed_off_at = models.DateTimeField(null=True, blank=True)
    manual_status_override = models.BooleanField(default=False)
    manual_status_notes = models.TextField(blank=True)
    created_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_orders",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "scheduled_install_date"], name="order_status_install_idx"),
            models.Index(fields=["engineer", "scheduled_install_date"], name="order_engineer_install_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(total_amount__gte=0), name="order_total_gte_zero"),
            models.CheckConstraint(condition=models.Q(amount_paid__gte=0), name="order_amount_paid_gte_zero"),
            models.CheckConstraint(condition=models.Q(deposit_amount__gte=0), name="order_deposit_gte_zero"),
        ]

    @property
    def balance_due(self):
        return (self.total_amount - self.amount_paid).quantize(Decimal("0.01"))

    @property
    def is_fully_paid(self):
        return self.amount_paid >= self.total_amount

    def __str__(self):
        return self.order_number


class OrderPayment(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="payments")
    payment_type = models.CharField(max_length=16, choices=PaymentType.choices, default=PaymentType.DEPOSIT)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    stripe_session_id = models.CharField(max_length=255, blank=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_payments",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["stripe_session_id"], name="orderpayment_session_idx"),
            models.Index(fields=["order", "status"], name="orderpayment_order_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(amount__gt=0), name="order_payment_amount_gt_zero"),
        ]


class CompletionChecklistItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="checklist_items")
    item_key = models.CharField(max_length=40, choices=ChecklistItem.choices)
    is_completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    completed_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="checklist_items",
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["order", "item_key"], name="checklist_order_item_unique"),
        ]


class OrderActivity(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="activities")
    activity_type = models.CharField(max_length=40, choices=ActivityType.choices)
    description = models.CharField(max_length=255)
    details = models.JSONField(default=dict, blank=True)
    created_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_activities",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "order activities"
        indexes = [
            models.Index(fields=["order", "created_at"], name="activity_order_created_idx"),
            models.Index(fields=["activity_type"], name="activity_type_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Order activity entries are append-only.")
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.order_id} {self.activity_type}"
