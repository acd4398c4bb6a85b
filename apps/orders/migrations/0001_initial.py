import apps.orders.models
import django.db.models.deletion
import uuid

from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("clients", "0001_initial"),
        ("engineers", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "order_number",
                    models.CharField(default=apps.orders.models.generate_order_number, max_length=32, unique=True),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("confirmed", "Confirmed"),
                            ("scheduled", "Scheduled"),
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                            ("revisit_required", "Revisit required"),
                        ],
                        default="pending",
                        max_length=24,
                    ),
                ),
                (
                    "engineer_status",
                    models.CharField(
                        choices=[
                            ("scheduled", "Scheduled"),
                            ("on_way", "On way"),
                            ("in_progress", "Started"),
                            ("completed", "Complete"),
                        ],
                        default="scheduled",
                        max_length=16,
                    ),
                ),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("deposit_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("job_address", models.CharField(blank=True, max_length=255)),
                ("postcode", models.CharField(blank=True, max_length=16)),
                ("scheduled_install_date", models.DateField(blank=True, null=True)),
                ("time_window", models.CharField(blank=True, max_length=32)),
                ("agreement_signed_at", models.DateTimeField(blank=True, null=True)),
                ("installation_notes", models.TextField(blank=True, null=True)),
                ("engineer_notes", models.TextField(blank=True)),
                ("engineer_signed_off_at", models.DateTimeField(blank=True, null=True)),
                ("manual_status_override", models.BooleanField(default=False)),
                ("manual_status_notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "client",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="orders",
                        to="clients.client",
                    ),
                ),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="created_orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "engineer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="orders",
                        to="engineers.engineer",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status", "scheduled_install_date"], name="order_status_install_idx"),
                    models.Index(fields=["engineer", "scheduled_install_date"], name="order_engineer_install_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(total_amount__gte=0), name="order_total_gte_zero"),
                    models.CheckConstraint(condition=models.Q(amount_paid__gte=0), name="order_amount_paid_gte_zero"),
                    models.CheckConstraint(condition=models.Q(deposit_amount__gte=0), name="order_deposit_gte_zero"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderPayment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "payment_type",
                    models.CharField(
                        choices=[("deposit", "Deposit"), ("balance", "Balance")],
                        default="deposit",
                        max_length=16,
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("paid", "Paid"), ("failed", "Failed")],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("stripe_session_id", models.CharField(blank=True, max_length=255)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="order_payments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="orders.order",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["stripe_session_id"], name="orderpayment_session_idx"),
                    models.Index(fields=["order", "status"], name="orderpayment_order_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(amount__gt=0), name="order_payment_amount_gt_zero"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CompletionChecklistItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "item_key",
                    models.CharField(
                        choices=[
                            ("doors_tested", "All doors tested"),
                            ("drawers_aligned", "Drawers properly aligned"),
                            ("push_mechanism", "Push-to-open mechanism functional"),
                            ("area_cleaned", "Installation area cleaned"),
                            ("customer_walkthrough", "Customer walkthrough completed"),
                            ("warranty_explained", "Warranty information provided"),
                        ],
                        max_length=40,
                    ),
                ),
                ("is_completed", models.BooleanField(default=False)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "completed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="checklist_items",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="checklist_items",
                        to="orders.order",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=["order", "item_key"], name="checklist_order_item_unique"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderActivity",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "activity_type",
                    models.CharField(
                        choices=[
                            ("order_created", "Order created"),
                            ("status_change", "Status change"),
                            ("manual_override", "Manual override"),
                            ("engineer_assigned", "Engineer assigned"),
                            ("engineer_status_update", "Engineer status update"),
                            ("agreement_signed", "Agreement signed"),
                            ("payment_session_created", "Payment session created"),
                            ("payment_received", "Payment received"),
                            ("payment_failed", "Payment failed"),
                            ("email_sent", "Email sent"),
                            ("email_failed", "Email failed"),
                            ("email_skipped", "Email skipped"),
                        ],
                        max_length=40,
                    ),
                ),
                ("description", models.CharField(max_length=255)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="order_activities",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="activities",
                        to="orders.order",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "order activities",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["order", "created_at"], name="activity_order_created_idx"),
                    models.Index(fields=["activity_type"], name="activity_type_idx"),
                ],
            },
        ),
    ]
