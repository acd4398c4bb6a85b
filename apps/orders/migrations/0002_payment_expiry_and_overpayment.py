from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("orders", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="orderpayment",
            name="status",
            field=models.CharField(
                choices=[("pending", "Pending"), ("paid", "Paid"), ("failed", "Failed"), ("expired", "Expired")],
                default="pending",
                max_length=16,
            ),
        ),
        migrations.AlterField(
            model_name="orderactivity",
            name="activity_type",
            field=models.CharField(
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
                    ("payment_session_expired", "Payment session expired"),
                    ("payment_overpaid", "Payment exceeds balance"),
                    ("email_sent", "Email sent"),
                    ("email_failed", "Email failed"),
                    ("email_skipped", "Email skipped"),
                ],
                max_length=40,
            ),
        ),
    ]
