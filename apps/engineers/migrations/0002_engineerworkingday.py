import datetime
import django.db.models.deletion
import uuid

from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("engineers", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="EngineerWorkingDay",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "day_of_week",
                    models.PositiveSmallIntegerField(
                        choices=[
                            (0, "Monday"),
                            (1, "Tuesday"),
                            (2, "Wednesday"),
                            (3, "Thursday"),
                            (4, "Friday"),
                            (5, "Saturday"),
                            (6, "Sunday"),
                        ]
                    ),
                ),
                ("start_time", models.TimeField(default=datetime.time(8, 0))),
                ("end_time", models.TimeField(default=datetime.time(17, 0))),
                ("is_available", models.BooleanField(default=True)),
                (
                    "engineer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="working_days",
                        to="engineers.engineer",
                    ),
                ),
            ],
            options={
                "ordering": ["day_of_week"],
                "constraints": [
                    models.UniqueConstraint(fields=["engineer", "day_of_week"], name="engineer_working_day_unique"),
                ],
            },
        ),
    ]
