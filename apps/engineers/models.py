import uuid
from datetime import time

from django.db import models

from apps.clients.models import normalize_postcode


class Weekday(models.IntegerChoices):
    MONDAY = 0, "Monday"
    TUESDAY = 1, "Tuesday"
    WEDNESDAY = 2, "Wednesday"
    THURSDAY = 3, "Thursday"
    FRIDAY = 4, "Friday"
    SATURDAY = 5, "Saturday"
    SUNDAY = 6, "Sunday"


class Engineer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="engineer_profile",
    )
    name = models.CharField(max_length=255)
    email = models.EmailField()
    region = models.CharField(max_length=100, blank=True)
    base_postcode = models.CharField(max_length=16, blank=True)
    availability = models.BooleanField(default=True)
    max_jobs_per_day = models.PositiveSmallIntegerField(default=3)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["availability", "region"], name="engineer_avail_region_idx"),
        ]

    def save(self, *args, **kwargs):
        self.name = str(self.name or "").strip()
        self.email = str(self.email or "").strip().lower()
        self.base_postcode = normalize_postcode(self.base_postcode)
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name

    def works_on(self, day):
        """Engineers without a weekly pattern are bookable any day."""
        pattern = list(self.working_days.all())
        if not pattern:
            return True
        return any(entry.day_of_week == day.weekday() and entry.is_available for entry in pattern)


class EngineerWorkingDay(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    engineer = models.ForeignKey(Engineer, on_delete=models.CASCADE, related_name="working_days")
    day_of_week = models.PositiveSmallIntegerField(choices=Weekday.choices)
    start_time = models.TimeField(default=time(8, 0))
    end_time = models.TimeField(default=time(17, 0))
    is_available = models.BooleanField(default=True)

    class Meta:
        ordering = ["day_of_week"]
        constraints = [
            models.UniqueConstraint(fields=["engineer", "day_of_week"], name="engineer_working_day_unique"),
        ]

    def __str__(self):
        return f"{self.engineer.name} {Weekday(self.day_of_week).label}"
