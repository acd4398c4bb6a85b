import uuid

from django.db import models


def normalize_postcode(value):
    return " ".join(str(value or "").upper().split())


class Client(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="client_profile",
    )
    full_name = models.CharField(max_length=255)
    email = models.EmailField()
    phone = models.CharField(max_length=50, blank=True)
    address = models.CharField(max_length=255, blank=True)
    postcode = models.CharField(max_length=16, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["email"], name="client_email_idx"),
            models.Index(fields=["full_name"], name="client_name_idx"),
        ]

    def save(self, *args, **kwargs):
        self.full_name = str(self.full_name or "").strip()
        self.email = str(self.email or "").strip().lower()
        self.postcode = normalize_postcode(self.postcode)
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.full_name} <{self.email}>"


class ClientBlockedDate(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="blocked_dates")
    blocked_date = models.DateField()
    reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["blocked_date"]
        constraints = [
            models.UniqueConstraint(fields=["client", "blocked_date"], name="client_blocked_date_unique"),
        ]

    def __str__(self):
        return f"{self.client.full_name} unavailable {self.blocked_date:%Y-%m-%d}"
