from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand

from apps.accounts.models import UserRole
from apps.common.permissions import ROLE_CAPABILITIES


class Command(BaseCommand):
    help = "Create one auth group per portal role"

    def handle(self, *args, **options):
        for role in UserRole:
            group, created = Group.objects.get_or_create(name=role.value)
            action = "created" if created else "exists"
            capabilities = len(ROLE_CAPABILITIES.get(role, ()))
            self.stdout.write(self.style.SUCCESS(f"{group.name}: {action} ({capabilities} capabilities)"))
