from io import StringIO

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management import call_command
from django.test import TestCase

from apps.accounts.models import UserRole
from apps.common.permissions import has_capability, resolve_role

User = get_user_model()


class RoleResolutionTests(TestCase):
    def test_seed_roles_creates_one_group_per_role(self):
        out = StringIO()
        call_command("seed_roles", stdout=out)
        self.assertEqual(set(Group.objects.values_list("name", flat=True)), set(UserRole.values))
        self.assertIn("ADMIN: created", out.getvalue())

        call_command("seed_roles", stdout=StringIO())
        self.assertEqual(Group.objects.count(), len(UserRole.values))

    def test_group_membership_takes_precedence_over_role_field(self):
        user = User.objects.create_user(username="promoted", password="pass12345", role="ENGINEER")
        self.assertEqual(resolve_role(user), UserRole.ENGINEER)
        self.assertFalse(has_capability(user, "orders.override"))

        user.groups.add(Group.objects.create(name=UserRole.ADMIN))
        self.assertEqual(resolve_role(user), UserRole.ADMIN)
        self.assertTrue(has_capability(user, "orders.override"))

    def test_new_users_default_to_client(self):
        user = User.objects.create_user(username="newcomer", password="pass12345")
        self.assertEqual(user.role, UserRole.CLIENT)
        self.assertTrue(has_capability(user, "orders.sign_agreement"))
        self.assertFalse(has_capability(user, "orders.schedule"))

    def test_superusers_resolve_to_admin(self):
        user = User.objects.create_superuser(username="root_ops", password="pass12345", email="ops@prospaces.co.uk")
        self.assertEqual(user.role, UserRole.CLIENT)
        self.assertEqual(resolve_role(user), UserRole.ADMIN)
        self.assertTrue(has_capability(user, "orders.delete"))
