from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest import mock

import requests
import stripe
from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.template import TemplateDoesNotExist
from django.test import override_settings
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.clients.models import Client, ClientBlockedDate
from apps.engineers.models import Engineer, EngineerWorkingDay, Weekday
from apps.orders import events
from apps.orders.checklist import CHECKLIST_KEYS, cached_checklist_items, completed_checklist_items, set_checklist_item
from apps.orders.exceptions import TransitionNotPermitted, WorkflowError
from apps.orders.models import CompletionChecklistItem, Order, OrderActivity, OrderPayment, OrderStatus
from apps.orders.notifications import EMAIL_TEMPLATES
from apps.orders.projections import progress_steps, status_badge
from apps.orders.workflow import TRANSITIONS, request_transition

User = get_user_model()

SEND_EMAIL = "apps.orders.notifications.resend.Emails.send"


class OrderTestMixin:
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_ops", password="admin123", role="ADMIN")
        self.manager = User.objects.create_user(username="manager_ops", password="manager123", role="MANAGER")
        self.engineer_user = User.objects.create_user(username="eng_dave", password="engineer123", role="ENGINEER")
        self.other_engineer_user = User.objects.create_user(username="eng_sam", password="engineer123", role="ENGINEER")
        self.client_user = User.objects.create_user(username="client_jo", password="client123", role="CLIENT")
        self.other_client_user = User.objects.create_user(username="client_al", password="client123", role="CLIENT")

        self.engineer = Engineer.objects.create(
            user=self.engineer_user,
            name="Dave Fitter",
            email="dave@prospaces.co.uk",
            base_postcode="m1 1ae",
        )
        self.other_engineer = Engineer.objects.create(
            user=self.other_engineer_user,
            name="Sam Joiner",
            email="sam@prospaces.co.uk",
            base_postcode="LS1 4DY",
        )
        self.customer = Client.objects.create(
            user=self.client_user,
            full_name="Jo Bloggs",
            email="jo@example.com",
            address="1 High Street, Manchester",
            postcode="M2 3AB",
        )
        self.other_customer = Client.objects.create(
            user=self.other_client_user,
            full_name="Al Smith",
            email="al@example.com",
            postcode="LS2 7EY",
        )

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def make_order(self, **kwargs):
        values = {
            "client": self.customer,
            "total_amount": Decimal("1000.00"),
            "job_address": "1 High Street, Manchester",
            "postcode": "M2 3AB",
        }
        values.update(kwargs)
        return Order.objects.create(**values)

    def complete_checklist(self, order, keys=CHECKLIST_KEYS):
        for key in keys:
            CompletionChecklistItem.objects.create(
                order=order,
                item_key=key,
                is_completed=True,
                completed_at=timezone.now(),
                completed_by=self.engineer_user,
            )

    def transition(self, order, target, notes=""):
        return self.client.post(
            f"/api/v1/orders/{order.id}/transition/",
            {"status": target, "notes": notes},
            format="json",
        )


@override_settings(RESEND_API_KEY="re_test")
class OrderLifecycleTests(OrderTestMixin, APITestCase):
    def test_payment_guard_rejects_then_accepts_confirmation(self):
        order = self.make_order(total_amount=Decimal("1000.00"), amount_paid=Decimal("0.00"))
        self.auth_as("manager_ops", "manager123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_1"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                rejected = self.transition(order, "confirmed")
            self.assertEqual(rejected.status_code, 400)
            self.assertEqual(rejected.data["code"], "payment_outstanding")
            order.refresh_from_db()
            self.assertEqual(order.status, OrderStatus.PENDING)
            send.assert_not_called()

            Order.objects.filter(pk=order.pk).update(amount_paid=Decimal("1000.00"))
            with self.captureOnCommitCallbacks(execute=True):
                accepted = self.transition(order, "confirmed")

        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(accepted.data["status"], "confirmed")
        self.assertTrue(accepted.data["badge"]["paid"])
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(OrderActivity.objects.filter(order=order, activity_type="status_change").count(), 1)
        self.assertEqual(send.call_count, 1)
        message = send.call_args[0][0]
        self.assertEqual(message["to"], ["jo@example.com"])
        self.assertTrue(message["subject"].startswith("Payment received"))
        self.assertIn("Jo Bloggs", message["html"])
        self.assertIn(order.order_number, message["html"])

    def test_payment_guard_boundary(self):
        order = self.make_order(amount_paid=Decimal("999.99"))
        self.auth_as("manager_ops", "manager123")
        self.assertEqual(self.transition(order, "confirmed").data["code"], "payment_outstanding")

        Order.objects.filter(pk=order.pk).update(amount_paid=Decimal("1000.00"))
        with mock.patch(SEND_EMAIL, return_value={"id": "em_2"}):
            with self.captureOnCommitCallbacks(execute=True):
                response = self.transition(order, "confirmed")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "confirmed")

    def test_completion_requires_full_checklist(self):
        order = self.make_order(
            status=OrderStatus.IN_PROGRESS,
            engineer=self.engineer,
            engineer_status="in_progress",
            amount_paid=Decimal("1000.00"),
            scheduled_install_date=date(2026, 3, 2),
        )
        self.complete_checklist(order, CHECKLIST_KEYS[:5])
        self.auth_as("eng_dave", "engineer123")

        rejected = self.transition(order, "completed")
        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(rejected.data["code"], "checklist_incomplete")
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.IN_PROGRESS)

        toggle = self.client.post(
            f"/api/v1/orders/{order.id}/checklist/",
            {"item_key": CHECKLIST_KEYS[5], "completed": True},
            format="json",
        )
        self.assertEqual(toggle.status_code, 200)
        self.assertTrue(toggle.data["complete"])

        with mock.patch(SEND_EMAIL, return_value={"id": "em_3"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                accepted = self.transition(order, "completed")

        self.assertEqual(accepted.status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(order.engineer_status, "completed")
        self.assertIsNotNone(order.engineer_signed_off_at)
        self.assertEqual(send.call_count, 1)
        self.assertTrue(send.call_args[0][0]["subject"].startswith("Installation complete"))
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="email_sent").exists())

    def test_completion_requires_started_job(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer, engineer_status="on_way")
        self.complete_checklist(order)
        self.auth_as("eng_dave", "engineer123")

        response = self.transition(order, "completed")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "job_not_started")

    def test_admin_override_is_unconditional_and_logged(self):
        order = self.make_order(status=OrderStatus.SCHEDULED, engineer=self.engineer, scheduled_install_date=date(2026, 3, 2))
        self.auth_as("admin_ops", "admin123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_4"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                response = self.client.post(
                    f"/api/v1/orders/{order.id}/override/",
                    {"status": "revisit_required", "notes": "customer rescheduled"},
                    format="json",
                )

        self.assertEqual(response.status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.REVISIT_REQUIRED)
        self.assertTrue(order.manual_status_override)
        self.assertEqual(order.manual_status_notes, "customer rescheduled")
        activity = OrderActivity.objects.get(order=order, activity_type="manual_override")
        self.assertTrue(activity.details["override"])
        self.assertEqual(activity.details["notes"], "customer rescheduled")
        self.assertEqual(activity.details["from"], "scheduled")
        self.assertEqual(activity.created_by, self.admin)
        self.assertTrue(send.call_args[0][0]["subject"].startswith("We'll be back"))

    def test_override_requires_notes_and_admin(self):
        order = self.make_order(status=OrderStatus.SCHEDULED)
        self.auth_as("admin_ops", "admin123")
        blank = self.client.post(
            f"/api/v1/orders/{order.id}/override/",
            {"status": "completed", "notes": "  "},
            format="json",
        )
        self.assertEqual(blank.status_code, 400)
        self.assertEqual(blank.data["code"], "notes_required")

        self.auth_as("manager_ops", "manager123")
        forbidden = self.client.post(
            f"/api/v1/orders/{order.id}/override/",
            {"status": "completed", "notes": "done offline"},
            format="json",
        )
        self.assertEqual(forbidden.status_code, 403)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.SCHEDULED)
        self.assertFalse(order.manual_status_override)

    def test_transitions_outside_the_table_are_rejected(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        for source in OrderStatus.values:
            for target in OrderStatus.values:
                if (source, target) in TRANSITIONS:
                    continue
                Order.objects.filter(pk=order.pk).update(status=source)
                order.refresh_from_db()
                with self.assertRaises(WorkflowError) as ctx:
                    request_transition(order, target, None)
                self.assertEqual(ctx.exception.code, "invalid_transition")
                order.refresh_from_db()
                self.assertEqual(order.status, source)
        self.assertFalse(OrderActivity.objects.filter(order=order).exists())

    def test_unknown_status_is_reported(self):
        order = self.make_order()
        self.auth_as("manager_ops", "manager123")
        response = self.transition(order, "paid")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_status")

    def test_role_without_capability_cannot_transition(self):
        order = self.make_order(status=OrderStatus.CONFIRMED, engineer=self.engineer, scheduled_install_date=date(2026, 3, 2))
        self.auth_as("client_jo", "client123")
        response = self.transition(order, "scheduled")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "transition_not_permitted")
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CONFIRMED)

    def test_only_assigned_engineer_can_start_job(self):
        order = self.make_order(status=OrderStatus.SCHEDULED, engineer=self.engineer)
        with self.assertRaises(TransitionNotPermitted):
            request_transition(order, OrderStatus.IN_PROGRESS, self.other_engineer_user)

        self.auth_as("eng_sam", "engineer123")
        self.assertEqual(self.transition(order, "in_progress").status_code, 404)

        self.auth_as("eng_dave", "engineer123")
        with mock.patch(SEND_EMAIL, return_value={"id": "em_5"}):
            with self.captureOnCommitCallbacks(execute=True):
                response = self.transition(order, "in_progress")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["engineer_status"], "in_progress")

    def test_scheduling_guard_requires_engineer_and_date(self):
        order = self.make_order(status=OrderStatus.CONFIRMED)
        self.auth_as("manager_ops", "manager123")
        self.assertEqual(self.transition(order, "scheduled").data["code"], "engineer_unassigned")

        Order.objects.filter(pk=order.pk).update(engineer=self.engineer)
        self.assertEqual(self.transition(order, "scheduled").data["code"], "install_date_missing")

    def test_notification_failure_does_not_revert_transition(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")

        with mock.patch(SEND_EMAIL, side_effect=requests.ConnectionError("provider down")):
            with self.captureOnCommitCallbacks(execute=True):
                response = self.transition(order, "confirmed")

        self.assertEqual(response.status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        failure = OrderActivity.objects.get(order=order, activity_type="email_failed")
        self.assertEqual(failure.details["template"], "payment_received")
        self.assertIn("provider down", failure.details["error"])

    def test_broken_email_template_is_not_recorded_as_delivery_failure(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")
        broken = {"payment_received": ("Payment received - Order {number}", "orders/emails/missing.html")}

        with mock.patch.dict(EMAIL_TEMPLATES, broken), mock.patch(SEND_EMAIL) as send:
            with self.assertRaises(TemplateDoesNotExist):
                with self.captureOnCommitCallbacks(execute=True):
                    self.transition(order, "confirmed")

        send.assert_not_called()
        self.assertFalse(OrderActivity.objects.filter(order=order, activity_type="email_failed").exists())

    @override_settings(RESEND_API_KEY="")
    def test_email_is_skipped_without_provider(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")
        with mock.patch(SEND_EMAIL) as send:
            with self.captureOnCommitCallbacks(execute=True):
                self.transition(order, "confirmed")
        send.assert_not_called()
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="email_skipped").exists())

    def test_persistence_failure_reports_and_fires_nothing(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")

        with mock.patch.object(Order, "save", side_effect=DatabaseError("write failed")):
            with self.captureOnCommitCallbacks() as callbacks:
                response = self.transition(order, "confirmed")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["code"], "transition_failed")
        self.assertEqual(callbacks, [])
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertFalse(OrderActivity.objects.filter(order=order).exists())


@override_settings(RESEND_API_KEY="re_test")
class EngineerJobTests(OrderTestMixin, APITestCase):
    def post_status(self, order, value):
        return self.client.post(
            f"/api/v1/orders/{order.id}/engineer-status/",
            {"engineer_status": value},
            format="json",
        )

    def test_sub_status_moves_forward_one_step_at_a_time(self):
        order = self.make_order(status=OrderStatus.SCHEDULED, engineer=self.engineer, scheduled_install_date=date(2026, 3, 2))
        self.auth_as("eng_dave", "engineer123")

        skipped = self.post_status(order, "in_progress")
        self.assertEqual(skipped.status_code, 400)
        self.assertEqual(skipped.data["code"], "invalid_engineer_status")

        on_way = self.post_status(order, "on_way")
        self.assertEqual(on_way.status_code, 200)
        self.assertEqual(on_way.data["status"], "scheduled")
        self.assertEqual(on_way.data["engineer_status"], "on_way")
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="engineer_status_update").exists())

        self.assertEqual(self.post_status(order, "on_way").status_code, 200)

        with mock.patch(SEND_EMAIL, return_value={"id": "em_6"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                started = self.post_status(order, "in_progress")
        self.assertEqual(started.status_code, 200)
        self.assertEqual(started.data["status"], "in_progress")
        self.assertTrue(send.call_args[0][0]["subject"].startswith("Your installation has started"))

        backwards = self.post_status(order, "on_way")
        self.assertEqual(backwards.status_code, 400)
        self.assertEqual(backwards.data["code"], "invalid_engineer_status")

    def test_completing_job_applies_checklist_gate(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer, engineer_status="in_progress")
        self.complete_checklist(order, CHECKLIST_KEYS[:3])
        self.auth_as("eng_dave", "engineer123")

        rejected = self.post_status(order, "completed")
        self.assertEqual(rejected.data["code"], "checklist_incomplete")

        self.complete_checklist(order, CHECKLIST_KEYS[3:])
        with mock.patch(SEND_EMAIL, return_value={"id": "em_7"}):
            with self.captureOnCommitCallbacks(execute=True):
                accepted = self.post_status(order, "completed")
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(accepted.data["status"], "completed")

    def test_sub_status_requires_active_job(self):
        order = self.make_order(status=OrderStatus.CONFIRMED, engineer=self.engineer)
        self.auth_as("eng_dave", "engineer123")
        response = self.post_status(order, "on_way")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "job_not_active")

    def test_assignment_schedules_confirmed_order(self):
        order = self.make_order(status=OrderStatus.CONFIRMED, amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_8"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                response = self.client.post(
                    f"/api/v1/orders/{order.id}/assign/",
                    {"engineer": str(self.engineer.id), "scheduled_install_date": "2026-03-02", "time_window": "AM"},
                    format="json",
                )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "scheduled")
        self.assertEqual(response.data["engineer_name"], "Dave Fitter")
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="engineer_assigned").exists())
        message = send.call_args[0][0]
        self.assertEqual(message["subject"], "Installation Confirmed for Monday 2 March")
        self.assertIn("Dave Fitter", message["html"])

    def test_assignment_is_locked_once_job_started(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer)
        self.auth_as("manager_ops", "manager123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": str(self.other_engineer.id), "scheduled_install_date": "2026-03-03"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "job_locked")

    def test_booked_order_cannot_lose_engineer_or_date(self):
        order = self.make_order(
            status=OrderStatus.SCHEDULED,
            amount_paid=Decimal("1000.00"),
            engineer=self.engineer,
            scheduled_install_date=date(2026, 3, 2),
        )
        self.auth_as("manager_ops", "manager123")

        cleared = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": None, "scheduled_install_date": None},
            format="json",
        )
        self.assertEqual(cleared.status_code, 400)
        self.assertEqual(cleared.data["code"], "engineer_unassigned")

        undated = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": str(self.other_engineer.id), "scheduled_install_date": None},
            format="json",
        )
        self.assertEqual(undated.data["code"], "install_date_missing")

        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.SCHEDULED)
        self.assertEqual(order.engineer_id, self.engineer.id)
        self.assertEqual(order.scheduled_install_date, date(2026, 3, 2))

    def test_booked_order_can_be_moved_to_another_engineer(self):
        order = self.make_order(
            status=OrderStatus.REVISIT_REQUIRED,
            amount_paid=Decimal("1000.00"),
            engineer=self.engineer,
            scheduled_install_date=date(2026, 3, 2),
        )
        self.auth_as("manager_ops", "manager123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": str(self.other_engineer.id), "scheduled_install_date": "2026-03-09"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "revisit_required")
        self.assertEqual(response.data["engineer_name"], "Sam Joiner")

    def test_client_blocked_date_refuses_booking(self):
        order = self.make_order(status=OrderStatus.CONFIRMED, amount_paid=Decimal("1000.00"))
        ClientBlockedDate.objects.create(client=self.customer, blocked_date=date(2026, 3, 2), reason="Away")
        self.auth_as("manager_ops", "manager123")

        response = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": str(self.engineer.id), "scheduled_install_date": "2026-03-02"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "scheduling_conflict")
        self.assertEqual([c["type"] for c in response.data["fields"]["conflicts"]], ["client_blocked"])
        self.assertIn("Away", response.data["detail"])
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        self.assertIsNone(order.engineer_id)

    def test_full_engineer_cannot_be_double_booked(self):
        Engineer.objects.filter(pk=self.engineer.pk).update(max_jobs_per_day=1)
        self.make_order(
            status=OrderStatus.SCHEDULED,
            amount_paid=Decimal("1000.00"),
            engineer=self.engineer,
            scheduled_install_date=date(2026, 3, 2),
        )
        order = self.make_order(status=OrderStatus.CONFIRMED, amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")

        response = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": str(self.engineer.id), "scheduled_install_date": "2026-03-02"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["fields"]["conflicts"][0]["type"], "double_booking")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_13"}):
            with self.captureOnCommitCallbacks(execute=True):
                other_day = self.client.post(
                    f"/api/v1/orders/{order.id}/assign/",
                    {"engineer": str(self.engineer.id), "scheduled_install_date": "2026-03-03"},
                    format="json",
                )
        self.assertEqual(other_day.status_code, 200)
        self.assertEqual(other_day.data["status"], "scheduled")

    def test_rebooking_same_day_does_not_count_the_order_itself(self):
        Engineer.objects.filter(pk=self.engineer.pk).update(max_jobs_per_day=1)
        order = self.make_order(
            status=OrderStatus.SCHEDULED,
            amount_paid=Decimal("1000.00"),
            engineer=self.engineer,
            scheduled_install_date=date(2026, 3, 2),
        )
        self.auth_as("manager_ops", "manager123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/assign/",
            {"engineer": str(self.engineer.id), "scheduled_install_date": "2026-03-02", "time_window": "PM"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["time_window"], "PM")

    def test_day_off_is_a_warning_not_a_refusal(self):
        EngineerWorkingDay.objects.create(engineer=self.engineer, day_of_week=Weekday.TUESDAY)
        order = self.make_order(status=OrderStatus.CONFIRMED, amount_paid=Decimal("1000.00"))
        self.auth_as("manager_ops", "manager123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_14"}):
            with self.captureOnCommitCallbacks(execute=True):
                response = self.client.post(
                    f"/api/v1/orders/{order.id}/assign/",
                    {"engineer": str(self.engineer.id), "scheduled_install_date": "2026-03-02"},
                    format="json",
                )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "scheduled")
        self.assertEqual([w["type"] for w in response.data["scheduling_warnings"]], ["outside_hours"])
        booked = OrderActivity.objects.get(order=order, activity_type="engineer_assigned")
        self.assertEqual(booked.details["warnings"][0]["severity"], "medium")


class ChecklistTests(OrderTestMixin, APITestCase):
    def test_toggle_is_idempotent(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer)
        set_checklist_item(order, "doors_tested", True, actor=self.engineer_user)
        first = CompletionChecklistItem.objects.get(order=order, item_key="doors_tested").completed_at

        set_checklist_item(order, "doors_tested", True, actor=self.engineer_user)
        self.assertEqual(completed_checklist_items(order), ["doors_tested"])
        self.assertEqual(CompletionChecklistItem.objects.filter(order=order).count(), 1)
        self.assertEqual(CompletionChecklistItem.objects.get(order=order, item_key="doors_tested").completed_at, first)
        self.assertEqual(cached_checklist_items(order.id), ["doors_tested"])

    def test_toggle_off_removes_item(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer)
        set_checklist_item(order, "area_cleaned", True)
        set_checklist_item(order, "area_cleaned", False)
        self.assertEqual(completed_checklist_items(order), [])
        self.assertIsNone(CompletionChecklistItem.objects.get(order=order, item_key="area_cleaned").completed_at)

    def test_checklist_endpoint_validates_items(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer)
        self.auth_as("eng_dave", "engineer123")

        unknown = self.client.post(
            f"/api/v1/orders/{order.id}/checklist/",
            {"item_key": "paint_dry", "completed": True},
            format="json",
        )
        self.assertEqual(unknown.status_code, 400)
        self.assertEqual(unknown.data["code"], "unknown_checklist_item")

        listing = self.client.get(f"/api/v1/orders/{order.id}/checklist/")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual([item["key"] for item in listing.data["items"]], list(CHECKLIST_KEYS))
        self.assertEqual(listing.data["completed"], 0)

    def test_checklist_locked_after_completion(self):
        order = self.make_order(status=OrderStatus.COMPLETED, engineer=self.engineer)
        self.auth_as("eng_dave", "engineer123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/checklist/",
            {"item_key": "doors_tested", "completed": False},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "order_completed")

    def test_staff_cannot_tick_checklist(self):
        order = self.make_order(status=OrderStatus.IN_PROGRESS, engineer=self.engineer)
        self.auth_as("manager_ops", "manager123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/checklist/",
            {"item_key": "doors_tested", "completed": True},
            format="json",
        )
        self.assertEqual(response.status_code, 403)


@override_settings(RESEND_API_KEY="re_test", STRIPE_SECRET_KEY="sk_test_123")
class OrderPaymentTests(OrderTestMixin, APITestCase):
    def paid_session(self, order, amount_total=100000, status="paid", session_id="cs_test_1"):
        return SimpleNamespace(
            id=session_id,
            payment_status=status,
            amount_total=amount_total,
            metadata={"order_id": str(order.id)},
            payment_intent="pi_test_1",
        )

    def test_recorded_payment_confirms_order(self):
        order = self.make_order()
        self.auth_as("manager_ops", "manager123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_9"}):
            with self.captureOnCommitCallbacks(execute=True):
                response = self.client.post(
                    f"/api/v1/orders/{order.id}/payments/",
                    {"amount": "1000.00", "payment_type": "balance"},
                    format="json",
                )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["order"]["status"], "confirmed")
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("1000.00"))
        self.assertIsNotNone(order.paid_at)
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="payment_received").exists())
        self.assertIsNone(OrderActivity.objects.get(order=order, activity_type="status_change").created_by)

    def test_payment_cannot_exceed_balance(self):
        order = self.make_order(amount_paid=Decimal("600.00"))
        self.auth_as("manager_ops", "manager123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/payments/",
            {"amount": "500.00", "payment_type": "balance"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_payment")
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("600.00"))
        self.assertFalse(OrderPayment.objects.filter(order=order).exists())

    def test_partial_payment_keeps_order_pending(self):
        order = self.make_order()
        self.auth_as("manager_ops", "manager123")
        response = self.client.post(
            f"/api/v1/orders/{order.id}/payments/",
            {"amount": "250.00", "payment_type": "deposit"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["order"]["status"], "pending")
        self.assertEqual(response.data["order"]["balance_due"], "750.00")

    def test_checkout_session_created_for_deposit(self):
        order = self.make_order(deposit_amount=Decimal("250.00"))
        self.auth_as("client_jo", "client123")

        with mock.patch("apps.orders.payments.stripe.Customer.list", return_value=SimpleNamespace(data=[])), mock.patch(
            "apps.orders.payments.stripe.Customer.create", return_value=SimpleNamespace(id="cus_1")
        ), mock.patch(
            "apps.orders.payments.stripe.checkout.Session.create",
            return_value=SimpleNamespace(id="cs_test_2", url="https://checkout.stripe.com/c/pay/cs_test_2"),
        ) as create_session:
            response = self.client.post(
                f"/api/v1/orders/{order.id}/payment-session/",
                {"payment_type": "deposit", "origin": "https://portal.prospaces.co.uk"},
                format="json",
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["url"], "https://checkout.stripe.com/c/pay/cs_test_2")
        kwargs = create_session.call_args.kwargs
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 25000)
        self.assertEqual(kwargs["line_items"][0]["price_data"]["currency"], "gbp")
        self.assertEqual(kwargs["metadata"]["order_id"], str(order.id))
        self.assertEqual(kwargs["customer"], "cus_1")
        payment = OrderPayment.objects.get(order=order)
        self.assertEqual(payment.status, "pending")
        self.assertEqual(payment.stripe_session_id, "cs_test_2")

    @override_settings(STRIPE_SECRET_KEY="")
    def test_checkout_unavailable_without_provider(self):
        order = self.make_order()
        self.auth_as("client_jo", "client123")
        response = self.client.post(f"/api/v1/orders/{order.id}/payment-session/", {}, format="json")
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.data["code"], "payments_unavailable")

    def test_verified_session_confirms_order_once(self):
        order = self.make_order()
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_1")
        self.auth_as("client_jo", "client123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_10"}), mock.patch(
            "apps.orders.payments.stripe.checkout.Session.retrieve", return_value=self.paid_session(order)
        ) as retrieve:
            with self.captureOnCommitCallbacks(execute=True):
                first = self.client.post(
                    f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_1"}, format="json"
                )
            second = self.client.post(
                f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_1"}, format="json"
            )

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.data["payment"]["status"], "paid")
        self.assertEqual(first.data["order"]["status"], "confirmed")
        self.assertEqual(second.status_code, 200)
        self.assertEqual(retrieve.call_count, 1)
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("1000.00"))
        self.assertEqual(OrderActivity.objects.filter(order=order, activity_type="payment_received").count(), 1)

    def test_unpaid_session_marks_payment_failed(self):
        order = self.make_order()
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_1")
        self.auth_as("client_jo", "client123")
        with mock.patch(
            "apps.orders.payments.stripe.checkout.Session.retrieve",
            return_value=self.paid_session(order, status="unpaid"),
        ):
            response = self.client.post(
                f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_1"}, format="json"
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["payment"]["status"], "failed")
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("0.00"))
        self.assertEqual(order.status, OrderStatus.PENDING)

    def test_session_for_another_order_is_rejected(self):
        order = self.make_order()
        other = self.make_order()
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_1")
        self.auth_as("client_jo", "client123")
        with mock.patch(
            "apps.orders.payments.stripe.checkout.Session.retrieve", return_value=self.paid_session(other)
        ):
            response = self.client.post(
                f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_1"}, format="json"
            )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "session_mismatch")

        unknown = self.client.post(f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_nope"}, format="json")
        self.assertEqual(unknown.data["code"], "unknown_session")

    def test_second_paid_session_is_recorded_not_dropped(self):
        order = self.make_order()
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_1")
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_2")
        self.auth_as("client_jo", "client123")

        def retrieve(session_id, api_key):
            return self.paid_session(order, session_id=session_id)

        with mock.patch("apps.orders.payments.stripe.checkout.Session.retrieve", side_effect=retrieve):
            first = self.client.post(
                f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_1"}, format="json"
            )
            second = self.client.post(
                f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_2"}, format="json"
            )

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.data["payment"]["status"], "paid")
        self.assertEqual(second.data["order"]["status"], "confirmed")
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("1000.00"))
        self.assertEqual(OrderPayment.objects.filter(order=order, status="paid").count(), 2)
        overpaid = OrderActivity.objects.get(order=order, activity_type="payment_overpaid")
        self.assertEqual(overpaid.details["excess"], "1000.00")
        self.assertEqual(overpaid.details["session_id"], "cs_test_2")

    def test_partly_covered_session_credits_only_the_balance(self):
        order = self.make_order(amount_paid=Decimal("400.00"))
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_1")
        self.auth_as("client_jo", "client123")

        with mock.patch(
            "apps.orders.payments.stripe.checkout.Session.retrieve", return_value=self.paid_session(order)
        ):
            response = self.client.post(
                f"/api/v1/orders/{order.id}/verify-payment/", {"session_id": "cs_test_1"}, format="json"
            )

        self.assertEqual(response.status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("1000.00"))
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        overpaid = OrderActivity.objects.get(order=order, activity_type="payment_overpaid")
        self.assertEqual(overpaid.details["credited"], "600.00")
        self.assertEqual(overpaid.details["excess"], "400.00")

    def test_new_checkout_expires_the_open_one(self):
        order = self.make_order()
        stale = OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_old")
        self.auth_as("client_jo", "client123")

        with mock.patch("apps.orders.payments.stripe.checkout.Session.expire") as expire, mock.patch(
            "apps.orders.payments.stripe.Customer.list", return_value=SimpleNamespace(data=[SimpleNamespace(id="cus_1")])
        ), mock.patch(
            "apps.orders.payments.stripe.checkout.Session.create",
            return_value=SimpleNamespace(id="cs_new", url="https://checkout.stripe.com/c/pay/cs_new"),
        ):
            response = self.client.post(
                f"/api/v1/orders/{order.id}/payment-session/", {"payment_type": "balance"}, format="json"
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(expire.call_args.args[0], "cs_old")
        stale.refresh_from_db()
        self.assertEqual(stale.status, "expired")
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="payment_session_expired").exists())
        self.assertEqual(OrderPayment.objects.get(order=order, status="pending").stripe_session_id, "cs_new")

    def test_closed_checkout_is_settled_before_a_new_one_opens(self):
        order = self.make_order()
        paid = OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), stripe_session_id="cs_test_1")
        self.auth_as("client_jo", "client123")

        with mock.patch(
            "apps.orders.payments.stripe.checkout.Session.expire",
            side_effect=stripe.InvalidRequestError("Only open Checkout Sessions can be expired.", None),
        ), mock.patch(
            "apps.orders.payments.stripe.checkout.Session.retrieve", return_value=self.paid_session(order)
        ), mock.patch("apps.orders.payments.stripe.checkout.Session.create") as create_session:
            response = self.client.post(
                f"/api/v1/orders/{order.id}/payment-session/", {"payment_type": "balance"}, format="json"
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_payment")
        create_session.assert_not_called()
        paid.refresh_from_db()
        self.assertEqual(paid.status, "paid")
        order.refresh_from_db()
        self.assertEqual(order.amount_paid, Decimal("1000.00"))
        self.assertEqual(order.status, OrderStatus.CONFIRMED)


@override_settings(RESEND_API_KEY="re_test")
class OrderApiTests(OrderTestMixin, APITestCase):
    def test_create_order_logs_and_emails_quote_acceptance(self):
        self.auth_as("manager_ops", "manager123")
        with mock.patch(SEND_EMAIL, return_value={"id": "em_11"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                response = self.client.post(
                    "/api/v1/orders/",
                    {"client": str(self.customer.id), "total_amount": "1000.00", "deposit_amount": "250.00"},
                    format="json",
                )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], "pending")
        self.assertEqual(response.data["postcode"], "M2 3AB")
        self.assertTrue(response.data["order_number"].startswith("ORD-"))
        order = Order.objects.get(id=response.data["id"])
        self.assertEqual(order.created_by, self.manager)
        self.assertTrue(OrderActivity.objects.filter(order=order, activity_type="order_created").exists())
        self.assertIn(order.order_number, send.call_args[0][0]["subject"])

    def test_clients_only_see_their_orders(self):
        own = self.make_order()
        self.make_order(client=self.other_customer)
        self.auth_as("client_jo", "client123")

        response = self.client.get("/api/v1/orders/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.data["results"]], [str(own.id)])

    def test_sign_agreement_once(self):
        order = self.make_order()
        self.auth_as("client_jo", "client123")

        with mock.patch(SEND_EMAIL, return_value={"id": "em_12"}) as send:
            with self.captureOnCommitCallbacks(execute=True):
                first = self.client.post(f"/api/v1/orders/{order.id}/sign-agreement/")
        self.assertEqual(first.status_code, 200)
        self.assertIsNotNone(first.data["agreement_signed_at"])
        self.assertEqual(first.data["status"], "pending")
        self.assertTrue(send.call_args[0][0]["subject"].startswith("Installation agreement signed"))

        second = self.client.post(f"/api/v1/orders/{order.id}/sign-agreement/")
        self.assertEqual(second.status_code, 400)
        self.assertEqual(second.data["code"], "agreement_already_signed")

    def test_activity_log_lists_entries(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        request_transition(order, OrderStatus.CONFIRMED, self.manager)
        self.auth_as("manager_ops", "manager123")
        response = self.client.get(f"/api/v1/orders/{order.id}/activity/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["details"]["to"], "confirmed")

    def test_admin_delete_removes_dependents(self):
        order = self.make_order(amount_paid=Decimal("1000.00"))
        request_transition(order, OrderStatus.CONFIRMED, self.manager)
        OrderPayment.objects.create(order=order, amount=Decimal("1000.00"), status="paid")
        self.complete_checklist(order, CHECKLIST_KEYS[:2])

        self.auth_as("manager_ops", "manager123")
        self.assertEqual(self.client.delete(f"/api/v1/orders/{order.id}/").status_code, 403)

        self.auth_as("admin_ops", "admin123")
        response = self.client.delete(f"/api/v1/orders/{order.id}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["payments"], 1)
        self.assertEqual(response.data["checklist_items"], 2)
        self.assertFalse(Order.objects.filter(pk=order.pk).exists())
        self.assertFalse(OrderActivity.objects.filter(order_id=order.pk).exists())
        self.assertTrue(AuditLog.objects.filter(action="order.delete", entity_id=str(order.pk)).exists())

    def test_dashboard_kpis_follow_role_scope(self):
        self.make_order(amount_paid=Decimal("250.00"))
        self.make_order(status=OrderStatus.CONFIRMED, amount_paid=Decimal("1000.00"))
        self.make_order(client=self.other_customer, status=OrderStatus.SCHEDULED, engineer=self.engineer)

        self.auth_as("manager_ops", "manager123")
        staff = self.client.get("/api/v1/orders/dashboard/")
        self.assertEqual(staff.status_code, 200)
        self.assertEqual(staff.data["total_orders"], 3)
        self.assertEqual(staff.data["by_status"]["pending"], 1)
        self.assertEqual(staff.data["awaiting_scheduling"], 1)
        self.assertEqual(staff.data["collected"], Decimal("1250.00"))
        self.assertEqual(staff.data["outstanding"], Decimal("1750.00"))

        self.auth_as("client_jo", "client123")
        client_view = self.client.get("/api/v1/orders/dashboard/")
        self.assertEqual(client_view.data["total_orders"], 2)


class ProjectionAndFeedTests(OrderTestMixin, APITestCase):
    def test_progress_steps_show_revisit_branch(self):
        order = self.make_order(status=OrderStatus.REVISIT_REQUIRED)
        steps = progress_steps(order)
        self.assertEqual([step["state"] for step in steps], ["done", "done", "done", "done", "done", "current"])
        self.assertEqual(steps[-1]["status"], "revisit_required")

        order.status = OrderStatus.SCHEDULED
        self.assertEqual(
            [step["state"] for step in progress_steps(order)],
            ["done", "done", "current", "upcoming", "upcoming"],
        )

    def test_status_badge_tracks_payment_in_parallel(self):
        order = self.make_order(status=OrderStatus.SCHEDULED, amount_paid=Decimal("1000.00"))
        badge = status_badge(order)
        self.assertEqual(badge["status"], "scheduled")
        self.assertTrue(badge["paid"])

    def test_change_feed_delivers_in_order_and_stops_after_cancel(self):
        order = self.make_order(amount_paid=Decimal("1000.00"), engineer=self.engineer, scheduled_install_date=date(2026, 3, 2))
        received = []

        def broken(event):
            raise RuntimeError("listener crashed")

        broken_subscription = events.feed.subscribe(order.id, broken)
        subscription = events.feed.subscribe(order.id, received.append)
        self.addCleanup(broken_subscription.cancel)
        self.addCleanup(subscription.cancel)

        with self.captureOnCommitCallbacks(execute=True):
            request_transition(order, OrderStatus.CONFIRMED, self.manager)
        with self.captureOnCommitCallbacks(execute=True):
            request_transition(order, OrderStatus.SCHEDULED, self.manager)

        self.assertEqual([event["status"] for event in received], ["confirmed", "scheduled"])
        self.assertEqual(received[0]["previous"], "pending")

        subscription.cancel()
        self.assertFalse(subscription.active)
        with self.captureOnCommitCallbacks(execute=True):
            request_transition(order, OrderStatus.IN_PROGRESS, self.engineer_user)
        self.assertEqual(len(received), 2)
