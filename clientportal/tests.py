import re
from datetime import date, timedelta
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.db import transaction
from django.db.models import F
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APITestCase

from . import ledger, lifecycle, milestones
from .activity import log_activity, project_history
from .exceptions import (
    ConcurrentModificationError,
    Forbidden,
    InvalidTransition,
    OverpaymentError,
    ValidationError,
)
from .models import Activity, Feedback, Invoice, Milestone, Notification, Payment, Project
from .notifications.whatsapp import send_text

User = get_user_model()


class PortalFixtures:
    password = 'test-pass-123'

    def setUp(self):
        self.admin = User.objects.create_user(
            username='admin',
            password=self.password,
            email='admin@example.com',
            role=User.Roles.ADMIN,
        )
        self.owner = User.objects.create_user(
            username='client',
            password=self.password,
            email='client@example.com',
            role=User.Roles.CLIENT,
        )
        self.other = User.objects.create_user(
            username='other',
            password=self.password,
            email='other@example.com',
            role=User.Roles.CLIENT,
        )

    def make_project(self, owner=None, **kwargs):
        data = {'title': 'Company website', 'description': 'Marketing site with blog', 'quote': 1000, 'timeline': 4}
        data.update(kwargs)
        return lifecycle.create_project(owner or self.owner, **data)

    def awaiting_dp(self, **kwargs):
        project = self.make_project(**kwargs)
        return lifecycle.approve_quote(project, self.admin)

    def in_progress(self, **kwargs):
        project = self.awaiting_dp(**kwargs)
        return lifecycle.record_payment_progress(project, self.owner, 50)

    def under_review(self, **kwargs):
        project = self.in_progress(**kwargs)
        return lifecycle.submit_for_review(project, self.owner)

    def approved(self, **kwargs):
        project = self.under_review(**kwargs)
        return lifecycle.accept_review(project, self.owner)

    def awaiting_handover(self, **kwargs):
        project = self.approved(**kwargs)
        return lifecycle.record_payment_progress(project, self.owner, 100)

    def activity_count(self, project, activity_type=None):
        qs = Activity.objects.filter(project=project)
        if activity_type:
            qs = qs.filter(type=activity_type)
        return qs.count()


class LifecycleTests(PortalFixtures, TestCase):
    def test_new_project_starts_pending_with_nothing_paid(self):
        project = self.make_project()
        self.assertEqual(project.status, Project.Status.PENDING_REVIEW)
        self.assertEqual(project.progress, 0)
        self.assertEqual(project.payment_status, 0)
        self.assertEqual(self.activity_count(project, Activity.Type.QUOTATION), 1)

    def test_full_lifecycle_walkthrough(self):
        project = self.make_project(quote=1000, timeline=4)
        self.assertEqual(project.status, Project.Status.PENDING_REVIEW)

        lifecycle.approve_quote(project, self.admin)
        self.assertEqual(project.status, Project.Status.AWAITING_DP)

        payments_before = self.activity_count(project, Activity.Type.PAYMENT)
        total_before = self.activity_count(project)
        lifecycle.record_payment_progress(project, self.owner, 50)
        self.assertEqual(project.payment_status, 50)
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        self.assertEqual(self.activity_count(project, Activity.Type.PAYMENT), payments_before + 1)
        self.assertEqual(self.activity_count(project), total_before + 1)

        lifecycle.submit_for_review(project, self.owner)
        self.assertEqual(project.status, Project.Status.UNDER_REVIEW)

        lifecycle.accept_review(project, self.admin)
        self.assertEqual(project.status, Project.Status.APPROVED)
        self.assertEqual(project.progress, 90)

        lifecycle.record_payment_progress(project, self.owner, 100)
        self.assertEqual(project.payment_status, 100)
        self.assertEqual(project.status, Project.Status.AWAITING_HANDOVER)
        self.assertEqual(project.progress, 95)

    def test_under_review_cannot_skip_to_completed(self):
        project = self.under_review()
        with self.assertRaises(InvalidTransition):
            lifecycle.finalize_delivery(project, self.admin, handover_notes='Repository transferred')
        project.refresh_from_db()
        self.assertEqual(project.status, Project.Status.UNDER_REVIEW)

    def test_transition_function_rejects_moves_outside_table(self):
        project = self.under_review()
        with self.assertRaises(InvalidTransition) as ctx:
            lifecycle.transition(
                project,
                Project.Status.COMPLETED,
                trigger=lifecycle.FINALIZE,
                actor=self.admin,
                content='Done',
            )
        self.assertEqual(ctx.exception.current, Project.Status.UNDER_REVIEW)
        self.assertEqual(ctx.exception.target, Project.Status.COMPLETED)

    def test_allowed_targets_follow_transition_table(self):
        self.assertEqual(
            set(lifecycle.allowed_targets(Project.Status.UNDER_REVIEW)),
            {Project.Status.APPROVED, Project.Status.IN_PROGRESS, Project.Status.REJECTED},
        )
        self.assertEqual(lifecycle.allowed_targets(Project.Status.COMPLETED), [])

    def test_client_cannot_approve_quote(self):
        project = self.make_project()
        with self.assertRaises(Forbidden):
            lifecycle.approve_quote(project, self.owner)
        project.refresh_from_db()
        self.assertEqual(project.status, Project.Status.PENDING_REVIEW)

    def test_approve_quote_can_adjust_price(self):
        project = self.make_project()
        lifecycle.approve_quote(project, self.admin, quote=1500, timeline=6)
        self.assertEqual(project.status, Project.Status.AWAITING_DP)
        self.assertEqual(project.quote, 1500)
        self.assertEqual(project.timeline, 6)

    def test_other_client_cannot_touch_project(self):
        project = self.in_progress()
        with self.assertRaises(Forbidden):
            lifecycle.submit_for_review(project, self.other)
        project.refresh_from_db()
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)

    def test_submit_for_review_requires_completed_milestones(self):
        project = self.in_progress()
        milestone = milestones.create_milestone(project, self.admin, title='Design')
        with self.assertRaises(ValidationError):
            lifecycle.submit_for_review(project, self.owner)

        milestones.toggle_milestone(milestone, self.admin, True)
        lifecycle.submit_for_review(project, self.owner)
        self.assertEqual(project.status, Project.Status.UNDER_REVIEW)

    @override_settings(CLIENTPORTAL_REQUIRE_MILESTONES_FOR_REVIEW=False)
    def test_milestone_gate_can_be_disabled(self):
        project = self.in_progress()
        milestones.create_milestone(project, self.admin, title='Design')
        lifecycle.submit_for_review(project, self.owner)
        self.assertEqual(project.status, Project.Status.UNDER_REVIEW)

    def test_request_changes_requires_message(self):
        project = self.under_review()
        with self.assertRaises(ValidationError):
            lifecycle.request_changes(project, self.owner, '   ')
        project.refresh_from_db()
        self.assertEqual(project.status, Project.Status.UNDER_REVIEW)

    def test_request_changes_lowers_progress(self):
        project = self.under_review()
        lifecycle.update_project(project, self.admin, progress=80)

        lifecycle.request_changes(project, self.owner, 'Please adjust the header colours')
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        self.assertEqual(project.progress, 70)
        feedback = Feedback.objects.get(project=project)
        self.assertEqual(feedback.kind, Feedback.Kind.CHANGE_REQUEST)
        self.assertEqual(feedback.content, 'Please adjust the header colours')
        self.assertTrue(
            Activity.objects.filter(project=project, type=Activity.Type.REVIEW, content__contains='header').exists()
        )

    def test_request_changes_progress_floor(self):
        project = self.under_review()
        lifecycle.update_project(project, self.admin, progress=35)
        lifecycle.request_changes(project, self.admin, 'Missing contact form')
        self.assertEqual(project.progress, 30)

    def test_accept_review_records_feedback(self):
        project = self.under_review()
        lifecycle.accept_review(project, self.owner, feedback='Looks great')
        self.assertEqual(project.status, Project.Status.APPROVED)
        self.assertEqual(project.progress, 90)
        self.assertTrue(Feedback.objects.filter(project=project, kind=Feedback.Kind.REVIEW, content='Looks great').exists())

    def test_reject_requires_reason(self):
        project = self.under_review()
        with self.assertRaises(ValidationError):
            lifecycle.reject_project(project, self.owner, '')

    def test_client_rejects_project_under_review(self):
        project = self.under_review()
        lifecycle.reject_project(project, self.owner, 'Not what we asked for')
        self.assertEqual(project.status, Project.Status.REJECTED)
        self.assertTrue(Feedback.objects.filter(project=project, kind=Feedback.Kind.REJECTION).exists())

    def test_only_admin_rejects_pending_request(self):
        project = self.make_project()
        with self.assertRaises(Forbidden):
            lifecycle.reject_project(project, self.owner, 'Changed my mind')

        lifecycle.reject_project(project, self.admin, 'Out of scope for our team')
        self.assertEqual(project.status, Project.Status.REJECTED)
        self.assertEqual(project.admin_feedback, 'Out of scope for our team')

    def test_finalize_requires_handover_documentation(self):
        project = self.awaiting_handover()
        self.assertEqual(project.status, Project.Status.AWAITING_HANDOVER)
        with self.assertRaises(ValidationError):
            lifecycle.finalize_delivery(project, self.admin)

        lifecycle.finalize_delivery(project, self.admin, attachments=['deliverables/site.zip'])
        self.assertEqual(project.status, Project.Status.COMPLETED)
        self.assertEqual(project.progress, 100)
        self.assertIn('deliverables/site.zip', project.attachments)

    def test_client_cannot_finalize(self):
        project = self.awaiting_handover()
        with self.assertRaises(Forbidden):
            lifecycle.finalize_delivery(project, self.owner, handover_notes='Done')

    def test_stale_version_is_rejected(self):
        project = self.in_progress()
        with self.assertRaises(ConcurrentModificationError):
            lifecycle.submit_for_review(project, self.owner, expected_version=project.version - 1)
        lifecycle.submit_for_review(project, self.owner, expected_version=project.version)
        self.assertEqual(project.status, Project.Status.UNDER_REVIEW)

    def test_conditional_write_detects_concurrent_change(self):
        project = self.make_project()
        stale = Project.objects.get(pk=project.pk)
        Project.objects.filter(pk=project.pk).update(version=F('version') + 1)
        with self.assertRaises(ConcurrentModificationError):
            lifecycle.save_project_fields(stale, {'progress': 10})
        project.refresh_from_db()
        self.assertEqual(project.progress, 0)

    def test_payment_progress_only_increases(self):
        project = self.in_progress()
        with self.assertRaises(ValidationError):
            lifecycle.record_payment_progress(project, self.owner, 50)
        with self.assertRaises(ValidationError):
            lifecycle.record_payment_progress(project, self.owner, 150)

    def test_payment_not_accepted_before_quote_approval(self):
        project = self.make_project()
        with self.assertRaises(InvalidTransition):
            lifecycle.record_payment_progress(project, self.owner, 50)

    def test_paid_in_full_before_review_goes_to_handover_on_acceptance(self):
        project = self.in_progress()
        lifecycle.record_payment_progress(project, self.owner, 100)
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        lifecycle.submit_for_review(project, self.owner)

        payments = self.activity_count(project, Activity.Type.PAYMENT)
        lifecycle.accept_review(project, self.owner)
        self.assertEqual(project.status, Project.Status.AWAITING_HANDOVER)
        self.assertEqual(project.payment_status, 100)
        self.assertEqual(project.progress, 95)
        self.assertEqual(self.activity_count(project, Activity.Type.PAYMENT), payments + 1)

        lifecycle.finalize_delivery(project, self.admin, handover_notes='Repository transferred')
        self.assertEqual(project.status, Project.Status.COMPLETED)

    def test_full_payment_on_deposit_starts_work(self):
        project = self.awaiting_dp()
        lifecycle.record_payment_progress(project, self.owner, 100)
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        self.assertEqual(project.payment_status, 100)

    def test_payment_during_work_keeps_status(self):
        project = self.in_progress()
        lifecycle.record_payment_progress(project, self.owner, 75)
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        self.assertEqual(project.payment_status, 75)

    def test_post_feedback_logs_activity(self):
        project = self.in_progress()
        entry = lifecycle.post_feedback(project, self.owner, 'Can we add a dark mode?')
        self.assertEqual(entry.kind, Feedback.Kind.GENERAL)
        self.assertEqual(self.activity_count(project, Activity.Type.FEEDBACK), 1)

    def test_create_project_validates_input(self):
        with self.assertRaises(ValidationError):
            self.make_project(quote=0)
        with self.assertRaises(ValidationError):
            self.make_project(timeline='soon')
        with self.assertRaises(ValidationError):
            self.make_project(title='  ')


class ProjectUpdateTests(PortalFixtures, TestCase):
    def test_noop_update_creates_no_activity(self):
        project = self.make_project()
        before = self.activity_count(project)
        version = project.version
        lifecycle.update_project(project, self.admin, quote=1000, timeline=4, payment_status=0)
        self.assertEqual(self.activity_count(project), before)
        self.assertEqual(project.version, version)

    def test_each_changed_field_logs_one_activity(self):
        project = self.make_project()
        quotation = self.activity_count(project, Activity.Type.QUOTATION)
        status_change = self.activity_count(project, Activity.Type.STATUS_CHANGE)
        payment = self.activity_count(project, Activity.Type.PAYMENT)

        lifecycle.update_project(project, self.admin, quote=1200, timeline=6, payment_status=25)

        self.assertEqual(self.activity_count(project, Activity.Type.QUOTATION), quotation + 1)
        self.assertEqual(self.activity_count(project, Activity.Type.STATUS_CHANGE), status_change + 1)
        self.assertEqual(self.activity_count(project, Activity.Type.PAYMENT), payment + 1)
        self.assertEqual(project.quote, 1200)
        self.assertEqual(project.timeline, 6)
        self.assertEqual(project.payment_status, 25)
        self.assertEqual(project.status, Project.Status.PENDING_REVIEW)

    def test_legal_status_edit_logged_as_status_change(self):
        project = self.make_project()
        lifecycle.update_project(project, self.admin, status=Project.Status.AWAITING_DP)
        self.assertEqual(project.status, Project.Status.AWAITING_DP)
        self.assertEqual(self.activity_count(project, Activity.Type.STATUS_CHANGE), 1)
        self.assertEqual(self.activity_count(project, Activity.Type.ADMIN_OVERRIDE), 0)

    def test_out_of_table_status_edit_logged_as_override(self):
        project = self.make_project()
        lifecycle.update_project(project, self.admin, status=Project.Status.COMPLETED)
        self.assertEqual(project.status, Project.Status.COMPLETED)
        self.assertEqual(self.activity_count(project, Activity.Type.ADMIN_OVERRIDE), 1)
        self.assertEqual(self.activity_count(project, Activity.Type.STATUS_CHANGE), 0)

    def test_admin_payment_edit_advances_status(self):
        project = self.awaiting_dp()
        payment = self.activity_count(project, Activity.Type.PAYMENT)
        status_change = self.activity_count(project, Activity.Type.STATUS_CHANGE)

        lifecycle.update_project(project, self.admin, payment_status=50)

        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        self.assertEqual(self.activity_count(project, Activity.Type.PAYMENT), payment + 1)
        self.assertEqual(self.activity_count(project, Activity.Type.STATUS_CHANGE), status_change)

    def test_client_edits_details_only_while_pending(self):
        project = self.make_project()
        lifecycle.update_project(project, self.owner, title='Company website v2')
        self.assertEqual(project.title, 'Company website v2')

        with self.assertRaises(Forbidden):
            lifecycle.update_project(project, self.owner, quote=10)

        lifecycle.approve_quote(project, self.admin)
        with self.assertRaises(Forbidden):
            lifecycle.update_project(project, self.owner, title='Too late')

    def test_percentages_are_bounded(self):
        project = self.make_project()
        with self.assertRaises(ValidationError):
            lifecycle.update_project(project, self.admin, progress=101)
        with self.assertRaises(ValidationError):
            lifecycle.update_project(project, self.admin, payment_status=-1)
        project.refresh_from_db()
        self.assertEqual(project.progress, 0)
        self.assertEqual(project.payment_status, 0)

    def test_unknown_fields_rejected(self):
        project = self.make_project()
        with self.assertRaises(ValidationError):
            lifecycle.update_project(project, self.admin, client=self.other.pk)


class MilestoneTests(PortalFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.project = self.in_progress()

    def test_create_appends_in_order(self):
        first = milestones.create_milestone(self.project, self.owner, title='Design', due_date='2030-01-15')
        second = milestones.create_milestone(self.project, self.admin, title='Build')
        self.assertEqual((first.order, second.order), (0, 1))
        self.assertEqual(first.due_date, date(2030, 1, 15))
        self.assertTrue(
            Activity.objects.filter(
                project=self.project,
                type=Activity.Type.MILESTONE,
                content='New milestone created: Design',
            ).exists()
        )

    def test_toggle_sets_and_clears_completed_at(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        milestones.toggle_milestone(milestone, self.admin, True)
        self.assertTrue(milestone.completed)
        self.assertIsNotNone(milestone.completed_at)

        milestones.toggle_milestone(milestone, self.admin, False)
        self.assertFalse(milestone.completed)
        self.assertIsNone(milestone.completed_at)

    def test_progress_is_rounded_completion_ratio(self):
        items = [milestones.create_milestone(self.project, self.admin, title=f"Step {i}") for i in range(3)]
        expected = [33, 67, 100]
        for milestone, progress in zip(items, expected):
            milestones.toggle_milestone(milestone, self.admin, True)
            self.project.refresh_from_db()
            self.assertEqual(self.project.progress, progress)

    def test_half_percent_rounds_up(self):
        self.assertEqual(milestones.milestone_progress(1, 8), 13)
        self.assertEqual(milestones.milestone_progress(1, 3), 33)
        self.assertEqual(milestones.milestone_progress(2, 3), 67)
        self.assertIsNone(milestones.milestone_progress(0, 0))

    def test_only_completion_is_logged(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        before = self.activity_count(self.project, Activity.Type.MILESTONE)
        milestones.toggle_milestone(milestone, self.admin, True)
        self.assertEqual(self.activity_count(self.project, Activity.Type.MILESTONE), before + 1)
        milestones.toggle_milestone(milestone, self.admin, False)
        self.assertEqual(self.activity_count(self.project, Activity.Type.MILESTONE), before + 1)

    def test_repeated_toggle_is_noop(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        milestones.toggle_milestone(milestone, self.admin, True)
        completed_at = milestone.completed_at
        before = self.activity_count(self.project)
        milestones.toggle_milestone(milestone, self.admin, True)
        self.assertEqual(milestone.completed_at, completed_at)
        self.assertEqual(self.activity_count(self.project), before)

    def test_delete_recomputes_progress(self):
        done = milestones.create_milestone(self.project, self.admin, title='Design')
        pending = milestones.create_milestone(self.project, self.admin, title='Build')
        milestones.toggle_milestone(done, self.admin, True)
        self.project.refresh_from_db()
        self.assertEqual(self.project.progress, 50)

        milestones.delete_milestone(pending, self.owner)
        self.project.refresh_from_db()
        self.assertEqual(self.project.progress, 100)
        self.assertFalse(Milestone.objects.filter(pk=pending.pk).exists())
        self.assertTrue(
            Activity.objects.filter(project=self.project, content='Milestone deleted: Build').exists()
        )

    def test_deleting_last_milestone_keeps_progress(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        milestones.toggle_milestone(milestone, self.admin, True)
        milestones.delete_milestone(milestone, self.admin)
        self.project.refresh_from_db()
        self.assertEqual(self.project.progress, 100)

    def test_update_can_complete_milestone(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        updated = milestones.update_milestone(milestone, self.owner, title='Visual design', completed=True)
        self.assertEqual(updated.title, 'Visual design')
        self.assertTrue(updated.completed)
        self.assertIsNotNone(updated.completed_at)

    def test_closed_projects_keep_their_milestones(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        milestones.toggle_milestone(milestone, self.admin, True)
        lifecycle.submit_for_review(self.project, self.owner)
        lifecycle.accept_review(self.project, self.owner)
        lifecycle.record_payment_progress(self.project, self.owner, 100)
        lifecycle.finalize_delivery(self.project, self.admin, handover_notes='Repository transferred')
        self.assertEqual(self.project.progress, 100)

        with self.assertRaises(InvalidTransition):
            milestones.create_milestone(self.project, self.admin, title='Late extra')
        with self.assertRaises(InvalidTransition):
            milestones.toggle_milestone(milestone, self.admin, False)
        with self.assertRaises(InvalidTransition):
            milestones.delete_milestone(milestone, self.admin)
        self.project.refresh_from_db()
        self.assertEqual(self.project.progress, 100)
        self.assertEqual(self.project.milestones.count(), 1)

    def test_other_client_cannot_toggle(self):
        milestone = milestones.create_milestone(self.project, self.admin, title='Design')
        with self.assertRaises(Forbidden):
            milestones.toggle_milestone(milestone, self.other, True)
        milestone.refresh_from_db()
        self.assertFalse(milestone.completed)


class LedgerTests(PortalFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.project = self.awaiting_dp()

    def issue(self, amount=500, invoice_type=Invoice.Type.DP, send=True, title='Down payment', **kwargs):
        return ledger.create_invoice(
            self.project,
            self.admin,
            title=title,
            amount=amount,
            invoice_type=invoice_type,
            send=send,
            **kwargs,
        )

    def test_invoice_numbers_are_sequential_per_day(self):
        first = self.issue(send=False, issue_date=date(2024, 5, 1))
        second = self.issue(send=False, issue_date=date(2024, 5, 1))
        self.assertEqual(first.invoice_number, 'INV-20240501-0001')
        self.assertEqual(second.invoice_number, 'INV-20240501-0002')
        self.assertTrue(re.match(r'^INV-\d{8}-\d{4}$', first.invoice_number))

    @override_settings(INVOICE_PREFIX='FH')
    def test_invoice_prefix_is_configurable(self):
        invoice = self.issue(send=False, issue_date=date(2024, 5, 1))
        self.assertEqual(invoice.invoice_number, 'FH-20240501-0001')

    def test_overpayment_rejected_and_invoice_unchanged(self):
        invoice = self.issue(amount=1_000_000, invoice_type=Invoice.Type.MILESTONE)
        with self.assertRaises(OverpaymentError) as ctx:
            ledger.apply_verified_payment(invoice, 1_200_000, actor=self.admin)
        self.assertEqual(ctx.exception.amount_due, 1_000_000)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 0)
        self.assertEqual(invoice.status, Invoice.Status.SENT)

    def test_partial_then_paid(self):
        invoice = self.issue(amount=1000, invoice_type=Invoice.Type.MILESTONE)
        ledger.apply_verified_payment(invoice, 400, actor=self.admin)
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)
        self.assertEqual(invoice.amount_due, 600)
        self.assertIsNone(invoice.paid_date)

        ledger.apply_verified_payment(invoice, 600, actor=self.admin)
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(invoice.paid_amount, invoice.amount)
        self.assertEqual(invoice.amount_due, 0)
        self.assertIsNotNone(invoice.paid_date)

    def test_non_positive_amounts_rejected(self):
        invoice = self.issue()
        with self.assertRaises(ValidationError):
            ledger.apply_verified_payment(invoice, 0)
        with self.assertRaises(ValidationError):
            ledger.record_payment(invoice, self.owner, amount=-5)

    def test_paid_invoice_rejects_more_payments(self):
        invoice = self.issue(amount=500)
        ledger.apply_verified_payment(invoice, 500, actor=self.admin)
        with self.assertRaises(InvalidTransition):
            ledger.apply_verified_payment(invoice, 1, actor=self.admin)
        with self.assertRaises(InvalidTransition):
            ledger.record_payment(invoice, self.owner, amount=1)

    def test_cancelled_invoice_rejects_payments(self):
        invoice = self.issue(amount=500)
        ledger.cancel_invoice(invoice, self.admin, reason='Issued twice')
        self.assertEqual(invoice.status, Invoice.Status.CANCELLED)
        with self.assertRaises(InvalidTransition):
            ledger.apply_verified_payment(invoice, 100, actor=self.admin)
        with self.assertRaises(InvalidTransition):
            ledger.record_payment(invoice, self.owner, amount=100)

    def test_paid_invoice_cannot_be_cancelled(self):
        invoice = self.issue(amount=500)
        ledger.apply_verified_payment(invoice, 500, actor=self.admin)
        with self.assertRaises(InvalidTransition):
            ledger.cancel_invoice(invoice, self.admin)

    def test_client_payment_waits_for_verification(self):
        invoice = self.issue(amount=500)
        payment = ledger.record_payment(invoice, self.owner, amount=500, method=Payment.Method.PAYPAL)
        self.assertEqual(payment.status, Payment.Status.PENDING)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 0)

        ledger.verify_payment(payment, self.admin)
        self.assertEqual(payment.status, Payment.Status.SUCCESS)
        self.assertEqual(payment.verified_by, self.admin)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.PAID)

        self.project.refresh_from_db()
        self.assertEqual(self.project.payment_status, 50)
        self.assertEqual(self.project.status, Project.Status.IN_PROGRESS)

    def test_record_payment_over_balance(self):
        invoice = self.issue(amount=500)
        with self.assertRaises(OverpaymentError):
            ledger.record_payment(invoice, self.owner, amount=501)
        self.assertFalse(Payment.objects.exists())

    def test_declined_payment_leaves_invoice_untouched(self):
        invoice = self.issue(amount=500)
        payment = ledger.record_payment(invoice, self.owner, amount=200)
        ledger.verify_payment(payment, self.admin, approve=False, notes='Transfer not received')
        self.assertEqual(payment.status, Payment.Status.FAILED)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 0)
        self.assertEqual(invoice.status, Invoice.Status.SENT)

    def test_payment_is_verified_once(self):
        invoice = self.issue(amount=500)
        payment = ledger.record_payment(invoice, self.owner, amount=200)
        ledger.verify_payment(payment, self.admin)
        with self.assertRaises(InvalidTransition):
            ledger.verify_payment(payment, self.admin)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, 200)

    def test_client_cannot_verify_or_issue(self):
        invoice = self.issue(amount=500)
        payment = ledger.record_payment(invoice, self.owner, amount=200)
        with self.assertRaises(Forbidden):
            ledger.verify_payment(payment, self.owner)
        with self.assertRaises(Forbidden):
            ledger.create_invoice(self.project, self.owner, title='Self-issued', amount=10)

    def test_other_client_cannot_pay_invoice(self):
        invoice = self.issue(amount=500)
        with self.assertRaises(Forbidden):
            ledger.record_payment(invoice, self.other, amount=100)

    def test_draft_invoice_cannot_be_paid_by_client(self):
        invoice = self.issue(send=False)
        with self.assertRaises(InvalidTransition):
            ledger.record_payment(invoice, self.owner, amount=100)

    def test_send_only_from_draft(self):
        invoice = self.issue(send=False)
        ledger.send_invoice(invoice, self.admin)
        self.assertEqual(invoice.status, Invoice.Status.SENT)
        with self.assertRaises(InvalidTransition):
            ledger.send_invoice(invoice, self.admin)

    def test_final_invoice_moves_approved_project_to_handover(self):
        deposit = self.issue(amount=500)
        ledger.apply_verified_payment(deposit, 500, actor=self.admin)
        self.project.refresh_from_db()
        lifecycle.submit_for_review(self.project, self.owner)
        lifecycle.accept_review(self.project, self.owner)

        final = self.issue(amount=500, invoice_type=Invoice.Type.FINAL, title='Final payment')
        ledger.apply_verified_payment(final, 500, actor=self.admin)

        self.project.refresh_from_db()
        self.assertEqual(self.project.payment_status, 100)
        self.assertEqual(self.project.status, Project.Status.AWAITING_HANDOVER)
        self.assertEqual(self.project.progress, 95)

    def test_deposit_paid_before_quote_approval(self):
        project = self.make_project()
        deposit = ledger.create_invoice(
            project, self.admin, title='Early deposit', amount=500, invoice_type=Invoice.Type.DP, send=True,
        )
        ledger.apply_verified_payment(deposit, 500, actor=self.admin)
        project.refresh_from_db()
        self.assertEqual(project.status, Project.Status.PENDING_REVIEW)
        self.assertEqual(project.payment_status, 50)

        lifecycle.approve_quote(project, self.admin)
        self.assertEqual(project.status, Project.Status.IN_PROGRESS)
        self.assertTrue(
            Activity.objects.filter(
                project=project, type=Activity.Type.PAYMENT, content__contains='already received'
            ).exists()
        )

    def test_full_invoice_paid_during_work(self):
        full = self.issue(amount=1000, invoice_type=Invoice.Type.FULL, title='Full payment')
        ledger.apply_verified_payment(full, 1000, actor=self.admin)
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, Project.Status.IN_PROGRESS)
        self.assertEqual(self.project.payment_status, 100)

        lifecycle.submit_for_review(self.project, self.owner)
        lifecycle.accept_review(self.project, self.owner)
        self.assertEqual(self.project.status, Project.Status.AWAITING_HANDOVER)
        lifecycle.finalize_delivery(self.project, self.admin, attachments=['deliverables/site.zip'])
        self.assertEqual(self.project.status, Project.Status.COMPLETED)

    def test_partial_milestone_payment_raises_percentage(self):
        invoice = self.issue(amount=1000, invoice_type=Invoice.Type.MILESTONE)
        ledger.apply_verified_payment(invoice, 250, actor=self.admin)
        self.project.refresh_from_db()
        self.assertEqual(self.project.payment_status, 25)
        self.assertEqual(self.project.status, Project.Status.AWAITING_DP)

    def test_refresh_overdue_marks_unpaid_sent_invoices(self):
        today = timezone.localdate()
        unpaid = self.issue(amount=500, due_date=today)
        partial = self.issue(amount=500, invoice_type=Invoice.Type.MILESTONE, due_date=today)
        ledger.apply_verified_payment(partial, 100, actor=self.admin)

        marked = ledger.refresh_overdue(today + timedelta(days=2))

        self.assertEqual(marked, 1)
        unpaid.refresh_from_db()
        partial.refresh_from_db()
        self.assertEqual(unpaid.status, Invoice.Status.OVERDUE)
        self.assertEqual(partial.status, Invoice.Status.PARTIAL)

    def test_overdue_invoice_still_accepts_payment(self):
        invoice = self.issue(amount=500, invoice_type=Invoice.Type.MILESTONE, due_date=timezone.localdate() - timedelta(days=3))
        self.assertEqual(invoice.status, Invoice.Status.OVERDUE)
        ledger.apply_verified_payment(invoice, 200, actor=self.admin)
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)


class ActivityLogTests(PortalFixtures, TestCase):
    def test_entries_cannot_be_edited(self):
        project = self.make_project()
        entry = Activity.objects.filter(project=project).first()
        entry.content = 'rewritten'
        with self.assertRaises(Forbidden):
            entry.save()
        with self.assertRaises(Forbidden):
            Activity.objects.filter(project=project).update(content='rewritten')
        entry.refresh_from_db()
        self.assertNotEqual(entry.content, 'rewritten')

    def test_entries_cannot_be_deleted(self):
        project = self.make_project()
        entry = Activity.objects.filter(project=project).first()
        with self.assertRaises(Forbidden):
            entry.delete()
        with self.assertRaises(Forbidden):
            Activity.objects.filter(project=project).delete()
        self.assertEqual(self.activity_count(project), 1)

    def test_history_is_in_creation_order(self):
        project = self.in_progress()
        types = [entry.type for entry in project_history(project)]
        self.assertEqual(
            types,
            [Activity.Type.QUOTATION, Activity.Type.QUOTATION, Activity.Type.PAYMENT],
        )

    def test_unknown_type_rejected(self):
        project = self.make_project()
        with self.assertRaises(ValueError):
            log_activity(project, 'deploy', 'Shipped')

    def test_actor_is_recorded(self):
        project = self.make_project()
        entry = log_activity(project, Activity.Type.COMMIT, 'Pushed landing page', actor=self.admin)
        self.assertEqual(entry.actor, self.admin)

    def test_projects_cannot_be_deleted(self):
        project = Project.objects.create(client=self.owner, title='Draft', description='d', quote=10, timeline=1)
        with self.assertRaises(Forbidden):
            with transaction.atomic():
                project.delete()
        self.assertTrue(Project.objects.filter(pk=project.pk).exists())


class NotificationTests(PortalFixtures, TestCase):
    def test_admin_transition_notifies_owner(self):
        project = self.make_project()
        with self.captureOnCommitCallbacks(execute=True):
            lifecycle.approve_quote(project, self.admin)
        notification = Notification.objects.get(user=self.owner, project=project)
        self.assertEqual(notification.category, lifecycle.APPROVE_QUOTE)
        self.assertFalse(Notification.objects.filter(user=self.admin).exists())
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['client@example.com'])

    def test_client_request_notifies_admins(self):
        with self.captureOnCommitCallbacks(execute=True):
            project = self.make_project()
        self.assertTrue(Notification.objects.filter(user=self.admin, project=project).exists())
        self.assertFalse(Notification.objects.filter(user=self.owner).exists())

    def test_nothing_is_sent_before_commit(self):
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            self.make_project()
        self.assertEqual(len(callbacks), 1)
        self.assertFalse(Notification.objects.exists())

    def test_delivery_failure_does_not_undo_transition(self):
        self.owner.phone = '+1 555 0100'
        self.owner.save(update_fields=['phone'])
        project = self.make_project()
        with mock.patch('clientportal.notifications.tasks.send_whatsapp_text', side_effect=RuntimeError('gateway down')):
            with self.assertLogs('clientportal.notifications.tasks', level='ERROR'):
                with self.captureOnCommitCallbacks(execute=True):
                    lifecycle.approve_quote(project, self.admin)
        project.refresh_from_db()
        self.assertEqual(project.status, Project.Status.AWAITING_DP)

    def test_whatsapp_is_noop_when_disabled(self):
        with mock.patch('clientportal.notifications.whatsapp.requests.post') as post:
            self.assertFalse(send_text('+15550100', 'Hello'))
        post.assert_not_called()

    @override_settings(WHATSAPP_ENABLED=True, WHATSAPP_TOKEN='token', WHATSAPP_PHONE_NUMBER_ID='12345')
    def test_whatsapp_posts_to_cloud_api(self):
        with mock.patch('clientportal.notifications.whatsapp.requests.post') as post:
            post.return_value = mock.Mock(status_code=200, text='{}')
            self.assertTrue(send_text('+1 (555) 0100', 'Invoice sent'))
        args, kwargs = post.call_args
        self.assertIn('/12345/messages', args[0])
        self.assertEqual(kwargs['json']['to'], '+15550100')
        self.assertEqual(kwargs['timeout'], 10)


class ReminderCommandTests(PortalFixtures, TestCase):
    def test_reminders_for_due_and_overdue_invoices(self):
        project = self.awaiting_dp()
        today = timezone.localdate()
        overdue = ledger.create_invoice(
            project, self.admin, title='Deposit', amount=500, invoice_type=Invoice.Type.DP,
            due_date=today - timedelta(days=2), send=True,
        )
        due_soon = ledger.create_invoice(
            project, self.admin, title='Hosting', amount=100, invoice_type=Invoice.Type.MILESTONE,
            due_date=today + timedelta(days=1), send=True,
        )
        self.assertEqual(overdue.status, Invoice.Status.OVERDUE)

        out = StringIO()
        call_command('send_reminders', stdout=out)
        self.assertIn('Reminders processed', out.getvalue())

        self.assertTrue(Notification.objects.filter(user=self.owner, category='invoice_overdue').exists())
        self.assertTrue(Notification.objects.filter(user=self.admin, category='invoice_overdue').exists())
        self.assertTrue(
            Notification.objects.filter(
                user=self.owner, category='invoice_due', message__contains=due_soon.invoice_number
            ).exists()
        )

        count = Notification.objects.count()
        call_command('send_reminders', stdout=StringIO())
        self.assertEqual(Notification.objects.count(), count)

    def test_partially_paid_invoice_past_due_is_reminded(self):
        project = self.awaiting_dp()
        invoice = ledger.create_invoice(
            project, self.admin, title='Design phase', amount=800, invoice_type=Invoice.Type.MILESTONE,
            due_date=timezone.localdate() - timedelta(days=5), send=True,
        )
        ledger.apply_verified_payment(invoice, 300, actor=self.admin)
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)

        call_command('send_reminders', stdout=StringIO())

        reminder = Notification.objects.get(user=self.owner, category='invoice_overdue')
        self.assertIn(invoice.invoice_number, reminder.message)
        self.assertIn('500 outstanding', reminder.message)
        self.assertTrue(Notification.objects.filter(user=self.admin, category='invoice_overdue').exists())


class ProjectApiTests(PortalFixtures, APITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.owner)

    def as_admin(self):
        self.client.force_authenticate(self.admin)

    def test_client_creates_project(self):
        resp = self.client.post(
            reverse('project-list'),
            {'title': 'Mobile app', 'description': 'iOS and Android', 'quote': 5000, 'timeline': 8},
            format='json',
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['status'], Project.Status.PENDING_REVIEW)
        self.assertEqual(resp.data['client'], self.owner.pk)
        self.assertEqual(set(resp.data['allowed_transitions']), {Project.Status.AWAITING_DP, Project.Status.REJECTED})

    def test_invalid_project_payload(self):
        resp = self.client.post(reverse('project-list'), {'title': 'Mobile app', 'quote': 0}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data['error_code'], 'VALIDATION_ERROR')

    def test_clients_only_see_their_projects(self):
        self.make_project()
        self.make_project(owner=self.other, title='Someone else')
        resp = self.client.get(reverse('project-list'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([row['title'] for row in resp.data['results']], ['Company website'])

        self.as_admin()
        resp = self.client.get(reverse('project-list'))
        self.assertEqual(resp.data['count'], 2)

    def test_foreign_project_is_hidden(self):
        project = self.make_project(owner=self.other)
        resp = self.client.get(reverse('project-detail', args=[project.pk]))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.data['error_code'], 'NOT_FOUND')

    def test_client_cannot_approve_quote(self):
        project = self.make_project()
        resp = self.client.post(reverse('project-approve-quote', args=[project.pk]), {}, format='json')
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.data['error_code'], 'FORBIDDEN')

    def test_quote_approval_and_deposit(self):
        project = self.make_project()
        self.as_admin()
        resp = self.client.post(reverse('project-approve-quote', args=[project.pk]), {}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], Project.Status.AWAITING_DP)

        self.client.force_authenticate(self.owner)
        resp = self.client.post(reverse('project-pay', args=[project.pk]), {'payment_status': 50}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], Project.Status.IN_PROGRESS)
        self.assertEqual(resp.data['payment_status'], 50)

    def test_invalid_transition_is_conflict(self):
        project = self.make_project()
        self.as_admin()
        resp = self.client.post(
            reverse('project-finalize', args=[project.pk]), {'handover_notes': 'Done'}, format='json'
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data['error_code'], 'INVALID_TRANSITION')
        self.assertEqual(resp.data['current_status'], Project.Status.PENDING_REVIEW)

    def test_request_changes_needs_message(self):
        project = self.under_review()
        resp = self.client.post(reverse('project-request-changes', args=[project.pk]), {}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data['error_code'], 'VALIDATION_ERROR')

        resp = self.client.post(
            reverse('project-request-changes', args=[project.pk]), {'message': 'Bigger logo'}, format='json'
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], Project.Status.IN_PROGRESS)

    def test_submit_review_and_accept(self):
        project = self.in_progress()
        resp = self.client.post(reverse('project-submit-review', args=[project.pk]), {}, format='json')
        self.assertEqual(resp.data['status'], Project.Status.UNDER_REVIEW)
        resp = self.client.post(reverse('project-accept', args=[project.pk]), {'feedback': 'Great'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], Project.Status.APPROVED)
        self.assertEqual(resp.data['progress'], 90)

    def test_stale_version_is_conflict(self):
        project = self.make_project()
        self.as_admin()
        resp = self.client.patch(
            reverse('project-detail', args=[project.pk]),
            {'quote': 2000, 'version': project.version + 5},
            format='json',
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data['error_code'], 'CONCURRENT_MODIFICATION')

    def test_admin_patch_logs_changes(self):
        project = self.make_project()
        self.as_admin()
        resp = self.client.patch(
            reverse('project-detail', args=[project.pk]),
            {'quote': 2000, 'version': project.version},
            format='json',
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['quote'], 2000)
        self.assertEqual(self.activity_count(project, Activity.Type.QUOTATION), 2)

    def test_projects_cannot_be_deleted(self):
        project = self.make_project()
        self.as_admin()
        resp = self.client.delete(reverse('project-detail', args=[project.pk]))
        self.assertEqual(resp.status_code, 405)
        self.assertTrue(Project.objects.filter(pk=project.pk).exists())

    def test_activity_feed(self):
        project = self.in_progress()
        resp = self.client.get(reverse('project-activities', args=[project.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([row['type'] for row in resp.data], ['quotation', 'quotation', 'payment'])

    def test_feedback_endpoint(self):
        project = self.in_progress()
        resp = self.client.post(reverse('project-feedback', args=[project.pk]), {'content': 'Love it'}, format='json')
        self.assertEqual(resp.status_code, 201)
        resp = self.client.get(reverse('project-feedback', args=[project.pk]))
        self.assertEqual([row['content'] for row in resp.data], ['Love it'])

    def test_milestones_through_api(self):
        project = self.in_progress()
        resp = self.client.post(
            reverse('project-milestone-list', args=[project.pk]), {'title': 'Design'}, format='json'
        )
        self.assertEqual(resp.status_code, 201)
        milestone_id = resp.data['id']

        resp = self.client.patch(reverse('milestone-detail', args=[milestone_id]), {'completed': True}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.data['completed'])
        self.assertIsNotNone(resp.data['completed_at'])
        project.refresh_from_db()
        self.assertEqual(project.progress, 100)

        resp = self.client.delete(reverse('milestone-detail', args=[milestone_id]))
        self.assertEqual(resp.status_code, 204)
        project.refresh_from_db()
        self.assertEqual(project.progress, 100)

    def test_me_endpoint(self):
        resp = self.client.get(reverse('me'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['user']['username'], 'client')
        self.assertFalse(resp.data['user']['is_admin'])

    def test_token_obtain_accepts_email(self):
        self.client.force_authenticate(None)
        resp = self.client.post(
            reverse('token_obtain_pair'),
            {'username': 'client@example.com', 'password': self.password},
            format='json',
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn('access', resp.data)

    def test_anonymous_requests_are_rejected(self):
        self.client.force_authenticate(None)
        resp = self.client.get(reverse('project-list'))
        self.assertEqual(resp.status_code, 401)


class LedgerApiTests(PortalFixtures, APITestCase):
    def setUp(self):
        super().setUp()
        self.project = self.awaiting_dp()
        self.invoice = ledger.create_invoice(
            self.project, self.admin, title='Milestone 1', amount=1_000_000,
            invoice_type=Invoice.Type.MILESTONE, send=True,
        )
        self.client.force_authenticate(self.owner)

    def test_overpayment_error_code(self):
        resp = self.client.post(
            reverse('invoice-payments', args=[self.invoice.pk]), {'amount': 1_200_000}, format='json'
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data['error_code'], 'OVERPAYMENT')
        self.assertEqual(resp.data['amount_due'], 1_000_000)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.paid_amount, 0)

    def test_client_pays_and_admin_verifies(self):
        resp = self.client.post(
            reverse('invoice-payments', args=[self.invoice.pk]),
            {'amount': 400_000, 'method': 'bank_transfer', 'transaction_id': 'TX-1'},
            format='json',
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['status'], Payment.Status.PENDING)

        resp = self.client.post(reverse('payment-verify', args=[resp.data['id']]), {}, format='json')
        self.assertEqual(resp.status_code, 403)

        payment_id = Payment.objects.get().pk
        self.client.force_authenticate(self.admin)
        resp = self.client.post(reverse('payment-verify', args=[payment_id]), {'approve': True}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], Payment.Status.SUCCESS)

        resp = self.client.get(reverse('invoice-detail', args=[self.invoice.pk]))
        self.assertEqual(resp.data['status'], Invoice.Status.PARTIAL)
        self.assertEqual(resp.data['amount_due'], 600_000)

    def test_only_admin_issues_invoices(self):
        payload = {'project': self.project.pk, 'title': 'Extra', 'amount': 100}
        resp = self.client.post(reverse('invoice-list'), payload, format='json')
        self.assertEqual(resp.status_code, 403)

        self.client.force_authenticate(self.admin)
        resp = self.client.post(reverse('invoice-list'), payload, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['status'], Invoice.Status.DRAFT)

        resp = self.client.post(reverse('invoice-send', args=[resp.data['id']]), {}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], Invoice.Status.SENT)

    def test_client_lists_own_invoices(self):
        other_project = self.make_project(owner=self.other, title='Other')
        ledger.create_invoice(other_project, self.admin, title='Theirs', amount=10)
        resp = self.client.get(reverse('invoice-list'))
        self.assertEqual([row['id'] for row in resp.data['results']], [self.invoice.pk])

    def test_mark_notification_read(self):
        note = Notification.objects.create(user=self.owner, project=self.project, message='Invoice sent')
        resp = self.client.post(reverse('notification-mark-read', args=[note.pk]), {}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.data['is_read'])
        note.refresh_from_db()
        self.assertTrue(note.is_read)
