import logging
from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db.models import Q
from django.utils import timezone

from clientportal.ledger import refresh_overdue
from clientportal.models import Invoice, Notification, User
from clientportal.notifications.tasks import notify_project_change

logger = logging.getLogger(__name__)

DUE_CATEGORY = 'invoice_due'
OVERDUE_CATEGORY = 'invoice_overdue'


class Command(BaseCommand):
    help = "Mark overdue invoices and remind clients about invoices due soon or overdue."

    def add_arguments(self, parser):
        parser.add_argument(
            '--days',
            type=int,
            default=None,
            help='Remind about invoices due within this many days (defaults to CLIENTPORTAL_REMINDER_DAYS).',
        )

    def handle(self, *args, **options):
        today = timezone.localdate()
        days = options['days']
        if days is None:
            days = settings.CLIENTPORTAL_REMINDER_DAYS
        admins = list(User.objects.filter(is_active=True).filter(Q(role=User.Roles.ADMIN) | Q(is_superuser=True)))

        marked = refresh_overdue(today)
        sent = 0
        for invoice in self._due_soon(today, today + timedelta(days=days)):
            message = (
                f"Invoice {invoice.invoice_number} ({invoice.amount_due} outstanding) "
                f"is due on {invoice.due_date:%d-%m-%Y}"
            )
            sent += self._remind(invoice, [invoice.client], message, DUE_CATEGORY, today)
        for invoice in self._overdue(today):
            message = f"Invoice {invoice.invoice_number} is overdue ({invoice.amount_due} outstanding)"
            sent += self._remind(invoice, [invoice.client, *admins], message, OVERDUE_CATEGORY, today)

        logger.info("Reminder run: %s invoice(s) marked overdue, %s notification(s)", marked, sent)
        self.stdout.write(
            self.style.SUCCESS(f"Reminders processed. Overdue invoices: {marked}. Notifications created: {sent}")
        )

    def _due_soon(self, today, horizon):
        return Invoice.objects.select_related('project', 'client').filter(
            status__in=[Invoice.Status.SENT, Invoice.Status.PARTIAL],
            due_date__gte=today,
            due_date__lte=horizon,
        )

    def _overdue(self, today):
        # partially paid invoices keep their status past the due date
        return Invoice.objects.select_related('project', 'client').filter(
            Q(status=Invoice.Status.OVERDUE) | Q(status=Invoice.Status.PARTIAL, due_date__lt=today)
        )

    def _remind(self, invoice, users, message, category, today):
        """Notify each user once per day for the same message."""
        already = set(
            Notification.objects.filter(category=category, message=message, created_at__date=today)
            .values_list('user_id', flat=True)
        )
        recipients = {user for user in users if user and user.pk not in already}
        if not recipients:
            return 0
        notify_project_change(
            invoice.project,
            message=message,
            category=category,
            title=f"Invoice {invoice.invoice_number}",
            recipients=recipients,
        )
        return len(recipients)
