from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from .exceptions import Forbidden


class User(AbstractUser):
    class Roles(models.TextChoices):
        CLIENT = 'client', 'Client'
        ADMIN = 'admin', 'Admin'

    phone = models.CharField(max_length=50, blank=True)
    role = models.CharField(max_length=16, choices=Roles.choices, default=Roles.CLIENT)

    def __str__(self) -> str:
        return f"{self.get_full_name() or self.username} ({self.get_role_display()})"

    @property
    def is_admin(self) -> bool:
        return bool(self.is_superuser or self.role == self.Roles.ADMIN)

    def has_any_role(self, *roles: str) -> bool:
        if self.is_superuser and self.Roles.ADMIN in roles:
            return True
        return self.role in roles


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Project(TimeStampedModel):
    class Status(models.TextChoices):
        PENDING_REVIEW = 'pending_review', 'Pending Review'
        AWAITING_DP = 'awaiting_dp', 'Awaiting Down Payment'
        IN_PROGRESS = 'in_progress', 'In Progress'
        UNDER_REVIEW = 'under_review', 'Under Review'
        APPROVED = 'approved', 'Approved'
        AWAITING_HANDOVER = 'awaiting_handover', 'Awaiting Handover'
        COMPLETED = 'completed', 'Completed'
        REJECTED = 'rejected', 'Rejected'

    client = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='projects')
    title = models.CharField(max_length=255)
    description = models.TextField()
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING_REVIEW)
    quote = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    timeline = models.PositiveIntegerField(validators=[MinValueValidator(1)], help_text='Delivery timeline in weeks.')
    payment_status = models.PositiveSmallIntegerField(
        default=0,
        validators=[MaxValueValidator(100)],
        help_text='Percentage of the quote paid (0-100).',
    )
    progress = models.PositiveSmallIntegerField(default=0, validators=[MaxValueValidator(100)])
    admin_feedback = models.TextField(blank=True)
    attachments = models.JSONField(default=list, blank=True)
    handover_notes = models.TextField(blank=True)
    version = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='project_status_idx'),
            models.Index(fields=['client', 'status'], name='project_client_status_idx'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(payment_status__lte=100), name='project_payment_status_lte_100'),
            models.CheckConstraint(condition=Q(progress__lte=100), name='project_progress_lte_100'),
        ]

    def __str__(self) -> str:
        return self.title

    def is_owned_by(self, user) -> bool:
        return bool(user and user.pk and self.client_id == user.pk)

    @property
    def completed_milestones(self) -> int:
        return self.milestones.filter(completed=True).count()

    @property
    def total_paid(self) -> int:
        total = self.invoices.exclude(status=Invoice.Status.CANCELLED).aggregate(total=models.Sum('paid_amount'))['total']
        return total or 0


class Milestone(TimeStampedModel):
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='milestones')
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    due_date = models.DateField(null=True, blank=True)
    completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    progress = models.PositiveSmallIntegerField(default=0, validators=[MaxValueValidator(100)])
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['order', 'id']
        indexes = [
            models.Index(fields=['project', 'order'], name='milestone_project_order_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(completed=True, completed_at__isnull=False) | Q(completed=False, completed_at__isnull=True),
                name='milestone_completed_at_matches_completed',
            ),
        ]

    def __str__(self) -> str:
        return f"{self.project} · {self.title}"


class Invoice(TimeStampedModel):
    class Status(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        SENT = 'sent', 'Sent'
        PAID = 'paid', 'Paid'
        PARTIAL = 'partial', 'Partially Paid'
        OVERDUE = 'overdue', 'Overdue'
        CANCELLED = 'cancelled', 'Cancelled'

    class Type(models.TextChoices):
        DP = 'dp', 'Down Payment'
        FINAL = 'final', 'Final Payment'
        MILESTONE = 'milestone', 'Milestone'
        FULL = 'full', 'Full Payment'

    CLOSED_STATUSES = (Status.PAID, Status.CANCELLED)

    project = models.ForeignKey(Project, on_delete=models.PROTECT, related_name='invoices')
    client = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='invoices')
    invoice_number = models.CharField(max_length=50, unique=True, blank=True)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    amount = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT)
    invoice_type = models.CharField(max_length=16, choices=Type.choices, default=Type.FULL)
    due_date = models.DateField(null=True, blank=True)
    issue_date = models.DateField(default=timezone.localdate)
    paid_date = models.DateTimeField(null=True, blank=True)
    paid_amount = models.PositiveBigIntegerField(default=0)
    notes = models.TextField(blank=True)
    terms_and_conditions = models.TextField(blank=True)

    class Meta:
        ordering = ['-issue_date', '-created_at']
        indexes = [
            models.Index(fields=['status', 'due_date'], name='invoice_status_due_idx'),
            models.Index(fields=['project', 'status'], name='invoice_project_status_idx'),
            models.Index(fields=['client', 'status'], name='invoice_client_status_idx'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(paid_amount__lte=F('amount')), name='invoice_paid_amount_lte_amount'),
        ]

    def __str__(self) -> str:
        return f"Invoice {self.invoice_number}"

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = self._generate_invoice_number()
        super().save(*args, **kwargs)

    def _generate_invoice_number(self) -> str:
        prefix = (getattr(settings, 'INVOICE_PREFIX', '') or 'INV').strip() or 'INV'
        issued = self.issue_date or timezone.localdate()
        base = f"{prefix}-{issued:%Y%m%d}"
        seq = Invoice.objects.filter(invoice_number__startswith=f"{base}-").count() + 1
        candidate = f"{base}-{seq:04d}"
        while Invoice.objects.filter(invoice_number=candidate).exists():
            seq += 1
            candidate = f"{base}-{seq:04d}"
        return candidate

    @property
    def amount_due(self) -> int:
        return max((self.amount or 0) - (self.paid_amount or 0), 0)

    @property
    def accepts_payments(self) -> bool:
        return self.status not in self.CLOSED_STATUSES

    def derive_status(self, *, today=None) -> str:
        """Status implied by paid_amount and due date; draft and cancelled are kept."""
        if self.status == self.Status.CANCELLED:
            return self.status
        if self.paid_amount and self.paid_amount >= self.amount:
            return self.Status.PAID
        if self.paid_amount:
            return self.Status.PARTIAL
        if self.status == self.Status.DRAFT:
            return self.status
        today = today or timezone.localdate()
        if self.due_date and self.due_date < today:
            return self.Status.OVERDUE
        return self.Status.SENT

    def refresh_status(self, *, save: bool = True, today=None) -> str:
        """Update invoice.status based on due date and payments."""
        new_status = self.derive_status(today=today)
        if new_status != self.status:
            self.status = new_status
            if new_status == self.Status.PAID and not self.paid_date:
                self.paid_date = timezone.now()
            if save:
                self.save(update_fields=['status', 'paid_date', 'updated_at'])
        return new_status


class Payment(TimeStampedModel):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        SUCCESS = 'success', 'Success'
        FAILED = 'failed', 'Failed'
        CANCELLED = 'cancelled', 'Cancelled'

    class Method(models.TextChoices):
        BANK_TRANSFER = 'bank_transfer', 'Bank Transfer'
        PAYPAL = 'paypal', 'PayPal'
        CARD = 'card', 'Card'
        CASH = 'cash', 'Cash'
        OTHER = 'other', 'Other'

    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name='payments')
    project = models.ForeignKey(Project, on_delete=models.PROTECT, related_name='payments')
    client = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='payments')
    amount = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    method = models.CharField(max_length=32, choices=Method.choices, default=Method.BANK_TRANSFER)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    transaction_id = models.CharField(max_length=100, blank=True)
    payment_proof_url = models.CharField(max_length=500, blank=True)
    notes = models.TextField(blank=True)
    payment_date = models.DateTimeField(default=timezone.now)
    verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payments_verified',
    )
    verified_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-payment_date']
        indexes = [
            models.Index(fields=['invoice', 'status'], name='payment_invoice_status_idx'),
            models.Index(fields=['status', 'payment_date'], name='payment_status_date_idx'),
        ]

    def __str__(self) -> str:
        return f"Payment {self.amount} for {self.invoice}"


class ActivityQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise Forbidden('Activity history cannot be modified.')

    def delete(self):
        raise Forbidden('Activity history cannot be deleted.')

    delete.queryset_only = True


class Activity(models.Model):
    """Append-only audit trail of domain events for a project."""

    class Type(models.TextChoices):
        COMMIT = 'commit', 'Commit'
        PAYMENT = 'payment', 'Payment'
        FEEDBACK = 'feedback', 'Feedback'
        QUOTATION = 'quotation', 'Quotation'
        STATUS_CHANGE = 'status_change', 'Status Change'
        MILESTONE = 'milestone', 'Milestone'
        REVIEW = 'review', 'Review'
        ADMIN_OVERRIDE = 'admin_override', 'Admin Override'

    project = models.ForeignKey(Project, on_delete=models.PROTECT, related_name='activities')
    type = models.CharField(max_length=32, choices=Type.choices)
    content = models.TextField()
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='activities',
    )
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = ActivityQuerySet.as_manager()

    class Meta:
        ordering = ['created_at', 'id']
        verbose_name_plural = 'activities'
        indexes = [
            models.Index(fields=['project', 'created_at'], name='activity_project_created_idx'),
            models.Index(fields=['type', 'created_at'], name='activity_type_created_idx'),
        ]

    def __str__(self) -> str:
        return f"[{self.type}] {self.content}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise Forbidden('Activity history cannot be modified.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise Forbidden('Activity history cannot be deleted.')


class Feedback(TimeStampedModel):
    class Kind(models.TextChoices):
        GENERAL = 'general', 'General'
        REVIEW = 'review', 'Review'
        CHANGE_REQUEST = 'change_request', 'Change Request'
        REJECTION = 'rejection', 'Rejection'

    project = models.ForeignKey(Project, on_delete=models.PROTECT, related_name='feedback')
    author = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='feedback_given',
    )
    kind = models.CharField(max_length=32, choices=Kind.choices, default=Kind.GENERAL)
    content = models.TextField()

    class Meta:
        ordering = ['created_at']
        verbose_name_plural = 'feedback'

    def __str__(self) -> str:
        return f"{self.get_kind_display()} on {self.project}"


class Notification(TimeStampedModel):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notifications')
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='notifications',
    )
    category = models.CharField(max_length=50, blank=True)
    title = models.CharField(max_length=255, blank=True)
    message = models.CharField(max_length=500)
    is_read = models.BooleanField(default=False)

    class Meta:
        ordering = ['is_read', '-created_at']
        indexes = [
            models.Index(fields=['user', 'is_read', 'created_at'], name='notification_user_read_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.user}: {self.message}"
