"""
Invoice and payment ledger.

Clients submit payments as ``pending``; only an admin verification applies
the amount to the invoice. Paid invoices raise the project's payment
percentage, which may advance the project lifecycle.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional, Union

from django.db import transaction as db_transaction
from django.utils import timezone
from django.utils.dateparse import parse_date

from .activity import log_activity
from .exceptions import InvalidTransition, NotFound, OverpaymentError, ValidationError
from .lifecycle import sync_payment_status
from .models import Activity, Invoice, Payment, Project, User
from .notifications.tasks import notify_after_commit
from .permissions import require_admin, require_project_access

logger = logging.getLogger(__name__)

InvoiceRef = Union[Invoice, int]
PaymentRef = Union[Payment, int]


def _amount(value: Any, field: str = 'amount') -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer.")
    if number <= 0:
        raise ValidationError(f"{field} must be a positive integer.")
    return number


def _date(value: Any, field: str) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, date):
        return value
    parsed = parse_date(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD).")
    return parsed


def _lock_invoice(invoice: InvoiceRef) -> Invoice:
    pk = invoice.pk if isinstance(invoice, Invoice) else invoice
    try:
        return Invoice.objects.select_for_update().select_related('project', 'client').get(pk=pk)
    except Invoice.DoesNotExist:
        raise NotFound('Invoice not found.')


def _refreshed(instance, pk_or_obj, model):
    if isinstance(pk_or_obj, model):
        pk_or_obj.refresh_from_db()
        return pk_or_obj
    return instance


def _closed(invoice: Invoice, target: str) -> InvalidTransition:
    return InvalidTransition(
        invoice.status,
        target,
        f"Invoice {invoice.invoice_number} is {invoice.get_status_display().lower()} and cannot be changed.",
    )


def create_invoice(
    project: Union[Project, int],
    actor: Optional[User],
    *,
    title: str,
    amount: Any,
    invoice_type: str = Invoice.Type.FULL,
    due_date: Any = None,
    issue_date: Any = None,
    description: str = '',
    notes: str = '',
    terms_and_conditions: str = '',
    send: bool = False,
) -> Invoice:
    require_admin(actor, 'issue invoices')
    title = (title or '').strip()
    if not title:
        raise ValidationError('title is required.')
    if invoice_type not in Invoice.Type.values:
        raise ValidationError(f"Unknown invoice type '{invoice_type}'.")
    amount = _amount(amount)
    pk = project.pk if isinstance(project, Project) else project
    try:
        project_obj = Project.objects.select_related('client').get(pk=pk)
    except Project.DoesNotExist:
        raise NotFound('Project not found.')
    if project_obj.status == Project.Status.REJECTED:
        raise InvalidTransition(project_obj.status, project_obj.status, 'Rejected projects cannot be invoiced.')
    with db_transaction.atomic():
        invoice = Invoice(
            project=project_obj,
            client=project_obj.client,
            title=title[:255],
            description=description or '',
            amount=amount,
            invoice_type=invoice_type,
            status=Invoice.Status.SENT if send else Invoice.Status.DRAFT,
            due_date=_date(due_date, 'due_date'),
            notes=notes or '',
            terms_and_conditions=terms_and_conditions or '',
        )
        issued = _date(issue_date, 'issue_date')
        if issued:
            invoice.issue_date = issued
        invoice.save()
        content = f"Invoice {invoice.invoice_number} issued for {invoice.amount} ({invoice.get_invoice_type_display()})"
        log_activity(project_obj, Activity.Type.PAYMENT, content, actor=actor)
        if send:
            notify_after_commit(project_obj, actor=actor, message=content, category='invoice', recipients=[project_obj.client])
        logger.info("Invoice %s created for project %s", invoice.invoice_number, project_obj.pk)
    return invoice


def send_invoice(invoice: InvoiceRef, actor: Optional[User]) -> Invoice:
    require_admin(actor, 'send invoices')
    with db_transaction.atomic():
        locked = _lock_invoice(invoice)
        if locked.status != Invoice.Status.DRAFT:
            raise InvalidTransition(locked.status, Invoice.Status.SENT, 'Only draft invoices can be sent.')
        locked.status = Invoice.Status.SENT
        locked.issue_date = timezone.localdate()
        locked.save(update_fields=['status', 'issue_date', 'updated_at'])
        locked.refresh_status()
        content = f"Invoice {locked.invoice_number} sent for {locked.amount}"
        log_activity(locked.project, Activity.Type.PAYMENT, content, actor=actor)
        notify_after_commit(locked.project, actor=actor, message=content, category='invoice', recipients=[locked.client])
    return _refreshed(locked, invoice, Invoice)


def cancel_invoice(invoice: InvoiceRef, actor: Optional[User], *, reason: str = '') -> Invoice:
    require_admin(actor, 'cancel invoices')
    with db_transaction.atomic():
        locked = _lock_invoice(invoice)
        if not locked.accepts_payments:
            raise _closed(locked, Invoice.Status.CANCELLED)
        locked.status = Invoice.Status.CANCELLED
        if reason:
            locked.notes = f"{locked.notes}\n{reason}".strip()
        locked.save(update_fields=['status', 'notes', 'updated_at'])
        Payment.objects.filter(invoice=locked, status=Payment.Status.PENDING).update(status=Payment.Status.CANCELLED)
        content = f"Invoice {locked.invoice_number} cancelled"
        if reason:
            content = f"{content}: {reason}"
        log_activity(locked.project, Activity.Type.PAYMENT, content, actor=actor)
    return _refreshed(locked, invoice, Invoice)


def refresh_overdue(today: Optional[date] = None) -> int:
    """Mark unpaid sent invoices past their due date as overdue."""
    today = today or timezone.localdate()
    count = 0
    candidates = Invoice.objects.filter(status=Invoice.Status.SENT, paid_amount=0, due_date__lt=today)
    for invoice in candidates:
        if invoice.refresh_status(today=today) == Invoice.Status.OVERDUE:
            count += 1
    if count:
        logger.info("Marked %s invoice(s) overdue", count)
    return count


def record_payment(
    invoice: InvoiceRef,
    actor: Optional[User],
    *,
    amount: Any,
    method: str = Payment.Method.BANK_TRANSFER,
    transaction_id: str = '',
    payment_proof_url: str = '',
    notes: str = '',
) -> Payment:
    """Client submits a payment; it stays pending until an admin verifies it."""
    amount = _amount(amount)
    if method not in Payment.Method.values:
        raise ValidationError(f"Unknown payment method '{method}'.")
    with db_transaction.atomic():
        locked = _lock_invoice(invoice)
        require_project_access(actor, locked.project)
        if not locked.accepts_payments:
            raise _closed(locked, Invoice.Status.PAID)
        if locked.status == Invoice.Status.DRAFT:
            raise InvalidTransition(locked.status, Invoice.Status.PAID, 'Draft invoices cannot be paid yet.')
        if amount > locked.amount_due:
            raise OverpaymentError(amount, locked.amount_due)
        payment = Payment.objects.create(
            invoice=locked,
            project=locked.project,
            client=locked.client,
            amount=amount,
            method=method,
            status=Payment.Status.PENDING,
            transaction_id=(transaction_id or '')[:100],
            payment_proof_url=(payment_proof_url or '')[:500],
            notes=notes or '',
        )
        content = f"Payment of {amount} submitted for invoice {locked.invoice_number}, awaiting verification"
        log_activity(locked.project, Activity.Type.PAYMENT, content, actor=actor)
        notify_after_commit(locked.project, actor=actor, message=content, category='payment')
    return payment


def project_payment_percentage(project: Project) -> int:
    """Share of the quote covered by paid invoices."""
    invoices = Invoice.objects.filter(project=project).exclude(status=Invoice.Status.CANCELLED)
    paid = invoices.filter(status=Invoice.Status.PAID)
    if paid.filter(invoice_type__in=[Invoice.Type.FULL, Invoice.Type.FINAL]).exists():
        return 100
    percentage = 50 if paid.filter(invoice_type=Invoice.Type.DP).exists() else 0
    if project.quote:
        percentage = max(percentage, min(100, project.total_paid * 100 // project.quote))
    return percentage


def apply_verified_payment(invoice: InvoiceRef, amount: Any, *, actor: Optional[User] = None) -> Invoice:
    """Add a verified amount to the invoice and sync the project's paid percentage."""
    amount = _amount(amount)
    with db_transaction.atomic():
        locked = _lock_invoice(invoice)
        if not locked.accepts_payments:
            raise _closed(locked, Invoice.Status.PAID)
        if amount > locked.amount_due:
            raise OverpaymentError(amount, locked.amount_due)
        locked.paid_amount += amount
        locked.refresh_status(save=False)
        locked.save(update_fields=['paid_amount', 'status', 'paid_date', 'updated_at'])
        content = (
            f"Payment of {amount} received for invoice {locked.invoice_number} "
            f"({locked.get_status_display().lower()}, {locked.amount_due} outstanding)"
        )
        log_activity(locked.project, Activity.Type.PAYMENT, content, actor=actor)
        logger.info("Invoice %s paid %s/%s", locked.invoice_number, locked.paid_amount, locked.amount)
        sync_payment_status(locked.project_id, project_payment_percentage(locked.project), actor=actor)
    return _refreshed(locked, invoice, Invoice)


def verify_payment(payment: PaymentRef, actor: Optional[User], *, approve: bool = True, notes: str = '') -> Payment:
    require_admin(actor, 'verify payments')
    pk = payment.pk if isinstance(payment, Payment) else payment
    with db_transaction.atomic():
        try:
            locked = Payment.objects.select_for_update().select_related('invoice', 'project').get(pk=pk)
        except Payment.DoesNotExist:
            raise NotFound('Payment not found.')
        target = Payment.Status.SUCCESS if approve else Payment.Status.FAILED
        if locked.status != Payment.Status.PENDING:
            raise InvalidTransition(locked.status, target, 'Only pending payments can be verified.')
        if approve:
            apply_verified_payment(locked.invoice_id, locked.amount, actor=actor)
        else:
            content = f"Payment of {locked.amount} for invoice {locked.invoice.invoice_number} was declined"
            log_activity(locked.project, Activity.Type.PAYMENT, content, actor=actor)
            notify_after_commit(locked.project, actor=actor, message=content, category='payment', recipients=[locked.client])
        locked.status = target
        locked.verified_by = actor
        locked.verified_at = timezone.now()
        if notes:
            locked.notes = f"{locked.notes}\n{notes}".strip()
        locked.save(update_fields=['status', 'verified_by', 'verified_at', 'notes', 'updated_at'])
    if isinstance(payment, Payment):
        payment.refresh_from_db()
        return payment
    return locked
