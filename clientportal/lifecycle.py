"""
Project lifecycle state machine.

Every status change goes through :func:`transition`, which checks the move
against ``TRANSITIONS``, applies the new status and any coupled fields with a
single conditional update, and appends the matching activity entry. All of
it happens in one database transaction with the project row locked.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from django.conf import settings
from django.db import transaction as db_transaction
from django.utils import timezone

from .activity import log_activity
from .exceptions import ConcurrentModificationError, Forbidden, InvalidTransition, NotFound, ValidationError
from .models import Activity, Feedback, Project, User
from .notifications.tasks import notify_after_commit
from .permissions import is_admin, require_admin, require_project_access

logger = logging.getLogger(__name__)

Status = Project.Status

ADMIN = 'admin'
OWNER = 'owner'
SYSTEM = 'system'

APPROVE_QUOTE = 'approve_quote'
PAYMENT = 'payment'
SUBMIT_FOR_REVIEW = 'submit_for_review'
ACCEPT_REVIEW = 'accept_review'
REQUEST_CHANGES = 'request_changes'
REJECT = 'reject'
FINALIZE = 'finalize'

DP_PERCENTAGE = 50
FULL_PERCENTAGE = 100
ACCEPTED_PROGRESS = 90
HANDOVER_PROGRESS = 95
CHANGES_PROGRESS_FLOOR = 30
CHANGES_PROGRESS_STEP = 10


@dataclass(frozen=True)
class Transition:
    source: str
    target: str
    trigger: str
    actors: FrozenSet[str]
    activity_type: str


TRANSITIONS: Tuple[Transition, ...] = (
    Transition(Status.PENDING_REVIEW, Status.AWAITING_DP, APPROVE_QUOTE, frozenset({ADMIN}), Activity.Type.QUOTATION),
    Transition(Status.PENDING_REVIEW, Status.REJECTED, REJECT, frozenset({ADMIN}), Activity.Type.REVIEW),
    Transition(Status.AWAITING_DP, Status.IN_PROGRESS, PAYMENT, frozenset({SYSTEM}), Activity.Type.PAYMENT),
    Transition(Status.IN_PROGRESS, Status.UNDER_REVIEW, SUBMIT_FOR_REVIEW, frozenset({OWNER, ADMIN}), Activity.Type.STATUS_CHANGE),
    Transition(Status.UNDER_REVIEW, Status.APPROVED, ACCEPT_REVIEW, frozenset({OWNER, ADMIN}), Activity.Type.REVIEW),
    Transition(Status.UNDER_REVIEW, Status.IN_PROGRESS, REQUEST_CHANGES, frozenset({OWNER, ADMIN}), Activity.Type.REVIEW),
    Transition(Status.UNDER_REVIEW, Status.REJECTED, REJECT, frozenset({OWNER, ADMIN}), Activity.Type.REVIEW),
    Transition(Status.APPROVED, Status.AWAITING_HANDOVER, PAYMENT, frozenset({SYSTEM}), Activity.Type.PAYMENT),
    Transition(Status.AWAITING_HANDOVER, Status.COMPLETED, FINALIZE, frozenset({ADMIN}), Activity.Type.STATUS_CHANGE),
)

CLIENT_EDITABLE_FIELDS = frozenset({'title', 'description', 'attachments'})
ADMIN_EDITABLE_FIELDS = CLIENT_EDITABLE_FIELDS | frozenset(
    {'status', 'quote', 'timeline', 'payment_status', 'progress', 'admin_feedback', 'handover_notes'}
)

ProjectRef = Union[Project, int]


def find_transition(source: str, target: str, trigger: Optional[str] = None) -> Optional[Transition]:
    for rule in TRANSITIONS:
        if rule.source == source and rule.target == target and (trigger is None or rule.trigger == trigger):
            return rule
    return None


def allowed_targets(source: str) -> List[str]:
    return [rule.target for rule in TRANSITIONS if rule.source == source]


def is_legal_transition(source: str, target: str) -> bool:
    return find_transition(source, target) is not None


# ---------------------------------------------------------------------------
# locking and writes
# ---------------------------------------------------------------------------


def _pk(project: ProjectRef) -> int:
    return project.pk if isinstance(project, Project) else project


def lock_project(project: ProjectRef) -> Project:
    try:
        return Project.objects.select_for_update().select_related('client').get(pk=_pk(project))
    except Project.DoesNotExist:
        raise NotFound('Project not found.')


def check_version(locked: Project, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != locked.version:
        raise ConcurrentModificationError()


def save_project_fields(locked: Project, fields: Dict[str, Any]) -> None:
    """Persist ``fields`` only if status and version still match the locked row."""
    values = dict(fields)
    values['version'] = locked.version + 1
    values['updated_at'] = timezone.now()
    updated = Project.objects.filter(pk=locked.pk, status=locked.status, version=locked.version).update(**values)
    if not updated:
        raise ConcurrentModificationError()
    for name, value in values.items():
        setattr(locked, name, value)


def _refreshed(project: ProjectRef) -> Project:
    if isinstance(project, Project):
        project.refresh_from_db()
        return project
    return Project.objects.select_related('client').get(pk=project)


def _authorize(rule: Transition, actor: Optional[User], project: Project) -> None:
    if SYSTEM in rule.actors:
        return
    if ADMIN in rule.actors and is_admin(actor):
        return
    if OWNER in rule.actors and project.is_owned_by(actor):
        return
    raise Forbidden(f"You are not allowed to move this project to '{rule.target}'.")


# ---------------------------------------------------------------------------
# validation helpers
# ---------------------------------------------------------------------------


def _positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer.")
    if number < 1:
        raise ValidationError(f"{field} must be a positive integer.")
    return number


def _percentage(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer between 0 and 100.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer between 0 and 100.")
    if number < 0 or number > 100:
        raise ValidationError(f"{field} must be an integer between 0 and 100.")
    return number


def _attachments(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise ValidationError('attachments must be a list of file references.')
    return [item for item in value if item.strip()]


def _required_text(value: Any, field: str) -> str:
    text = str(value or '').strip()
    if not text:
        raise ValidationError(f"{field} is required.")
    return text


# ---------------------------------------------------------------------------
# the transition function
# ---------------------------------------------------------------------------


Changes = Union[Dict[str, Any], Callable[[Project], Dict[str, Any]], None]


def transition(
    project: ProjectRef,
    target: str,
    *,
    trigger: str,
    actor: Optional[User] = None,
    content: Union[str, Callable[[Project], str]],
    changes: Changes = None,
    check: Optional[Callable[[Project], None]] = None,
    expected_version: Optional[int] = None,
) -> Project:
    """Move ``project`` to ``target`` through the rule matching ``trigger``.

    ``changes`` holds the coupled field updates (or a callable computing them
    from the locked row) and ``check`` validates preconditions on the locked
    row. Exactly one activity of the rule's type is appended.
    """
    with db_transaction.atomic():
        locked = lock_project(project)
        if trigger != PAYMENT:
            require_project_access(actor, locked)
        check_version(locked, expected_version)
        rule = find_transition(locked.status, target, trigger)
        if rule is None:
            raise InvalidTransition(locked.status, target)
        _authorize(rule, actor, locked)
        if check is not None:
            check(locked)
        fields = changes(locked) if callable(changes) else dict(changes or {})
        if callable(content):
            content = content(locked)
        fields['status'] = target
        previous = locked.status
        save_project_fields(locked, fields)
        log_activity(locked, rule.activity_type, content, actor=actor)
        notify_after_commit(
            locked,
            actor=actor,
            message=content,
            category=rule.trigger,
            title=f"{locked.title}: {locked.get_status_display()}",
        )
        logger.info("Project %s moved %s -> %s (%s)", locked.pk, previous, target, trigger)
        _advance_if_paid(locked, actor)
    return _refreshed(project)


# ---------------------------------------------------------------------------
# payment percentage
# ---------------------------------------------------------------------------


def payment_advance(status: str, payment_status: int) -> Optional[str]:
    """Status reached automatically when the paid percentage becomes ``payment_status``."""
    if status == Status.AWAITING_DP and payment_status >= DP_PERCENTAGE:
        return Status.IN_PROGRESS
    if status == Status.APPROVED and payment_status >= FULL_PERCENTAGE:
        return Status.AWAITING_HANDOVER
    return None


def _advance_if_paid(locked: Project, actor: Optional[User]) -> None:
    """Apply advancement owed to payments received before the project reached its status."""
    target = payment_advance(locked.status, locked.payment_status)
    if target is None:
        return
    fields: Dict[str, Any] = {'status': target}
    if target == Status.AWAITING_HANDOVER:
        fields['progress'] = HANDOVER_PROGRESS
    previous = locked.status
    save_project_fields(locked, fields)
    content = (
        f"Payment of {locked.payment_status}% already received for {locked.title}. "
        f"Project moved to {Status(target).label}"
    )
    log_activity(locked, Activity.Type.PAYMENT, content, actor=actor)
    notify_after_commit(locked, actor=actor, message=content, category=PAYMENT)
    logger.info("Project %s advanced %s -> %s on prior payment", locked.pk, previous, target)


def _payment_fields(locked: Project, payment_status: int) -> Tuple[Dict[str, Any], str]:
    fields: Dict[str, Any] = {'payment_status': payment_status}
    content = f"Payment updated from {locked.payment_status}% to {payment_status}% for {locked.title}"
    target = payment_advance(locked.status, payment_status)
    if target:
        fields['status'] = target
        if target == Status.AWAITING_HANDOVER:
            fields['progress'] = HANDOVER_PROGRESS
        content += f". Project moved to {Status(target).label}"
    return fields, content


def _apply_payment(locked: Project, payment_status: int, actor: Optional[User]) -> bool:
    if payment_status == locked.payment_status:
        return False
    fields, content = _payment_fields(locked, payment_status)
    previous = locked.status
    save_project_fields(locked, fields)
    log_activity(locked, Activity.Type.PAYMENT, content, actor=actor)
    notify_after_commit(locked, actor=actor, message=content, category=PAYMENT)
    logger.info("Project %s payment %s%% (status %s -> %s)", locked.pk, payment_status, previous, locked.status)
    return True


def record_payment_progress(
    project: ProjectRef,
    actor: Optional[User],
    payment_status: Any,
    *,
    expected_version: Optional[int] = None,
) -> Project:
    """A payment moved the project to ``payment_status`` percent paid; never decreases."""
    payment_status = _percentage(payment_status, 'payment_status')
    with db_transaction.atomic():
        locked = lock_project(project)
        require_project_access(actor, locked)
        check_version(locked, expected_version)
        if locked.status in (Status.REJECTED, Status.COMPLETED, Status.PENDING_REVIEW):
            raise InvalidTransition(locked.status, locked.status, 'Payments are not accepted in the current state.')
        if payment_status <= locked.payment_status:
            raise ValidationError('Payment status can only increase.')
        _apply_payment(locked, payment_status, actor)
    return _refreshed(project)


def sync_payment_status(project: ProjectRef, payment_status: int, *, actor: Optional[User] = None) -> Project:
    """Raise the paid percentage from the ledger. Lower or equal values are ignored.

    Payments verified before the quote is approved are recorded without a
    status change; ``transition`` applies the advancement once the project
    reaches a stage that takes it.
    """
    payment_status = _percentage(payment_status, 'payment_status')
    with db_transaction.atomic():
        locked = lock_project(project)
        if payment_status > locked.payment_status:
            _apply_payment(locked, payment_status, actor)
    return _refreshed(project)


# ---------------------------------------------------------------------------
# creation and edits
# ---------------------------------------------------------------------------


def create_project(
    client: User,
    *,
    title: str,
    description: str,
    quote: Any,
    timeline: Any,
    attachments: Optional[Iterable[str]] = None,
) -> Project:
    if not client or not getattr(client, 'is_authenticated', False):
        raise Forbidden('Sign in to request a project.')
    title = _required_text(title, 'title')
    description = _required_text(description, 'description')
    quote = _positive_int(quote, 'quote')
    timeline = _positive_int(timeline, 'timeline')
    files = _attachments(list(attachments) if attachments is not None else None)
    with db_transaction.atomic():
        project = Project.objects.create(
            client=client,
            title=title[:255],
            description=description,
            quote=quote,
            timeline=timeline,
            attachments=files,
            status=Status.PENDING_REVIEW,
            payment_status=0,
            progress=0,
        )
        content = f"Quotation requested for {project.title}"
        log_activity(project, Activity.Type.QUOTATION, content, actor=client)
        notify_after_commit(project, actor=client, message=content, category='project_created')
        logger.info("Project %s created by user %s", project.pk, client.pk)
    return project


def _normalize_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for field, value in changes.items():
        if field in ('title', 'description'):
            clean[field] = _required_text(value, field)
        elif field == 'attachments':
            clean[field] = _attachments(value)
        elif field in ('quote', 'timeline'):
            clean[field] = _positive_int(value, field)
        elif field in ('payment_status', 'progress'):
            clean[field] = _percentage(value, field)
        elif field == 'status':
            if value not in Status.values:
                raise ValidationError(f"Unknown status '{value}'.")
            clean[field] = value
        else:
            clean[field] = value or ''
    return clean


def update_project(
    project: ProjectRef,
    actor: Optional[User],
    *,
    expected_version: Optional[int] = None,
    **changes: Any,
) -> Project:
    """Edit project fields.

    Clients may change title, description and attachments while the request
    is pending review. Admins may also set status, quote, timeline, payment
    status, progress and feedback directly; each changed tracked field is
    logged once.
    """
    with db_transaction.atomic():
        locked = lock_project(project)
        require_project_access(actor, locked)
        check_version(locked, expected_version)
        admin = is_admin(actor)
        allowed = ADMIN_EDITABLE_FIELDS if admin else CLIENT_EDITABLE_FIELDS
        unknown = set(changes) - ADMIN_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}.")
        if set(changes) - allowed:
            raise Forbidden('Only admins may change these fields.')
        if not admin and locked.status != Status.PENDING_REVIEW:
            raise Forbidden('Project details can only be edited while the request is pending review.')

        clean = _normalize_changes(changes)
        diff = {field: value for field, value in clean.items() if getattr(locked, field) != value}
        if not diff:
            return _refreshed(project)

        entries: List[Tuple[str, str]] = []
        fields = dict(diff)
        if 'quote' in diff:
            entries.append((Activity.Type.QUOTATION, f"Price updated from {locked.quote} to {diff['quote']}"))
        if 'timeline' in diff:
            entries.append((
                Activity.Type.STATUS_CHANGE,
                f"Project timeline updated from {locked.timeline} to {diff['timeline']} weeks",
            ))
        if 'payment_status' in diff:
            if 'status' in diff:
                entries.append((
                    Activity.Type.PAYMENT,
                    f"Payment updated from {locked.payment_status}% to {diff['payment_status']}% for {locked.title}",
                ))
            else:
                payment_fields, content = _payment_fields(locked, diff['payment_status'])
                if 'progress' in diff:
                    payment_fields.pop('progress', None)
                fields.update(payment_fields)
                entries.append((Activity.Type.PAYMENT, content))
        if 'admin_feedback' in diff and diff['admin_feedback']:
            entries.append((Activity.Type.FEEDBACK, f"Admin feedback: {diff['admin_feedback']}"))
        if 'status' in diff:
            old, new = locked.status, diff['status']
            if is_legal_transition(old, new):
                entries.append((Activity.Type.STATUS_CHANGE, f"Project status changed from {old} to {new}"))
            else:
                entries.append((Activity.Type.ADMIN_OVERRIDE, f"Admin override: project status changed from {old} to {new}"))
                logger.warning("Project %s status overridden %s -> %s by user %s", locked.pk, old, new, actor.pk)

        save_project_fields(locked, fields)
        for activity_type, content in entries:
            log_activity(locked, activity_type, content, actor=actor)
        if entries:
            notify_after_commit(locked, actor=actor, message='. '.join(c for _, c in entries), category='project_update')
    return _refreshed(project)


# ---------------------------------------------------------------------------
# lifecycle operations
# ---------------------------------------------------------------------------


def approve_quote(
    project: ProjectRef,
    actor: Optional[User],
    *,
    quote: Any = None,
    timeline: Any = None,
    expected_version: Optional[int] = None,
) -> Project:
    """Admin confirms price and timeline; the client is asked for the down payment."""
    require_admin(actor, 'approve quotes')
    edits = {name: value for name, value in (('quote', quote), ('timeline', timeline)) if value is not None}
    with db_transaction.atomic():
        if edits:
            project = update_project(project, actor, expected_version=expected_version, **edits)
            expected_version = None
        return transition(
            project,
            Status.AWAITING_DP,
            trigger=APPROVE_QUOTE,
            actor=actor,
            content=lambda locked: f"Quote approved at {locked.quote} for {locked.timeline} weeks. Awaiting down payment",
            check=_require_quote,
            expected_version=expected_version,
        )


def _require_quote(locked: Project) -> None:
    if not locked.quote or not locked.timeline:
        raise ValidationError('Set a quote and timeline before approving.')


def _require_milestones_complete(locked: Project) -> None:
    if not getattr(settings, 'CLIENTPORTAL_REQUIRE_MILESTONES_FOR_REVIEW', True):
        return
    milestones = locked.milestones.all()
    if milestones.exists() and milestones.filter(completed=False).exists():
        raise ValidationError('All milestones must be completed before submitting for review.')


def submit_for_review(
    project: ProjectRef,
    actor: Optional[User],
    *,
    expected_version: Optional[int] = None,
) -> Project:
    return transition(
        project,
        Status.UNDER_REVIEW,
        trigger=SUBMIT_FOR_REVIEW,
        actor=actor,
        content='Project submitted for client review',
        check=_require_milestones_complete,
        expected_version=expected_version,
    )


def _record_feedback(project: ProjectRef, actor: Optional[User], kind: str, content: str) -> Feedback:
    return Feedback.objects.create(project_id=_pk(project), author=actor, kind=kind, content=content)


def accept_review(
    project: ProjectRef,
    actor: Optional[User],
    *,
    feedback: str = '',
    expected_version: Optional[int] = None,
) -> Project:
    """Client accepts the delivered work; final payment becomes due."""
    message = (feedback or '').strip() or 'Client accepted the delivered work.'
    with db_transaction.atomic():
        updated = transition(
            project,
            Status.APPROVED,
            trigger=ACCEPT_REVIEW,
            actor=actor,
            content='Client approved the project. Final payment required',
            changes={'progress': ACCEPTED_PROGRESS},
            expected_version=expected_version,
        )
        _record_feedback(updated, actor, Feedback.Kind.REVIEW, message)
    return updated


def request_changes(
    project: ProjectRef,
    actor: Optional[User],
    message: str,
    *,
    expected_version: Optional[int] = None,
) -> Project:
    """Send the project back to work with the requested changes."""
    message = (message or '').strip()
    if not message:
        raise ValidationError('Describe the changes you need.')

    def _changes(locked: Project) -> Dict[str, Any]:
        return {'progress': max(CHANGES_PROGRESS_FLOOR, locked.progress - CHANGES_PROGRESS_STEP)}

    with db_transaction.atomic():
        updated = transition(
            project,
            Status.IN_PROGRESS,
            trigger=REQUEST_CHANGES,
            actor=actor,
            content=f"Changes requested: {message}",
            changes=_changes,
            expected_version=expected_version,
        )
        _record_feedback(updated, actor, Feedback.Kind.CHANGE_REQUEST, message)
    return updated


def reject_project(
    project: ProjectRef,
    actor: Optional[User],
    reason: str,
    *,
    expected_version: Optional[int] = None,
) -> Project:
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('A reason is required to reject a project.')
    changes = {'admin_feedback': reason} if is_admin(actor) else {}
    who = 'Admin' if is_admin(actor) else 'Client'
    with db_transaction.atomic():
        updated = transition(
            project,
            Status.REJECTED,
            trigger=REJECT,
            actor=actor,
            content=f"{who} rejected the project: {reason}",
            changes=changes,
            expected_version=expected_version,
        )
        _record_feedback(updated, actor, Feedback.Kind.REJECTION, reason)
    return updated


def finalize_delivery(
    project: ProjectRef,
    actor: Optional[User],
    *,
    handover_notes: str = '',
    attachments: Optional[Iterable[str]] = None,
    expected_version: Optional[int] = None,
) -> Project:
    """Admin hands the finished work over; needs notes or delivered files."""
    notes = (handover_notes or '').strip()
    files = _attachments(list(attachments) if attachments is not None else None)

    def _check(locked: Project) -> None:
        if not notes and not files and not (locked.handover_notes or '').strip():
            raise ValidationError('Handover notes or delivery files are required to complete the project.')

    def _changes(locked: Project) -> Dict[str, Any]:
        fields: Dict[str, Any] = {'progress': 100}
        if notes:
            fields['handover_notes'] = notes
        if files:
            fields['attachments'] = list(locked.attachments or []) + [f for f in files if f not in (locked.attachments or [])]
        return fields

    return transition(
        project,
        Status.COMPLETED,
        trigger=FINALIZE,
        actor=actor,
        content='Project delivered and marked as completed',
        changes=_changes,
        check=_check,
        expected_version=expected_version,
    )


def post_feedback(project: ProjectRef, actor: Optional[User], content: str) -> Feedback:
    content = _required_text(content, 'content')
    with db_transaction.atomic():
        locked = lock_project(project)
        require_project_access(actor, locked)
        entry = _record_feedback(locked, actor, Feedback.Kind.GENERAL, content)
        log_activity(locked, Activity.Type.FEEDBACK, content, actor=actor)
        notify_after_commit(locked, actor=actor, message=f"New feedback on {locked.title}: {content}", category='feedback')
    return entry
