from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional, Union

from django.db import transaction as db_transaction
from django.utils import timezone
from django.utils.dateparse import parse_date

from .activity import log_activity
from .exceptions import InvalidTransition, NotFound, ValidationError
from .lifecycle import ProjectRef, lock_project, save_project_fields
from .models import Activity, Milestone, Project, User
from .permissions import require_project_access

logger = logging.getLogger(__name__)

MilestoneRef = Union[Milestone, int]

EDITABLE_FIELDS = frozenset({'title', 'description', 'due_date', 'order', 'progress', 'completed'})
CLOSED_STATUSES = (Project.Status.COMPLETED, Project.Status.REJECTED)


def milestone_progress(completed: int, total: int) -> Optional[int]:
    """Rounded completion percentage, halves rounding up. None when there are no milestones."""
    if total <= 0:
        return None
    return (200 * completed + total) // (2 * total)


def recompute_progress(project: Project) -> Optional[int]:
    """Store the milestone-derived progress on a locked project if it differs."""
    progress = milestone_progress(project.completed_milestones, project.milestones.count())
    if progress is None or progress == project.progress:
        return None
    save_project_fields(project, {'progress': progress})
    logger.info("Project %s progress recomputed to %s%%", project.pk, progress)
    return progress


def _require_open(project: Project) -> None:
    if project.status in CLOSED_STATUSES:
        raise InvalidTransition(
            project.status,
            project.status,
            f"Milestones cannot be changed on a {project.get_status_display().lower()} project.",
        )


def _lock_milestone(milestone: MilestoneRef) -> Milestone:
    pk = milestone.pk if isinstance(milestone, Milestone) else milestone
    project_id = Milestone.objects.filter(pk=pk).values_list('project_id', flat=True).first()
    if project_id is None:
        raise NotFound('Milestone not found.')
    project = lock_project(project_id)
    try:
        locked = Milestone.objects.select_for_update().get(pk=pk)
    except Milestone.DoesNotExist:
        raise NotFound('Milestone not found.')
    locked.project = project
    return locked


def _due_date(value: Any) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, date):
        return value
    parsed = parse_date(str(value)) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError('due_date must be a date (YYYY-MM-DD).')
    return parsed


def create_milestone(
    project: ProjectRef,
    actor: Optional[User],
    *,
    title: str,
    description: str = '',
    due_date: Any = None,
) -> Milestone:
    title = (title or '').strip()
    if not title:
        raise ValidationError('title is required.')
    due = _due_date(due_date)
    with db_transaction.atomic():
        locked = lock_project(project)
        require_project_access(actor, locked)
        _require_open(locked)
        milestone = Milestone.objects.create(
            project=locked,
            title=title[:255],
            description=description or '',
            due_date=due,
            order=Milestone.objects.filter(project=locked).count(),
        )
        log_activity(locked, Activity.Type.MILESTONE, f"New milestone created: {milestone.title}", actor=actor)
        recompute_progress(locked)
    return milestone


def toggle_milestone(milestone: MilestoneRef, actor: Optional[User], completed: bool) -> Milestone:
    """Mark a milestone done or not done and refresh the project's progress."""
    completed = bool(completed)
    with db_transaction.atomic():
        locked = _lock_milestone(milestone)
        require_project_access(actor, locked.project)
        _require_open(locked.project)
        if locked.completed != completed:
            locked.completed = completed
            if completed:
                locked.completed_at = timezone.now()
                locked.progress = 100
            else:
                locked.completed_at = None
                locked.progress = 0
            locked.save(update_fields=['completed', 'completed_at', 'progress', 'updated_at'])
            if completed:
                log_activity(locked.project, Activity.Type.MILESTONE, f"Milestone completed: {locked.title}", actor=actor)
            recompute_progress(locked.project)
    return _refreshed(milestone, locked)


def update_milestone(milestone: MilestoneRef, actor: Optional[User], **changes: Any) -> Milestone:
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}.")
    completed = changes.pop('completed', None)
    with db_transaction.atomic():
        locked = _lock_milestone(milestone)
        require_project_access(actor, locked.project)
        _require_open(locked.project)
        update_fields = []
        if 'title' in changes:
            title = (changes['title'] or '').strip()
            if not title:
                raise ValidationError('title is required.')
            locked.title = title[:255]
            update_fields.append('title')
        if 'description' in changes:
            locked.description = changes['description'] or ''
            update_fields.append('description')
        if 'due_date' in changes:
            locked.due_date = _due_date(changes['due_date'])
            update_fields.append('due_date')
        if 'order' in changes:
            try:
                locked.order = max(int(changes['order']), 0)
            except (TypeError, ValueError):
                raise ValidationError('order must be an integer.')
            update_fields.append('order')
        if 'progress' in changes:
            try:
                progress = int(changes['progress'])
            except (TypeError, ValueError):
                raise ValidationError('progress must be an integer between 0 and 100.')
            if progress < 0 or progress > 100:
                raise ValidationError('progress must be an integer between 0 and 100.')
            locked.progress = progress
            update_fields.append('progress')
        if update_fields:
            locked.save(update_fields=update_fields + ['updated_at'])
        if completed is not None:
            return toggle_milestone(locked, actor, completed)
    return _refreshed(milestone, locked)


def delete_milestone(milestone: MilestoneRef, actor: Optional[User]) -> None:
    with db_transaction.atomic():
        locked = _lock_milestone(milestone)
        project = locked.project
        require_project_access(actor, project)
        _require_open(project)
        title = locked.title
        locked.delete()
        log_activity(project, Activity.Type.MILESTONE, f"Milestone deleted: {title}", actor=actor)
        recompute_progress(project)


def _refreshed(milestone: MilestoneRef, locked: Milestone) -> Milestone:
    if isinstance(milestone, Milestone) and milestone is not locked:
        milestone.refresh_from_db()
        return milestone
    return locked
