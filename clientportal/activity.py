from __future__ import annotations

import logging
from typing import Optional

from clientportal.models import Activity, Project, User

logger = logging.getLogger(__name__)


def log_activity(
    project: Project,
    activity_type: str,
    content: str,
    *,
    actor: Optional[User] = None,
) -> Activity:
    """Append one entry to the project's history. Entries are never edited afterwards."""
    if activity_type not in Activity.Type.values:
        raise ValueError(f"Unknown activity type: {activity_type}")
    if actor is not None and not getattr(actor, 'is_authenticated', False):
        actor = None
    entry = Activity.objects.create(
        project=project,
        type=activity_type,
        content=content or '',
        actor=actor,
    )
    logger.debug("Activity %s on project %s: %s", activity_type, project.pk, content)
    return entry


def project_history(project: Project):
    return Activity.objects.filter(project=project).select_related('actor').order_by('created_at', 'id')
