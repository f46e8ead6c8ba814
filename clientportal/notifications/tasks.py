from __future__ import annotations

import logging
from typing import Iterable, Optional, Set

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction
from django.db.models import Q

from clientportal.models import Notification, Project, User
from clientportal.notifications.whatsapp import send_text as send_whatsapp_text

logger = logging.getLogger(__name__)


def _admins():
    return User.objects.filter(is_active=True).filter(Q(role=User.Roles.ADMIN) | Q(is_superuser=True))


def notify_project_change(
    project: Project,
    *,
    actor: Optional[User] = None,
    message: str,
    category: str = 'project_update',
    title: str = '',
    recipients: Optional[Iterable[User]] = None,
) -> None:
    """Send in-app, email and WhatsApp notifications for a project event.

    Without explicit recipients, admin-driven events go to the project owner
    and client-driven events go to every active admin.
    """
    recips: Set[User] = set(recipients or [])
    if recipients is None:
        if actor is not None and not getattr(actor, 'is_admin', False):
            recips.update(_admins())
        else:
            recips.add(project.client)
    if actor:
        recips.discard(actor)

    if not recips:
        return

    subject = title or f"Update on {project.title}"
    for user in recips:
        Notification.objects.create(
            user=user,
            project=project,
            category=category,
            title=subject[:255],
            message=message[:500],
        )
        if user.email:
            send_mail(subject, message, settings.DEFAULT_FROM_EMAIL, [user.email], fail_silently=True)
        if getattr(user, 'phone', None):
            send_whatsapp_text(user.phone, message)


def notify_after_commit(project: Project, **kwargs) -> None:
    """Schedule a notification once the surrounding transaction commits.

    Delivery failures are logged and never reach the caller.
    """
    project_id = project.pk

    def _send():
        try:
            fresh = Project.objects.select_related('client').get(pk=project_id)
            notify_project_change(fresh, **kwargs)
        except Exception:
            logger.exception("Notification for project %s failed", project_id)

    transaction.on_commit(_send)
