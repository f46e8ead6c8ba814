from __future__ import annotations

from clientportal.models import Project, User
from clientportal.permissions import is_admin


def can_view_all_projects(user: User | None) -> bool:
    return is_admin(user)


def visible_projects_for_user(user: User | None, queryset=None):
    qs = queryset if queryset is not None else Project.objects.all()
    if can_view_all_projects(user):
        return qs
    if not user or not user.is_authenticated:
        return qs.none()
    return qs.filter(client=user)


def visible_for_user(user: User | None, queryset, project_field: str = 'project'):
    """Restrict project-scoped records (milestones, invoices, activities) to the project owner."""
    if can_view_all_projects(user):
        return queryset
    if not user or not user.is_authenticated:
        return queryset.none()
    return queryset.filter(**{f'{project_field}__client': user})
