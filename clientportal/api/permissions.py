from __future__ import annotations

from typing import Iterable

from rest_framework.permissions import BasePermission

from clientportal.permissions import can_access_project, is_admin


class RolePermission(BasePermission):
    """Authenticated users only; views may narrow an action to ``allowed_roles``."""

    allowed_roles: Iterable[str] | None = None

    def has_permission(self, request, view) -> bool:
        user = getattr(request, 'user', None)
        if not user or not user.is_authenticated:
            return False
        roles = getattr(view, 'allowed_roles', None) or self.allowed_roles
        if not roles:
            return True
        return is_admin(user) or user.has_any_role(*roles)


class ProjectParticipantPermission(BasePermission):
    """Object access for the project's client and for admins."""

    def has_object_permission(self, request, view, obj) -> bool:
        project = getattr(obj, 'project', obj)
        return can_access_project(request.user, project)
