from __future__ import annotations

from typing import Optional

from .exceptions import Forbidden
from .models import Project, User


def is_admin(user: Optional[User]) -> bool:
    if not user or not getattr(user, 'is_authenticated', False):
        return False
    return bool(getattr(user, 'is_admin', False))


def can_access_project(user: Optional[User], project: Project) -> bool:
    if not user or not getattr(user, 'is_authenticated', False):
        return False
    return is_admin(user) or project.is_owned_by(user)


def require_admin(user: Optional[User], action: str = 'perform this action') -> None:
    if not is_admin(user):
        raise Forbidden(f"Only admins may {action}.")


def require_project_access(user: Optional[User], project: Project) -> None:
    if not can_access_project(user, project):
        raise Forbidden('You do not have access to this project.')
