from __future__ import annotations

import logging

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.http import Http404
from rest_framework import exceptions as drf_exceptions
from rest_framework.views import exception_handler

from clientportal.exceptions import ClientPortalError

logger = logging.getLogger(__name__)

DRF_ERROR_CODES = (
    (drf_exceptions.ValidationError, 'VALIDATION_ERROR'),
    (drf_exceptions.NotAuthenticated, 'NOT_AUTHENTICATED'),
    (drf_exceptions.AuthenticationFailed, 'AUTHENTICATION_FAILED'),
    (drf_exceptions.PermissionDenied, 'FORBIDDEN'),
    (drf_exceptions.NotFound, 'NOT_FOUND'),
    (Http404, 'NOT_FOUND'),
    (DjangoPermissionDenied, 'FORBIDDEN'),
    (drf_exceptions.MethodNotAllowed, 'METHOD_NOT_ALLOWED'),
    (drf_exceptions.Throttled, 'THROTTLED'),
)


def _error_code(exc) -> str:
    if isinstance(exc, ClientPortalError):
        return exc.error_code
    for exc_class, code in DRF_ERROR_CODES:
        if isinstance(exc, exc_class):
            return code
    return 'ERROR'


def portal_exception_handler(exc, context):
    """DRF's handler plus a machine-readable ``error_code`` on every error body."""
    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(response.data, dict):
        data = response.data
    else:
        data = {'detail': response.data}
    data['error_code'] = _error_code(exc)
    if isinstance(exc, ClientPortalError) and exc.extra:
        for key, value in exc.extra.items():
            data.setdefault(key, value)
    response.data = data

    if response.status_code >= 409 or response.status_code == 403:
        view = context.get('view')
        logger.info(
            "%s rejected in %s: %s",
            data['error_code'],
            view.__class__.__name__ if view else 'unknown view',
            data.get('detail'),
        )
    return response
