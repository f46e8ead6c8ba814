"""
Domain errors raised by the project lifecycle, milestone and ledger services.

Each error is an ``APIException`` so it surfaces unchanged through the REST
views with the matching 4xx status. ``error_code`` is the machine-readable tag
added to error bodies by ``clientportal.api.exceptions.portal_exception_handler``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from rest_framework import status
from rest_framework.exceptions import APIException


class ClientPortalError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The request could not be completed.'
    default_code = 'error'
    error_code = 'ERROR'

    def __init__(self, detail: Optional[str] = None, *, extra: Optional[Dict[str, Any]] = None):
        self.extra = extra or {}
        super().__init__(detail=detail)


class NotFound(ClientPortalError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found.'
    default_code = 'not_found'
    error_code = 'NOT_FOUND'


class Forbidden(ClientPortalError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'You do not have permission to perform this action.'
    default_code = 'forbidden'
    error_code = 'FORBIDDEN'


class ValidationError(ClientPortalError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid input.'
    default_code = 'invalid'
    error_code = 'VALIDATION_ERROR'


class InvalidTransition(ClientPortalError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This status change is not allowed from the current state.'
    default_code = 'invalid_transition'
    error_code = 'INVALID_TRANSITION'

    def __init__(self, current: str, target: str, detail: Optional[str] = None):
        self.current = current
        self.target = target
        detail = detail or f"Cannot move project from '{current}' to '{target}'."
        super().__init__(detail, extra={'current_status': current, 'target_status': target})


class OverpaymentError(ClientPortalError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Payment exceeds the remaining invoice balance.'
    default_code = 'overpayment'
    error_code = 'OVERPAYMENT'

    def __init__(self, amount: int, amount_due: int):
        self.amount = amount
        self.amount_due = amount_due
        super().__init__(
            f"Payment of {amount} exceeds the remaining balance of {amount_due}.",
            extra={'amount': amount, 'amount_due': amount_due},
        )


class ConcurrentModificationError(ClientPortalError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'The record was changed by another request. Reload and try again.'
    default_code = 'concurrent_modification'
    error_code = 'CONCURRENT_MODIFICATION'
