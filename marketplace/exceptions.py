"""
Errors raised by the transaction engine and their mapping to HTTP responses.

The engine raises these from service functions; views let them propagate and
``exception_handler`` turns them (and Django's own ValidationError and
ObjectDoesNotExist) into DRF responses.
"""

import logging

from django.core.exceptions import ObjectDoesNotExist, ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class ConflictError(APIException):
    """The requested resource is taken, e.g. overlapping rental or duplicate payment."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'The requested resource is not available.'
    default_code = 'unavailable'


class InvalidTransitionError(APIException):
    """Status change not allowed from the order's current state."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Invalid status transition.'
    default_code = 'invalid_transition'


class TransitionForbiddenError(APIException):
    """The actor is not a party allowed to perform the transition."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'You are not allowed to perform this status change.'
    default_code = 'transition_forbidden'


class InsufficientFundsError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Insufficient available balance.'
    default_code = 'insufficient_funds'

    def __init__(self, available, requested):
        self.available = available
        self.requested = requested
        self.shortfall = requested - available
        super().__init__({
            'detail': (
                f'Insufficient available balance: {available} available, '
                f'{requested} requested.'
            ),
            'available': str(available),
            'requested': str(requested),
            'shortfall': str(self.shortfall),
        })


class ReconciliationRequiredError(APIException):
    """
    The operation cannot be completed automatically.

    A ReconciliationCase has been opened for manual handling; ``case_id``
    points at it.
    """

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Manual reconciliation is required.'
    default_code = 'reconciliation_required'

    def __init__(self, detail=None, case_id=None):
        self.case_id = case_id
        super().__init__({
            'detail': detail or self.default_detail,
            'reconciliation_case': case_id,
        })


class DuplicateEventError(Exception):
    """A gateway event for a payment that already reached a terminal status."""

    def __init__(self, payment_order_id, current_status):
        self.payment_order_id = payment_order_id
        self.current_status = current_status
        super().__init__(
            f'Payment {payment_order_id} is already {current_status}; event ignored.'
        )


def exception_handler(exc, context):
    """
    DRF exception handler.

    Adds handling for Django's ValidationError (400) and ObjectDoesNotExist
    (404) on top of DRF's default handler.
    """
    view = context.get('view')
    view_name = view.__class__.__name__ if view else 'unknown'

    if isinstance(exc, DjangoValidationError):
        if hasattr(exc, 'error_dict'):
            data = exc.message_dict
        else:
            data = {'detail': exc.messages}
        logger.warning(f"Validation error in {view_name}: {data}")
        return Response(data, status=status.HTTP_400_BAD_REQUEST)

    if isinstance(exc, ObjectDoesNotExist):
        logger.warning(f"Object not found in {view_name}: {exc}")
        return Response({'detail': str(exc) or 'Not found.'}, status=status.HTTP_404_NOT_FOUND)

    response = drf_exception_handler(exc, context)
    if response is not None and response.status_code >= 409:
        logger.warning(f"{exc.__class__.__name__} in {view_name}: {exc.detail}")
    return response
