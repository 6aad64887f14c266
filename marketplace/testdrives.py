"""Test drive requests for vehicles listed for sale."""

import logging
from datetime import timedelta

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .conf import get_setting
from .exceptions import InvalidTransitionError, TransitionForbiddenError
from .models import TestDriveBooking, User, Vehicle

logger = logging.getLogger(__name__)

# Target status -> who may set it
RESPONSE_PARTIES = {
    'diterima': ('seller',),
    'seller_reschedule': ('seller',),
    'selesai': ('seller',),
    'cancelled': ('seller', 'customer'),
}


def request_test_drive(vehicle_id, customer_id, requested_date, notes=''):
    """
    Ask the seller for a test drive.

    The seller has TESTDRIVE_TIMEOUT_HOURS to respond before the request
    times out.
    """
    now = timezone.now()
    if requested_date <= now:
        raise ValidationError({'requested_date': 'Requested date must be in the future.'})

    customer = User.objects.get(pk=customer_id)
    vehicle = Vehicle.objects.get(pk=vehicle_id)

    if vehicle.listing_kind != 'sale' or vehicle.status != 'available':
        raise ValidationError({'vehicle': 'Test drives are only available for vehicles on sale.'})
    if vehicle.seller_id == customer.pk:
        raise ValidationError({'customer': 'Sellers cannot book a test drive of their own vehicle.'})

    booking = TestDriveBooking.objects.create(
        vehicle=vehicle,
        customer=customer,
        seller_id=vehicle.seller_id,
        requested_date=requested_date,
        notes=notes,
        timeout_at=now + timedelta(hours=get_setting('TESTDRIVE_TIMEOUT_HOURS')),
    )
    logger.info(f"Test drive {booking.pk} requested for vehicle {vehicle.pk} by customer {customer.pk}")
    return booking


def respond_test_drive(booking_id, actor, new_status, requested_date=None, reason=''):
    """
    Move a test drive request to new_status on behalf of actor.

    A reschedule needs a new requested_date and restarts the response timeout.
    """
    with transaction.atomic():
        booking = TestDriveBooking.objects.select_for_update().get(pk=booking_id)

        parties = RESPONSE_PARTIES.get(new_status)
        if new_status == 'diterima' and booking.status == 'seller_reschedule':
            # The customer accepts the seller's new date
            parties = ('customer',)
        if parties is None:
            raise TransitionForbiddenError(f'Test drives cannot be set to "{new_status}" manually.')
        allowed_ids = {booking.seller_id if party == 'seller' else booking.customer_id for party in parties}
        if not actor.is_admin and actor.user_id not in allowed_ids:
            raise TransitionForbiddenError('You are not allowed to change this test drive.')

        if new_status == booking.status or not booking.can_transition_to(new_status):
            raise InvalidTransitionError(
                f'Invalid test drive status transition from {booking.status} to {new_status}.'
            )

        old_status = booking.status
        booking.status = new_status
        if new_status == 'seller_reschedule':
            if requested_date is None or requested_date <= timezone.now():
                raise ValidationError({'requested_date': 'A future date is required to reschedule.'})
            booking.requested_date = requested_date
            booking.timeout_at = timezone.now() + timedelta(hours=get_setting('TESTDRIVE_TIMEOUT_HOURS'))
        elif new_status == 'cancelled':
            booking.cancel_reason = reason
            booking.cancelled_at = timezone.now()
        booking.save()

    logger.info(f"Test drive {booking.pk} status changed: {old_status} -> {new_status}")
    return booking
