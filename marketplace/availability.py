"""
Availability checks for rentals and sales.

These functions only read. Order creation calls them after locking the
vehicle row, inside the same transaction as the insert, so the answer cannot
change before the new order is written.
"""

import logging

from django.core.exceptions import ValidationError

from .models import RentalBooking, SaleOrder, Vehicle

logger = logging.getLogger(__name__)


def overlaps(a_start, a_end, b_start, b_end):
    """True if the half-open intervals [a_start, a_end) and [b_start, b_end) intersect."""
    return a_start < b_end and b_start < a_end


def conflicting_rentals(vehicle, pickup_date, return_date, exclude_pk=None):
    """Active bookings on vehicle that overlap [pickup_date, return_date)."""
    queryset = RentalBooking.objects.filter(
        vehicle=vehicle,
        status__in=RentalBooking.ACTIVE_STATUSES,
        pickup_date__lt=return_date,
        return_date__gt=pickup_date,
    )
    if exclude_pk is not None:
        queryset = queryset.exclude(pk=exclude_pk)
    return queryset


def can_book_rental(vehicle, pickup_date, return_date):
    """
    Check whether vehicle can be rented for [pickup_date, return_date).

    The vehicle must be listed for rent and not sold, and no booking in a
    non-terminal state may overlap the window. A booking that returns exactly
    when the new one picks up does not overlap.

    Raises:
        ValidationError: If return_date is not after pickup_date
    """
    if return_date <= pickup_date:
        raise ValidationError({'return_date': 'Return date must be after pickup date.'})

    if vehicle.listing_kind != 'rental' or vehicle.status == 'sold':
        return False

    return not conflicting_rentals(vehicle, pickup_date, return_date).exists()


def can_order_sale(vehicle):
    """
    Check whether a new sale order may be placed on vehicle.

    The vehicle must be listed for sale, still available, and have no sale
    order in progress.
    """
    if vehicle.listing_kind != 'sale' or vehicle.status != 'available':
        return False

    return not SaleOrder.objects.filter(
        vehicle=vehicle,
        status__in=SaleOrder.ACTIVE_STATUSES,
    ).exists()


def check_availability(vehicle_id, kind, window=None):
    """
    Dispatch to the rental or sale check.

    Args:
        vehicle_id: Vehicle primary key
        kind: 'rental' or 'sale'
        window: (pickup_date, return_date) tuple, required for rentals

    Returns:
        bool: False for unknown vehicles
    """
    try:
        vehicle = Vehicle.objects.get(pk=vehicle_id)
    except Vehicle.DoesNotExist:
        logger.info(f"Availability requested for unknown vehicle {vehicle_id}")
        return False

    if kind == 'rental':
        if window is None:
            raise ValidationError({'window': 'A pickup and return date are required for rentals.'})
        pickup_date, return_date = window
        return can_book_rental(vehicle, pickup_date, return_date)

    if kind == 'sale':
        return can_order_sale(vehicle)

    raise ValidationError({'kind': f'Unknown order kind "{kind}". Expected "rental" or "sale".'})
