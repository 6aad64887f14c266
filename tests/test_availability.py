"""
Tests for rental and sale availability checks.

Tests cover:
- Half-open window overlap (touching bookings allowed)
- Terminal bookings freeing the window
- Sale singularity (one order in progress per vehicle)
- Dispatch through check_availability
"""

from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from marketplace.availability import can_book_rental, can_order_sale, check_availability, overlaps
from marketplace.exceptions import ConflictError
from marketplace.models import RentalBooking, SaleOrder, Vehicle
from marketplace.orders import SYSTEM, create_rental_booking, create_sale_order, transition_order


def test_overlaps_is_symmetric_and_half_open(future):
    day1, day2, day3, day4 = future(1), future(2), future(3), future(4)

    assert overlaps(day1, day3, day2, day4)
    assert overlaps(day2, day4, day1, day3)
    assert not overlaps(day1, day2, day2, day3)
    assert not overlaps(day2, day3, day1, day2)


@pytest.mark.django_db
class TestRentalAvailability:

    def test_free_vehicle_is_available(self, rental_vehicle, future):
        assert can_book_rental(rental_vehicle, future(1), future(3))

    def test_overlapping_rental_rejected(self, rental_vehicle, customer, other_customer, future):
        create_rental_booking(customer.pk, rental_vehicle.pk, future(1), future(3))

        assert not can_book_rental(rental_vehicle, future(2), future(4))
        with pytest.raises(ConflictError) as exc_info:
            create_rental_booking(other_customer.pk, rental_vehicle.pk, future(2), future(4))

        assert exc_info.value.get_codes() == 'unavailable'
        assert RentalBooking.objects.filter(vehicle=rental_vehicle).count() == 1

    def test_touching_boundaries_allowed(self, rental_vehicle, customer, other_customer, future):
        create_rental_booking(customer.pk, rental_vehicle.pk, future(1), future(3))

        booking = create_rental_booking(other_customer.pk, rental_vehicle.pk, future(3), future(5))

        assert booking.status == 'pending_payment'

    def test_window_inside_existing_booking_rejected(self, rental_vehicle, customer, future):
        create_rental_booking(customer.pk, rental_vehicle.pk, future(1), future(5))

        assert not can_book_rental(rental_vehicle, future(2), future(3))

    def test_cancelled_booking_frees_window(self, rental_vehicle, customer, other_customer, future):
        booking = create_rental_booking(customer.pk, rental_vehicle.pk, future(1), future(3))
        transition_order(booking.ref, 'cancelled', SYSTEM, reason='Changed plans')

        assert can_book_rental(rental_vehicle, future(2), future(4))

    def test_return_before_pickup_is_validation_error(self, rental_vehicle, future):
        with pytest.raises(ValidationError):
            can_book_rental(rental_vehicle, future(3), future(1))

    def test_sale_vehicle_cannot_be_rented(self, sale_vehicle, future):
        assert not can_book_rental(sale_vehicle, future(1), future(2))


@pytest.mark.django_db
class TestSaleAvailability:

    def test_available_sale_vehicle(self, sale_vehicle):
        assert can_order_sale(sale_vehicle)

    def test_only_one_order_in_progress(self, sale_vehicle, customer, other_customer):
        create_sale_order(customer.pk, sale_vehicle.pk)

        assert not can_order_sale(sale_vehicle)
        with pytest.raises(ConflictError):
            create_sale_order(other_customer.pk, sale_vehicle.pk)
        assert SaleOrder.objects.filter(vehicle=sale_vehicle).count() == 1

    def test_rejected_order_frees_vehicle(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk)
        transition_order(order.ref, 'rejected', SYSTEM, reason='Price too low')

        assert can_order_sale(sale_vehicle)

    def test_sold_vehicle_unavailable(self, seller):
        vehicle = Vehicle.objects.create(
            seller=seller, title='Sold car', listing_kind='sale', price=Decimal('10.00'), status='sold'
        )

        assert not can_order_sale(vehicle)


@pytest.mark.django_db
class TestCheckAvailability:

    def test_dispatches_by_kind(self, rental_vehicle, sale_vehicle, future):
        assert check_availability(rental_vehicle.pk, 'rental', window=(future(1), future(2)))
        assert check_availability(sale_vehicle.pk, 'sale')

    def test_unknown_vehicle_is_unavailable(self):
        assert check_availability(999999, 'sale') is False

    def test_rental_requires_window(self, rental_vehicle):
        with pytest.raises(ValidationError):
            check_availability(rental_vehicle.pk, 'rental')

    def test_unknown_kind(self, rental_vehicle):
        with pytest.raises(ValidationError):
            check_availability(rental_vehicle.pk, 'lease')
