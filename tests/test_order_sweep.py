"""
Tests for the time-based order sweep.

Each test passes an explicit ``now`` in the future instead of waiting for
timeouts to elapse.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from marketplace import models
from marketplace.models import Payment, RentalBooking, SaleOrder, TransactionLog
from marketplace.orders import create_rental_booking, create_sale_order
from marketplace.payments import apply_gateway_event, create_payment
from marketplace.settlement import get_seller_balance
from marketplace.sweep import (
    SWEEP_STEPS,
    advance_rental_bookings,
    cancel_expired_sale_orders,
    cancel_stale_rental_bookings,
    complete_overdue_rentals,
    run_sweep,
    timeout_test_drives,
)
from marketplace.testdrives import request_test_drive


def hours_from_now(hours):
    return timezone.now() + timedelta(hours=hours)


@pytest.fixture
def unpaid_rental(rental_vehicle, customer, future):
    return create_rental_booking(customer.pk, rental_vehicle.pk, future(1), future(3))


@pytest.fixture
def paid_rental(unpaid_rental, pay):
    pay(unpaid_rental)
    unpaid_rental.refresh_from_db()
    return unpaid_rental


@pytest.mark.django_db
class TestStaleRentals:

    def test_unpaid_rental_cancelled_after_timeout(self, unpaid_rental):
        cancelled = cancel_stale_rental_bookings(now=hours_from_now(2))

        unpaid_rental.refresh_from_db()
        assert cancelled == [unpaid_rental.pk]
        assert unpaid_rental.status == 'cancelled'
        assert unpaid_rental.cancel_reason == 'Payment timeout'

    def test_recent_rental_kept(self, unpaid_rental):
        assert cancel_stale_rental_bookings(now=hours_from_now(0.5)) == []

        unpaid_rental.refresh_from_db()
        assert unpaid_rental.status == 'pending_payment'

    def test_pending_payment_expired_with_booking(self, unpaid_rental):
        payment = create_payment(unpaid_rental.ref, unpaid_rental.total_price)

        cancel_stale_rental_bookings(now=hours_from_now(2))

        payment.refresh_from_db()
        assert payment.status == 'expired'
        assert payment.expired_at is not None

    def test_late_gateway_success_is_ignored(self, unpaid_rental, seller):
        payment = create_payment(unpaid_rental.ref, unpaid_rental.total_price)
        cancel_stale_rental_bookings(now=hours_from_now(2))

        result = apply_gateway_event(payment.order_id, 'settlement')

        unpaid_rental.refresh_from_db()
        assert result.status == 'expired'
        assert unpaid_rental.status == 'cancelled'
        assert not TransactionLog.objects.exists()
        assert get_seller_balance(seller.pk).pending == Decimal('0.00')

    def test_paid_rental_not_touched(self, paid_rental):
        assert cancel_stale_rental_bookings(now=hours_from_now(2)) == []


@pytest.mark.django_db
class TestExpiredSales:

    def test_unconfirmed_sale_cancelled(self, sale_vehicle, customer):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        cancelled = cancel_expired_sale_orders(now=hours_from_now(25))

        order.refresh_from_db()
        sale_vehicle.refresh_from_db()
        assert cancelled == [order.pk]
        assert order.status == 'cancelled'
        assert sale_vehicle.status == 'available'

    def test_sale_within_deadline_kept(self, sale_vehicle, customer):
        create_sale_order(customer.pk, sale_vehicle.pk)

        assert cancel_expired_sale_orders(now=hours_from_now(23)) == []

    def test_confirmed_sale_kept(self, confirmed_sale):
        assert cancel_expired_sale_orders(now=hours_from_now(25)) == []


@pytest.mark.django_db
class TestTestDriveTimeout:

    def test_unanswered_request_times_out(self, sale_vehicle, customer, future):
        booking = request_test_drive(sale_vehicle.pk, customer.pk, future(2))

        assert timeout_test_drives(now=hours_from_now(3)) == [booking.pk]

        booking.refresh_from_db()
        assert booking.status == 'timeout'

    def test_accepted_request_kept(self, sale_vehicle, customer, future):
        booking = request_test_drive(sale_vehicle.pk, customer.pk, future(2))
        models.TestDriveBooking.objects.filter(pk=booking.pk).update(status='diterima')

        assert timeout_test_drives(now=hours_from_now(3)) == []


@pytest.mark.django_db
class TestRentalProgress:

    def test_rental_starts_at_pickup(self, paid_rental, future):
        assert advance_rental_bookings(now=future(1) + timedelta(minutes=1)) == [paid_rental.pk]

        paid_rental.refresh_from_db()
        assert paid_rental.status == 'berjalan'
        assert paid_rental.actual_pickup_at is not None

    def test_rental_not_started_early(self, paid_rental, future):
        assert advance_rental_bookings(now=future(1) - timedelta(minutes=1)) == []

    def test_paid_rental_moves_to_upcoming(self, paid_rental):
        RentalBooking.objects.filter(pk=paid_rental.pk).update(status='paid')

        advance_rental_bookings(now=hours_from_now(1))

        paid_rental.refresh_from_db()
        assert paid_rental.status == 'akan_datang'

    def test_overdue_rental_completed_and_settled(self, paid_rental, seller, future):
        advance_rental_bookings(now=future(1))

        completed = complete_overdue_rentals(now=future(3))

        paid_rental.refresh_from_db()
        assert completed == [paid_rental.pk]
        assert paid_rental.status == 'selesai'
        assert get_seller_balance(seller.pk).available == Decimal('665000.00')


@pytest.mark.django_db
class TestRunSweep:

    def test_reports_every_step(self):
        results = run_sweep()

        assert set(results) == {name for name, _ in SWEEP_STEPS}
        assert all(value == [] for value in results.values())

    def test_dry_run_changes_nothing(self, unpaid_rental, sale_vehicle, other_customer):
        order = create_sale_order(other_customer.pk, sale_vehicle.pk)

        results = run_sweep(now=hours_from_now(25), dry_run=True)

        assert results['stale_rentals_cancelled'] == [unpaid_rental.pk]
        assert results['expired_sales_cancelled'] == [order.pk]
        assert RentalBooking.objects.get(pk=unpaid_rental.pk).status == 'pending_payment'
        assert SaleOrder.objects.get(pk=order.pk).status == 'pending_confirmation'

    def test_sweep_is_repeatable(self, unpaid_rental):
        create_payment(unpaid_rental.ref, unpaid_rental.total_price)
        later = hours_from_now(2)

        first = run_sweep(now=later)
        second = run_sweep(now=later)

        assert first['stale_rentals_cancelled'] == [unpaid_rental.pk]
        assert second['stale_rentals_cancelled'] == []
        assert Payment.objects.get(rental_booking=unpaid_rental).status == 'expired'
