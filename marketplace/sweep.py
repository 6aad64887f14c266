"""
Time-based order housekeeping, run periodically by ``manage.py run_order_sweep``.

Every row is handled in its own transaction with the row locked, and its
status is checked again after locking, so the sweep can run while users and
the payment gateway are changing the same orders.
"""

import logging
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from .conf import get_setting
from .exceptions import InvalidTransitionError
from .models import Payment, RentalBooking, SaleOrder, TestDriveBooking
from .orders import SYSTEM, _apply_transition, lock_order
from .refs import order_ref
from .signals import emit_on_commit, payment_status_changed

logger = logging.getLogger(__name__)


def _sweep_orders(queryset, target, reason, now, dry_run, expected_status):
    """Move every order in queryset that is still in expected_status to target."""
    order_ids = list(queryset.values_list('pk', flat=True))
    if dry_run:
        return order_ids

    done = []
    for pk in order_ids:
        ref = order_ref(queryset.model.ORDER_KIND, pk)
        try:
            with transaction.atomic():
                order = lock_order(ref)
                if order.status != expected_status:
                    continue
                _apply_transition(order, target, SYSTEM, reason=reason, now=now)
                done.append(pk)
        except InvalidTransitionError as exc:
            logger.warning(f"Sweep skipped {ref.kind} order {pk}: {exc}")
    return done


def cancel_stale_rental_bookings(now=None, dry_run=False):
    """Cancel rentals left in pending_payment past the payment timeout; expire their pending payments."""
    now = now or timezone.now()
    cutoff = now - timedelta(minutes=get_setting('RENTAL_PAYMENT_TIMEOUT_MINUTES'))
    candidates = list(
        RentalBooking.objects.filter(status='pending_payment', created_at__lt=cutoff)
        .values_list('pk', flat=True)
    )
    if dry_run:
        return candidates

    cancelled = []
    for pk in candidates:
        with transaction.atomic():
            # Payments are locked before the order, as in the payment ledger
            payments = list(
                Payment.objects.select_for_update().filter(rental_booking_id=pk, status='pending')
            )
            order = RentalBooking.objects.select_for_update().get(pk=pk)
            if order.status != 'pending_payment':
                continue

            for payment in payments:
                payment.status = 'expired'
                payment.expired_at = now
                payment.save()
                emit_on_commit(
                    payment_status_changed,
                    sender=Payment,
                    payment_id=payment.pk,
                    order_id=payment.order_id,
                    ref=payment.target,
                    old_status='pending',
                    new_status='expired',
                )

            _apply_transition(order, 'cancelled', SYSTEM, reason='Payment timeout', now=now)
            cancelled.append(pk)
    return cancelled


def cancel_expired_sale_orders(now=None, dry_run=False):
    """Cancel sale orders the seller did not confirm before the deadline."""
    now = now or timezone.now()
    queryset = SaleOrder.objects.filter(
        status='pending_confirmation',
        confirmation_deadline__isnull=False,
        confirmation_deadline__lt=now,
    )
    return _sweep_orders(
        queryset, 'cancelled', 'Seller did not confirm in time', now, dry_run, 'pending_confirmation'
    )


def timeout_test_drives(now=None, dry_run=False):
    """Mark unanswered test drive requests as timed out."""
    now = now or timezone.now()
    candidates = list(
        TestDriveBooking.objects.filter(
            status__in=TestDriveBooking.AWAITING_STATUSES,
            timeout_at__isnull=False,
            timeout_at__lt=now,
        ).values_list('pk', flat=True)
    )
    if dry_run:
        return candidates

    timed_out = []
    for pk in candidates:
        with transaction.atomic():
            booking = TestDriveBooking.objects.select_for_update().get(pk=pk)
            if booking.status not in TestDriveBooking.AWAITING_STATUSES:
                continue
            booking.status = 'timeout'
            booking.save(update_fields=['status', 'updated_at'])
            timed_out.append(pk)
            logger.info(f"Test drive {pk} timed out")
    return timed_out


def advance_rental_bookings(now=None, dry_run=False):
    """Move paid rentals to akan_datang and start those whose pickup time has come."""
    now = now or timezone.now()
    upcoming = _sweep_orders(
        RentalBooking.objects.filter(status='paid'), 'akan_datang', '', now, dry_run, 'paid'
    )
    started = _sweep_orders(
        RentalBooking.objects.filter(status='akan_datang', pickup_date__lte=now),
        'berjalan', '', now, dry_run, 'akan_datang',
    )
    return upcoming + started


def complete_overdue_rentals(now=None, dry_run=False):
    """Finish rentals whose return date has passed, which settles the seller's funds."""
    now = now or timezone.now()
    return _sweep_orders(
        RentalBooking.objects.filter(status='berjalan', return_date__lte=now),
        'selesai', '', now, dry_run, 'berjalan',
    )


SWEEP_STEPS = (
    ('stale_rentals_cancelled', cancel_stale_rental_bookings),
    ('expired_sales_cancelled', cancel_expired_sale_orders),
    ('test_drives_timed_out', timeout_test_drives),
    ('rentals_advanced', advance_rental_bookings),
    ('rentals_completed', complete_overdue_rentals),
)


def run_sweep(now=None, dry_run=False):
    """
    Run all sweep steps in order.

    Returns:
        dict mapping step name to the list of affected primary keys
    """
    now = now or timezone.now()
    results = {}
    for name, step in SWEEP_STEPS:
        results[name] = step(now=now, dry_run=dry_run)
        if results[name]:
            logger.info(f"Sweep step {name}: {len(results[name])} row(s){' (dry run)' if dry_run else ''}")
    return results
