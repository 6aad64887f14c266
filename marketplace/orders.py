"""
Rental booking and sale order lifecycle.

All status changes go through ``_apply_transition``, which validates the
move against the model's transition table and, in the same transaction,
applies the side effects of the new status:

- sale orders drive the vehicle status (pending_sale, sold, available)
- finished orders (rental selesai, sale completed) release the seller's
  pending funds
- an ``order_status_changed`` signal is sent after commit

Locks are always taken in the order: order row, vehicle row, ledger entry,
seller balance.
"""

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .availability import can_book_rental, can_order_sale
from .conf import get_setting
from .exceptions import ConflictError, InvalidTransitionError, TransitionForbiddenError
from .models import RentalBooking, SaleOrder, TestDriveBooking, User, Vehicle
from .refs import order_ref
from .settlement import promote_to_available
from .signals import emit_on_commit, order_status_changed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who performs an operation: a user id plus the role they act in."""

    user_id: int
    role: str

    @classmethod
    def from_user(cls, user):
        role = 'admin' if user.is_platform_admin() else user.role
        return cls(user_id=user.pk, role=role)

    @property
    def is_system(self):
        return self.role == 'system'

    @property
    def is_admin(self):
        return self.role == 'admin'


SYSTEM = Actor(user_id=None, role='system')

# Statuses only the engine itself may set (payment success and its follow-ups)
SYSTEM_ONLY_TARGETS = ('paid', 'akan_datang', 'document_processing')

# Which parties of the order may move it to a target status. Admins and the
# system are always allowed.
TRANSITION_PARTIES = {
    ('rental', 'berjalan'): ('seller',),
    ('rental', 'selesai'): ('seller',),
    ('rental', 'cancelled'): ('customer', 'seller'),
    ('sale', 'pending_payment'): ('seller',),
    ('sale', 'rejected'): ('seller',),
    ('sale', 'cancelled'): ('customer',),
    ('sale', 'completed'): ('customer',),
}


def _party_ids(order, parties):
    ids = set()
    for party in parties:
        ids.add(order.customer_party_id if party == 'customer' else order.seller_id)
    return ids


def authorize_transition(order, target, actor):
    """
    Check that actor may move order to target.

    Raises:
        TransitionForbiddenError: If the actor is not allowed
    """
    if actor.is_system:
        return

    if target in SYSTEM_ONLY_TARGETS:
        raise TransitionForbiddenError(f'Status "{target}" is set by the payment system only.')

    parties = TRANSITION_PARTIES.get((order.ORDER_KIND, target))
    if parties is None:
        raise TransitionForbiddenError(f'No one may set {order.ORDER_KIND} orders to "{target}".')

    if actor.is_admin:
        return

    if actor.user_id not in _party_ids(order, parties):
        logger.warning(
            f"Forbidden transition attempt on {order.order_id}: "
            f"user {actor.user_id} ({actor.role}) tried {order.status} -> {target}"
        )
        raise TransitionForbiddenError(
            f'Only the order\'s {" or ".join(parties)} can set it to "{target}".'
        )


def _lock_vehicle(order):
    return Vehicle.objects.select_for_update().get(pk=order.vehicle_id)


def _set_vehicle_status(vehicle, new_status):
    if vehicle.status == new_status:
        return
    old_status = vehicle.status
    vehicle.status = new_status
    vehicle.save(update_fields=['status', 'updated_at'])
    logger.info(f"Vehicle {vehicle.pk} status changed: {old_status} -> {new_status}")


def _stamp_rental(order, target, now, reason):
    if target == 'paid' and order.paid_at is None:
        order.paid_at = now
    elif target == 'berjalan':
        order.actual_pickup_at = now
    elif target == 'selesai':
        order.actual_return_at = now
        order.completed_at = now
    elif target == 'cancelled':
        order.cancelled_at = now
        order.cancel_reason = reason


def _stamp_sale(order, target, now, reason):
    if target == 'pending_payment':
        order.confirmed_at = now
    elif target == 'paid' and order.paid_at is None:
        order.paid_at = now
    elif target == 'document_processing':
        order.document_transfer_started_at = now
    elif target == 'completed':
        order.completed_at = now
    elif target == 'cancelled':
        order.cancelled_at = now
        order.cancel_reason = reason
    elif target == 'rejected':
        order.rejected_at = now
        order.reject_reason = reason


def _apply_sale_vehicle_effects(order, target):
    """Keep the vehicle status in line with the sale order's new status."""
    if target == 'paid':
        _set_vehicle_status(_lock_vehicle(order), 'pending_sale')
    elif target == 'completed':
        _set_vehicle_status(_lock_vehicle(order), 'sold')
    elif target in ('cancelled', 'rejected'):
        vehicle = _lock_vehicle(order)
        if vehicle.status != 'sold':
            _set_vehicle_status(vehicle, 'available')


def _apply_transition(order, target, actor, reason='', now=None):
    """
    Move a locked order to target and apply the side effects.

    Must be called inside transaction.atomic() with the order row locked.
    Authorization is the caller's job.
    """
    if now is None:
        now = timezone.now()

    if order.status == target:
        raise InvalidTransitionError(f'{order.order_id} is already {target}.')

    is_valid, message = order.can_transition_to(target, current_time=now)
    if not is_valid:
        raise InvalidTransitionError(message)

    reason = (reason or '').strip()
    if target in ('cancelled', 'rejected') and not reason:
        raise ValidationError({'reason': f'A reason is required to set an order to {target}.'})

    old_status = order.status
    if order.ORDER_KIND == 'rental':
        _stamp_rental(order, target, now, reason)
    else:
        _stamp_sale(order, target, now, reason)
    order.status = target
    order.save()

    if order.ORDER_KIND == 'sale':
        _apply_sale_vehicle_effects(order, target)

    if target in ('selesai', 'completed'):
        promote_to_available(order.seller_id, order.ref)

    logger.info(
        f"{order.ORDER_KIND.capitalize()} order {order.order_id} status changed: "
        f"{old_status} -> {target} by {actor.role} (user {actor.user_id})"
    )
    emit_on_commit(
        order_status_changed,
        sender=type(order),
        ref=order.ref,
        order_id=order.order_id,
        old_status=old_status,
        new_status=target,
        actor_role=actor.role,
        reason=reason,
    )
    return order


def lock_order(ref):
    """Fetch the order for ref with its row locked; call inside transaction.atomic()."""
    return ref.model.objects.select_for_update().get(pk=ref.id)


def transition_order(ref, target, actor, reason=''):
    """
    Move an order to a new status on behalf of actor.

    Args:
        ref: RentalRef or SaleRef
        target: Requested status
        actor: Actor performing the change
        reason: Required for cancelled and rejected

    Raises:
        TransitionForbiddenError: Actor is not allowed to set target
        InvalidTransitionError: target is not reachable from the current status
        ValidationError: Missing reason
    """
    with transaction.atomic():
        order = lock_order(ref)
        authorize_transition(order, target, actor)

        if (
            target == 'cancelled'
            and order.status in order.PAID_STATUSES
            and not order.is_terminal()
            and not actor.is_system
        ):
            raise InvalidTransitionError(
                f'{order.order_id} has been paid; it can only be cancelled through a refund.'
            )

        if (
            target == 'pending_payment'
            and order.ORDER_KIND == 'sale'
            and order.counter_offer_price is not None
        ):
            raise InvalidTransitionError(
                f'{order.order_id} has an open counter offer of {order.counter_offer_price}; '
                f'only the buyer can accept it.'
            )

        return _apply_transition(order, target, actor, reason=reason)


def mark_order_paid(order, paid_at=None):
    """
    Record payment success on a locked order and move it to its post-payment status.

    Rentals continue to akan_datang and sales to document_processing in the
    same transaction.
    """
    now = paid_at or timezone.now()
    order.paid_at = now
    _apply_transition(order, 'paid', SYSTEM, now=now)
    follow_on = 'akan_datang' if order.ORDER_KIND == 'rental' else 'document_processing'
    _apply_transition(order, follow_on, SYSTEM, now=now)
    return order


def cancel_for_refund(order, reason):
    """Cancel a locked order as part of a refund; terminal orders are left as they are."""
    if order.is_terminal():
        return order
    return _apply_transition(order, 'cancelled', SYSTEM, reason=reason)


def _rental_days(pickup_date, return_date):
    """Number of started days between pickup and return, at least 1."""
    seconds = (return_date - pickup_date).total_seconds()
    return max(1, math.ceil(seconds / timedelta(days=1).total_seconds()))


def create_rental_booking(customer_id, vehicle_id, pickup_date, return_date, notes=''):
    """
    Book a rental vehicle for [pickup_date, return_date).

    The vehicle row is locked while availability is checked and the booking
    is inserted, so two overlapping requests cannot both succeed.

    Raises:
        ValidationError: Invalid dates, wrong listing kind or self-booking
        ConflictError: The vehicle is not available for the window
    """
    if return_date <= pickup_date:
        raise ValidationError({'return_date': 'Return date must be after pickup date.'})
    if pickup_date <= timezone.now():
        raise ValidationError({'pickup_date': 'Pickup date must be in the future.'})

    customer = User.objects.get(pk=customer_id)

    with transaction.atomic():
        vehicle = Vehicle.objects.select_for_update().get(pk=vehicle_id)

        if vehicle.listing_kind != 'rental':
            raise ValidationError({'vehicle': 'This vehicle is not listed for rent.'})

        if not can_book_rental(vehicle, pickup_date, return_date):
            logger.warning(
                f"Rental conflict on vehicle {vehicle.pk} for {pickup_date.isoformat()} - "
                f"{return_date.isoformat()} (customer {customer.pk})"
            )
            raise ConflictError('The vehicle is already booked for the requested dates.')

        total_days = _rental_days(pickup_date, return_date)
        booking = RentalBooking(
            vehicle=vehicle,
            customer=customer,
            seller_id=vehicle.seller_id,
            pickup_date=pickup_date,
            return_date=return_date,
            total_days=total_days,
            price_per_day=vehicle.price,
            total_price=vehicle.price * total_days,
            notes=notes,
        )
        booking.save()

    logger.info(
        f"Rental booking {booking.order_id} created: vehicle {vehicle.pk}, "
        f"customer {customer.pk}, {total_days} day(s), total {booking.total_price}"
    )
    emit_on_commit(
        order_status_changed,
        sender=RentalBooking,
        ref=booking.ref,
        order_id=booking.order_id,
        old_status=None,
        new_status=booking.status,
        actor_role='customer',
        reason='',
    )
    return booking


def create_sale_order(buyer_id, vehicle_id, offer_price=None, buyer_notes='', testdrive_booking_id=None):
    """
    Place a purchase order on a vehicle listed for sale.

    The seller must confirm before the confirmation deadline, otherwise the
    background sweep cancels the order.

    Raises:
        ValidationError: Wrong listing kind, invalid offer or test drive
        ConflictError: The vehicle is not available or already has an order in progress
    """
    if offer_price is not None:
        offer_price = Decimal(offer_price)
        if offer_price <= 0:
            raise ValidationError({'offer_price': 'Offer price must be greater than 0.'})

    buyer = User.objects.get(pk=buyer_id)

    with transaction.atomic():
        vehicle = Vehicle.objects.select_for_update().get(pk=vehicle_id)

        if vehicle.listing_kind != 'sale':
            raise ValidationError({'vehicle': 'This vehicle is not listed for sale.'})

        if not can_order_sale(vehicle):
            logger.warning(f"Sale conflict on vehicle {vehicle.pk} (buyer {buyer.pk})")
            raise ConflictError('The vehicle is not available for purchase.')

        testdrive = None
        if testdrive_booking_id is not None:
            testdrive = TestDriveBooking.objects.filter(
                pk=testdrive_booking_id,
                vehicle=vehicle,
                customer=buyer,
                status__in=['diterima', 'selesai'],
            ).first()
            if testdrive is None:
                raise ValidationError({
                    'testdrive_booking': 'Test drive must be an accepted or finished test drive of this vehicle by the buyer.'
                })

        order = SaleOrder(
            vehicle=vehicle,
            buyer=buyer,
            seller_id=vehicle.seller_id,
            testdrive_booking=testdrive,
            asking_price=vehicle.price,
            offer_price=offer_price,
            final_price=offer_price or vehicle.price,
            buyer_notes=buyer_notes,
            confirmation_deadline=timezone.now() + timedelta(
                hours=get_setting('SALE_CONFIRMATION_TIMEOUT_HOURS')
            ),
        )
        order.save()

    logger.info(
        f"Sale order {order.order_id} created: vehicle {vehicle.pk}, buyer {buyer.pk}, "
        f"final price {order.final_price}"
    )
    emit_on_commit(
        order_status_changed,
        sender=SaleOrder,
        ref=order.ref,
        order_id=order.order_id,
        old_status=None,
        new_status=order.status,
        actor_role='customer',
        reason='',
    )
    return order


def counter_offer(sale_order_id, actor, price, notes=''):
    """
    Seller proposes a different price while the order awaits confirmation.

    Only counter_offer_price is stored. The order stays in
    pending_confirmation at its current final_price until the buyer accepts
    with ``accept_counter_offer``; a newer counter offer replaces the open one.
    """
    price = Decimal(price)
    if price <= 0:
        raise ValidationError({'price': 'Counter offer price must be greater than 0.'})

    with transaction.atomic():
        order = lock_order(order_ref('sale', sale_order_id))

        if not actor.is_admin and actor.user_id != order.seller_id:
            raise TransitionForbiddenError('Only the seller can make a counter offer.')
        if order.status != 'pending_confirmation':
            raise InvalidTransitionError('Counter offers are only possible before the seller confirms.')

        order.counter_offer_price = price
        if notes:
            order.seller_notes = notes
        order.save()

    logger.info(f"Counter offer on {order.order_id}: {price} (final price still {order.final_price})")
    return order


def accept_counter_offer(sale_order_id, actor):
    """
    Buyer agrees to the seller's counter offer.

    The counter price becomes the final price and the order moves to
    pending_payment in one step.

    Raises:
        TransitionForbiddenError: actor is not the order's buyer
        InvalidTransitionError: No open counter offer on the order
    """
    with transaction.atomic():
        order = lock_order(order_ref('sale', sale_order_id))

        if actor.user_id != order.buyer_id:
            raise TransitionForbiddenError('Only the buyer can accept a counter offer.')
        if order.status != 'pending_confirmation' or order.counter_offer_price is None:
            raise InvalidTransitionError(f'{order.order_id} has no open counter offer.')

        order.final_price = order.counter_offer_price
        _apply_transition(order, 'pending_payment', actor)

    logger.info(f"Counter offer on {order.order_id} accepted at {order.final_price}")
    return order


def mark_documents_transferred(sale_order_id, actor, documents):
    """
    Set document transfer flags on a sale order in document_processing.

    Args:
        documents: Iterable of flag names from SaleOrder.DOCUMENT_FIELDS

    Returns:
        The updated order; completion is a separate transition
    """
    documents = list(documents)
    unknown = [name for name in documents if name not in SaleOrder.DOCUMENT_FIELDS]
    if unknown or not documents:
        raise ValidationError({
            'documents': f'Expected one or more of {", ".join(SaleOrder.DOCUMENT_FIELDS)}.'
        })

    with transaction.atomic():
        order = lock_order(order_ref('sale', sale_order_id))

        if not (actor.is_admin or actor.is_system) and actor.user_id != order.seller_id:
            raise TransitionForbiddenError('Only the seller can record document transfers.')
        if order.status != 'document_processing':
            raise InvalidTransitionError(
                f'Documents can only be recorded while the order is in document_processing (now {order.status}).'
            )

        for name in documents:
            setattr(order, name, True)
        order.save()

    logger.info(
        f"Documents transferred on {order.order_id}: {', '.join(documents)}; "
        f"missing: {', '.join(order.missing_documents()) or 'none'}"
    )
    return order
