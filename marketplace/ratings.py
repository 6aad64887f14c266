"""
Vehicle rating aggregation and review handling.

A vehicle's rating is the average overall rating of its visible reviews,
rounded to 2 decimals, and 0.00 when there are none. It is recomputed
explicitly, in the same transaction, every time a review is created,
changed or hidden.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Avg, Count

from .exceptions import ConflictError, InvalidTransitionError, TransitionForbiddenError
from .models import Review, Vehicle

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = {
    'rental': 'selesai',
    'sale': 'completed',
}

RATING_FIELDS = ('overall_rating', 'vehicle_condition_rating', 'accuracy_rating', 'service_rating')


def rating_stats(vehicle_id):
    """Average and count of the vehicle's visible reviews."""
    stats = Review.objects.filter(vehicle_id=vehicle_id, is_visible=True).aggregate(
        avg=Avg('overall_rating'),
        total=Count('id'),
    )
    if stats['avg'] is None:
        return Decimal('0.00'), 0
    average = Decimal(str(stats['avg'])).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    return average, stats['total']


def recalculate_vehicle_rating(vehicle_id):
    """
    Recompute rating and review_count of a vehicle.

    Locks the vehicle row so concurrent review writes do not interleave.

    Returns:
        The updated Vehicle
    """
    with transaction.atomic():
        vehicle = Vehicle.objects.select_for_update().get(pk=vehicle_id)
        average, total = rating_stats(vehicle_id)

        if vehicle.rating != average or vehicle.review_count != total:
            vehicle.rating = average
            vehicle.review_count = total
            vehicle.save(update_fields=['rating', 'review_count', 'updated_at'])

    logger.info(f"Recalculated rating for vehicle {vehicle_id}: {average} from {total} review(s)")
    return vehicle


def submit_review(actor, ref, overall_rating, comment='', **detail_ratings):
    """
    Review a finished order.

    Only the order's customer (renter or buyer) may review, only once, and
    only after the rental is done or the sale completed.

    Raises:
        TransitionForbiddenError: Actor is not the order's customer
        InvalidTransitionError: Order not finished
        ConflictError: Order already reviewed
    """
    unknown = set(detail_ratings) - set(RATING_FIELDS[1:])
    if unknown:
        raise ValidationError({field: 'Unknown rating field.' for field in unknown})

    order = ref.model.objects.get(pk=ref.id)

    if actor.user_id != order.customer_party_id:
        raise TransitionForbiddenError('Only the customer of the order can review it.')

    if order.status != REVIEWABLE_STATUSES[ref.kind]:
        raise InvalidTransitionError(f'{order.order_id} cannot be reviewed before it is finished.')

    try:
        with transaction.atomic():
            if Review.objects.filter(**ref.filter_kwargs()).exists():
                raise ConflictError(f'{order.order_id} has already been reviewed.')

            review = Review(
                review_for_type=ref.kind,
                vehicle_id=order.vehicle_id,
                seller_id=order.seller_id,
                customer_id=order.customer_party_id,
                overall_rating=overall_rating,
                comment=comment,
                **detail_ratings,
                **ref.filter_kwargs(),
            )
            review.save()
            recalculate_vehicle_rating(order.vehicle_id)
    except IntegrityError:
        # Lost a race against another review of the same order
        raise ConflictError(f'{order.order_id} has already been reviewed.')

    logger.info(
        f"Review {review.pk} created for {order.order_id}: vehicle {order.vehicle_id}, "
        f"rating {overall_rating}"
    )
    return review


def update_review(review_id, actor, **changes):
    """Change ratings or comment of a review written by actor."""
    allowed = set(RATING_FIELDS) | {'comment'}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError({field: 'This field cannot be changed.' for field in unknown})

    with transaction.atomic():
        review = Review.objects.select_for_update().get(pk=review_id)
        if actor.user_id != review.customer_id:
            raise TransitionForbiddenError('You can only edit your own reviews.')

        for field, value in changes.items():
            setattr(review, field, value)
        review.save()
        recalculate_vehicle_rating(review.vehicle_id)

    logger.info(f"Review {review.pk} updated: {', '.join(sorted(changes))}")
    return review


def set_review_visibility(review_id, is_visible, actor):
    """Hide or show a review (administrators only)."""
    if not (actor.is_admin or actor.is_system):
        raise TransitionForbiddenError('Only administrators can moderate reviews.')

    with transaction.atomic():
        review = Review.objects.select_for_update().get(pk=review_id)
        review.is_visible = is_visible
        review.save(update_fields=['is_visible', 'updated_at'])
        recalculate_vehicle_rating(review.vehicle_id)

    logger.info(f"Review {review.pk} visibility set to {is_visible}")
    return review
