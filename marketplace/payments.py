"""
Payment ledger.

A Payment belongs to exactly one order (see ``refs.OrderRef``). Gateway
events are applied idempotently: the payment row is locked, and an event for
a payment that already reached a final status changes nothing. A successful
payment, its commission split, the seller's pending credit and the order's
move to ``paid`` are written in one transaction.

Lock order: payment, order, vehicle, ledger entry, seller balance.
"""

import base64
import hashlib
import hmac
import logging
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .commission import calculate_commission, parse_amount
from .conf import get_setting
from .exceptions import (
    ConflictError,
    DuplicateEventError,
    InvalidTransitionError,
    ReconciliationRequiredError,
    TransitionForbiddenError,
)
from .models import Payment, ReconciliationCase, TransactionLog, generate_order_number
from .orders import cancel_for_refund, lock_order, mark_order_paid
from .settlement import credit_pending, reverse_pending
from .signals import emit_on_commit, payment_status_changed, reconciliation_required

logger = logging.getLogger(__name__)

# Gateway transaction statuses mapped to payment statuses; None means "no change"
GATEWAY_STATUS_MAP = {
    'success': 'success',
    'settlement': 'success',
    'capture': 'success',
    'failed': 'failed',
    'deny': 'failed',
    'cancel': 'failed',
    'failure': 'failed',
    'expired': 'expired',
    'expire': 'expired',
    'pending': None,
}


def create_payment(ref, gross_amount):
    """
    Open a pending payment for an order awaiting payment.

    Args:
        ref: RentalRef or SaleRef
        gross_amount: Must equal the order's payable amount

    Returns:
        Payment with a new PAY-... idempotency key

    Raises:
        InvalidTransitionError: The order is not in pending_payment
        ValidationError: Wrong amount
        ConflictError: The order already has a pending or successful payment
    """
    gross_amount = parse_amount(gross_amount, 'gross_amount')
    if gross_amount <= 0:
        raise ValidationError({'gross_amount': 'Amount must be greater than 0.'})

    with transaction.atomic():
        order = lock_order(ref)

        if order.status != 'pending_payment':
            raise InvalidTransitionError(f'{order.order_id} is not awaiting payment (status {order.status}).')

        if gross_amount != order.payable_amount:
            raise ValidationError({
                'gross_amount': f'Amount {gross_amount} does not match the order total {order.payable_amount}.'
            })

        live = Payment.objects.filter(status__in=['pending', 'success'], **ref.filter_kwargs()).first()
        if live is not None:
            logger.warning(f"Duplicate payment attempt for {order.order_id}: {live.order_id} is {live.status}")
            raise ConflictError(f'{order.order_id} already has a {live.status} payment ({live.order_id}).')

        payment = Payment.for_order(
            ref,
            order_id=generate_order_number('PAY'),
            gross_amount=gross_amount,
        )
        payment.save()

    logger.info(f"Payment {payment.order_id} of {gross_amount} created for {order.order_id}")
    return payment


def _open_case(payment, reason, seller_id, amount, notes):
    case, created = ReconciliationCase.objects.get_or_create(
        payment=payment,
        reason=reason,
        status='open',
        defaults={'seller_id': seller_id, 'amount': amount, 'notes': notes},
    )
    if created:
        logger.error(
            f"Reconciliation case {case.pk} opened for payment {payment.order_id}: "
            f"{reason}, amount {amount}"
        )
        emit_on_commit(
            reconciliation_required,
            sender=ReconciliationCase,
            case_id=case.pk,
            reason=reason,
            payment_id=payment.pk,
            amount=amount,
        )
    return case


def _record_success(payment, paid_at):
    """Credit the seller and mark the order paid, or open a case if the order moved on."""
    ref = payment.target
    order = lock_order(ref)

    if order.status != 'pending_payment':
        _open_case(
            payment,
            'payment_for_inactive_order',
            order.seller_id,
            payment.gross_amount,
            f'Payment succeeded while {order.order_id} was {order.status}.',
        )
        return

    mark_order_paid(order, paid_at)

    breakdown = calculate_commission(ref.kind, payment.gross_amount, at=paid_at)
    entry = TransactionLog.objects.create(
        transaction_type=TransactionLog.PAYMENT_TYPES[ref.kind],
        user_id=order.seller_id,
        payment=payment,
        amount=payment.gross_amount,
        commission_rate=breakdown.rate,
        commission_amount=breakdown.commission_amount,
        net_amount=breakdown.net_amount,
        status='pending',
        metadata={
            'order_id': order.order_id,
            'payment_order_id': payment.order_id,
            'commission_setting_id': breakdown.setting_id,
        },
        **ref.filter_kwargs(),
    )
    credit_pending(order.seller_id, breakdown.net_amount, entry)


def apply_gateway_event(external_order_id, result_status, paid_at=None, amount=None,
                        transaction_id=None, payment_type=None):
    """
    Apply a payment gateway notification.

    Redelivered events are harmless: once a payment is success, failed,
    expired or refunded, further events for it are ignored and the payment is
    returned unchanged.

    Args:
        external_order_id: The payment's order_id (idempotency key)
        result_status: Engine status or a gateway alias (settlement, capture, deny, ...)
        paid_at: Settlement time reported by the gateway
        amount: Gross amount reported by the gateway, checked against the payment

    Raises:
        Payment.DoesNotExist: Unknown order id
        ValidationError: Unknown status or amount mismatch
    """
    try:
        new_status = GATEWAY_STATUS_MAP[str(result_status).lower()]
    except KeyError:
        raise ValidationError({'transaction_status': f'Unknown payment status "{result_status}".'})

    try:
        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(order_id=external_order_id)

            if payment.status in Payment.SETTLED_STATUSES:
                raise DuplicateEventError(payment.order_id, payment.status)

            if new_status is None:
                logger.info(f"Payment {payment.order_id} still pending at the gateway")
                return payment

            if amount is not None and parse_amount(amount, 'gross_amount') != payment.gross_amount:
                logger.warning(
                    f"Gateway amount mismatch for {payment.order_id}: "
                    f"expected {payment.gross_amount}, got {amount}"
                )
                raise ValidationError({
                    'gross_amount': f'Amount {amount} does not match payment amount {payment.gross_amount}.'
                })

            now = timezone.now()
            old_status = payment.status
            payment.status = new_status
            if transaction_id:
                payment.transaction_id = transaction_id
            if payment_type:
                payment.payment_type = payment_type

            if new_status == 'success':
                payment.paid_at = paid_at or now
            elif new_status == 'expired':
                payment.expired_at = now
            payment.save()

            if new_status == 'success':
                _record_success(payment, payment.paid_at)

            emit_on_commit(
                payment_status_changed,
                sender=Payment,
                payment_id=payment.pk,
                order_id=payment.order_id,
                ref=payment.target,
                old_status=old_status,
                new_status=new_status,
            )
    except DuplicateEventError as exc:
        logger.info(str(exc))
        return Payment.objects.get(order_id=external_order_id)

    logger.info(f"Payment {payment.order_id} status changed: {old_status} -> {new_status}")
    return payment


def refund_payment(payment_id, amount, reason, actor):
    """
    Refund a successful payment and cancel its order.

    While the seller's credit is still pending it is reversed. Once the credit
    has been released to the available balance nothing is reversed; a
    reconciliation case is committed and ReconciliationRequiredError raised.

    Raises:
        TransitionForbiddenError: Actor is not an admin or the system
        InvalidTransitionError: Payment not successful, or rental already in progress
        ValidationError: Amount outside (0, gross] or missing reason
        ReconciliationRequiredError: Funds were already settled to the seller
    """
    if not (actor.is_admin or actor.is_system):
        raise TransitionForbiddenError('Only administrators can issue refunds.')

    amount = parse_amount(amount, 'amount')
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError({'reason': 'A refund reason is required.'})

    case = None
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment_id)

        if payment.status != 'success':
            raise InvalidTransitionError(f'Only successful payments can be refunded ({payment.order_id} is {payment.status}).')

        if amount <= 0 or amount > payment.gross_amount:
            raise ValidationError({'amount': f'Refund amount must be between 0 and {payment.gross_amount}.'})

        ref = payment.target
        order = lock_order(ref)

        if ref.kind == 'rental' and order.status == 'berjalan':
            raise InvalidTransitionError(f'{order.order_id} is in progress and cannot be refunded.')

        entry = (
            TransactionLog.objects
            .filter(payment=payment, transaction_type=TransactionLog.PAYMENT_TYPES[ref.kind])
            .first()
        )

        if entry is not None and entry.status == 'completed':
            case = _open_case(
                payment,
                'refund_after_settlement',
                order.seller_id,
                amount,
                f'Refund requested after settlement: {reason}',
            )
        else:
            cancel_for_refund(order, reason)

            reversed_net = Decimal('0.00')
            if entry is not None and entry.status == 'pending':
                entry = TransactionLog.objects.select_for_update().get(pk=entry.pk)
                reversed_net = entry.net_amount or reversed_net
                reverse_pending(entry, note=f'Refunded: {reason}')

            payment.status = 'refunded'
            payment.refund_amount = amount
            payment.refund_reason = reason
            payment.refunded_at = timezone.now()
            payment.save()

            TransactionLog.objects.create(
                transaction_type=TransactionLog.REFUND_TYPES[ref.kind],
                user_id=order.seller_id,
                payment=payment,
                amount=amount,
                net_amount=-reversed_net,
                status='completed',
                metadata={
                    'order_id': order.order_id,
                    'payment_order_id': payment.order_id,
                    'actor_role': actor.role,
                    'actor_id': actor.user_id,
                },
                notes=reason,
                **ref.filter_kwargs(),
            )

            emit_on_commit(
                payment_status_changed,
                sender=Payment,
                payment_id=payment.pk,
                order_id=payment.order_id,
                ref=ref,
                old_status='success',
                new_status='refunded',
            )

    if case is not None:
        raise ReconciliationRequiredError(
            f'Funds for {payment.order_id} were already settled to the seller; '
            f'manual reconciliation case {case.pk} has been opened.',
            case_id=case.pk,
        )

    logger.info(f"Payment {payment.order_id} refunded: {amount} ({reason})")
    return payment


def compute_webhook_signature(order_id, raw_body, server_key=None):
    """Base64 HMAC-SHA512 of order_id followed by the raw request body."""
    if server_key is None:
        server_key = get_setting('PAYMENT_WEBHOOK_SERVER_KEY')
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')
    digest = hmac.new(
        server_key.encode('utf-8'),
        str(order_id).encode('utf-8') + raw_body,
        hashlib.sha512,
    ).digest()
    return base64.b64encode(digest).decode('ascii')


def verify_webhook_signature(order_id, raw_body, signature):
    if not signature or not get_setting('PAYMENT_WEBHOOK_SERVER_KEY'):
        return False
    expected = compute_webhook_signature(order_id, raw_body)
    return hmac.compare_digest(expected, signature)
