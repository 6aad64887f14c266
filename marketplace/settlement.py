"""
Seller balance bookkeeping.

Each seller has one SellerBalance row. A successful payment credits the
seller's net amount to pending_balance; when the order finishes, the same
amount moves to available_balance, from which withdrawals are paid out.

Every mutation locks the SellerBalance row with select_for_update() and must
run inside transaction.atomic().
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Count, Sum
from django.utils import timezone

from .commission import parse_amount, quantize_money
from .conf import get_setting
from .exceptions import InsufficientFundsError, InvalidTransitionError
from .models import SellerBalance, TransactionLog, Withdrawal, ZERO

logger = logging.getLogger(__name__)

PAYOUT_FIELDS = ('bank_name', 'account_number', 'account_holder_name')


@dataclass(frozen=True)
class BalanceSnapshot:
    available: Decimal
    pending: Decimal
    total_earned: Decimal


def _lock_balance(seller_id):
    """Return the seller's balance row locked for update, creating it if needed."""
    SellerBalance.objects.get_or_create(seller_id=seller_id)
    return SellerBalance.objects.select_for_update().get(seller_id=seller_id)


@transaction.atomic
def credit_pending(seller_id, net_amount, entry):
    """
    Add net_amount to the seller's pending balance for a new payment entry.

    Args:
        seller_id: Seller primary key
        net_amount: Amount after commission (Decimal, >= 0)
        entry: The pending *_payment TransactionLog entry the credit belongs to
    """
    if net_amount < 0:
        raise ValidationError({'net_amount': 'Credited amount cannot be negative.'})
    if entry.status != 'pending' or entry.user_id != seller_id:
        raise ValidationError('Only a pending ledger entry of the same seller can be credited.')

    balance = _lock_balance(seller_id)
    balance.pending_balance += net_amount
    balance.save(update_fields=['pending_balance', 'updated_at'])

    logger.info(
        f"Credited {net_amount} to pending balance of seller {seller_id} "
        f"(ledger entry {entry.pk})"
    )
    return balance


def find_payment_entry(order_ref, statuses=None):
    """The *_payment ledger entry written for the order's successful payment."""
    queryset = TransactionLog.objects.filter(
        transaction_type=TransactionLog.PAYMENT_TYPES[order_ref.kind],
        **order_ref.filter_kwargs(),
    )
    if statuses is not None:
        queryset = queryset.filter(status__in=statuses)
    return queryset.order_by('-created_at', '-pk').first()


@transaction.atomic
def promote_to_available(seller_id, order_ref):
    """
    Move the order's pending credit to the seller's available balance.

    Uses the net amount stored on the ledger entry, so a later rate change
    does not affect it. Does nothing when the order has no pending entry
    (never paid, already promoted, or reversed by a refund).

    Returns:
        The completed TransactionLog entry, or None
    """
    entry = find_payment_entry(order_ref, statuses=['pending'])
    if entry is None:
        logger.info(f"No pending credit to promote for {order_ref.kind} order {order_ref.id}")
        return None

    entry = TransactionLog.objects.select_for_update().get(pk=entry.pk)
    if entry.status != 'pending':
        return None

    net_amount = entry.net_amount or ZERO
    balance = _lock_balance(seller_id)
    balance.pending_balance -= net_amount
    balance.available_balance += net_amount
    balance.total_earned += net_amount
    balance.save(update_fields=['pending_balance', 'available_balance', 'total_earned', 'updated_at'])

    entry.set_status('completed', note=f'Settled to available balance at {timezone.now().isoformat()}')

    logger.info(
        f"Promoted {net_amount} from pending to available for seller {seller_id} "
        f"({order_ref.kind} order {order_ref.id})"
    )
    return entry


@transaction.atomic
def reverse_pending(entry, note=''):
    """
    Undo a pending credit: remove its net amount from pending and mark it reversed.

    The entry must be locked by the caller.
    """
    if entry.status != 'pending':
        raise InvalidTransitionError(f'Ledger entry {entry.pk} is {entry.status}; only pending credits can be reversed.')

    net_amount = entry.net_amount or ZERO
    balance = _lock_balance(entry.user_id)
    balance.pending_balance -= net_amount
    balance.save(update_fields=['pending_balance', 'updated_at'])

    entry.set_status('reversed', note=note)

    logger.info(f"Reversed pending credit {net_amount} of seller {entry.user_id} (ledger entry {entry.pk})")
    return balance


def request_withdrawal(seller_id, amount, payout_info):
    """
    Reserve available funds for a payout.

    Args:
        seller_id: Seller primary key
        amount: Amount to withdraw
        payout_info: dict with bank_name, account_number, account_holder_name

    Returns:
        Withdrawal in 'pending' status

    Raises:
        ValidationError: Amount below the minimum or missing payout details
        InsufficientFundsError: Available balance is lower than amount
    """
    amount = quantize_money(parse_amount(amount, 'amount'))
    minimum = get_setting('MIN_WITHDRAWAL_AMOUNT')
    if amount < minimum:
        raise ValidationError({'amount': f'Minimum withdrawal amount is {minimum}.'})

    missing = [field for field in PAYOUT_FIELDS if not (payout_info or {}).get(field)]
    if missing:
        raise ValidationError({field: 'This field is required.' for field in missing})

    with transaction.atomic():
        balance = _lock_balance(seller_id)

        if balance.available_balance < amount:
            logger.warning(
                f"Withdrawal rejected for seller {seller_id}: requested {amount}, "
                f"available {balance.available_balance}"
            )
            raise InsufficientFundsError(balance.available_balance, amount)

        balance.available_balance -= amount
        balance.save(update_fields=['available_balance', 'updated_at'])

        withdrawal = Withdrawal.objects.create(
            seller_id=seller_id,
            amount=amount,
            **{field: payout_info[field] for field in PAYOUT_FIELDS},
        )

        TransactionLog.objects.create(
            transaction_type='seller_withdrawal',
            user_id=seller_id,
            withdrawal=withdrawal,
            amount=amount,
            net_amount=-amount,
            status='pending',
            metadata={'bank_name': withdrawal.bank_name},
        )

    logger.info(f"Withdrawal {withdrawal.pk} of {amount} requested by seller {seller_id}")
    return withdrawal


@transaction.atomic
def process_withdrawal(withdrawal_id, target_status, failure_reason=None):
    """
    Advance a withdrawal: pending -> processing -> completed | failed.

    A failed withdrawal returns its amount to the seller's available balance.
    """
    withdrawal = Withdrawal.objects.select_for_update().get(pk=withdrawal_id)

    if target_status not in Withdrawal.VALID_TRANSITIONS.get(withdrawal.status, []):
        raise InvalidTransitionError(
            f'Invalid withdrawal status transition from {withdrawal.status} to {target_status}.'
        )
    if target_status == 'failed' and not failure_reason:
        raise ValidationError({'failure_reason': 'A failure reason is required.'})

    now = timezone.now()
    old_status = withdrawal.status
    withdrawal.status = target_status
    update_fields = ['status']

    entry = (
        TransactionLog.objects.select_for_update()
        .filter(withdrawal=withdrawal, transaction_type='seller_withdrawal')
        .first()
    )

    if target_status == 'processing':
        withdrawal.processed_at = now
        update_fields.append('processed_at')
    elif target_status == 'completed':
        withdrawal.completed_at = now
        update_fields.append('completed_at')
        if entry is not None:
            entry.set_status('completed')
    else:
        withdrawal.failure_reason = failure_reason
        update_fields.append('failure_reason')
        balance = _lock_balance(withdrawal.seller_id)
        balance.available_balance += withdrawal.amount
        balance.save(update_fields=['available_balance', 'updated_at'])
        if entry is not None:
            entry.set_status('failed', note=failure_reason)

    withdrawal.save(update_fields=update_fields)

    logger.info(f"Withdrawal {withdrawal.pk} status changed: {old_status} -> {target_status}")
    return withdrawal


def get_seller_balance(seller_id):
    """Current balances of the seller; zeros if the seller has no balance row yet."""
    balance = SellerBalance.objects.filter(seller_id=seller_id).first()
    if balance is None:
        return BalanceSnapshot(available=ZERO, pending=ZERO, total_earned=ZERO)
    return BalanceSnapshot(
        available=balance.available_balance,
        pending=balance.pending_balance,
        total_earned=balance.total_earned,
    )


def get_seller_earnings(seller_id, kind=None):
    """
    Totals over the seller's settled payments.

    Returns:
        dict with gross, commission, net and count
    """
    if kind is None:
        types = list(TransactionLog.PAYMENT_TYPES.values())
    else:
        types = [TransactionLog.PAYMENT_TYPES[kind]]

    totals = TransactionLog.objects.filter(
        user_id=seller_id,
        transaction_type__in=types,
        status='completed',
    ).aggregate(
        gross=Sum('amount'),
        commission=Sum('commission_amount'),
        net=Sum('net_amount'),
        count=Count('id'),
    )

    return {
        'gross': totals['gross'] or ZERO,
        'commission': totals['commission'] or ZERO,
        'net': totals['net'] or ZERO,
        'count': totals['count'],
    }
