"""
Tests for seller balances and withdrawals.
"""

from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from marketplace.exceptions import InsufficientFundsError, InvalidTransitionError
from marketplace.models import SellerBalance, TransactionLog, Withdrawal
from marketplace.orders import Actor, create_rental_booking, transition_order
from marketplace.settlement import (
    credit_pending,
    get_seller_balance,
    get_seller_earnings,
    process_withdrawal,
    promote_to_available,
    request_withdrawal,
)

PAYOUT = {
    'bank_name': 'BCA',
    'account_number': '1234567890',
    'account_holder_name': 'Budi Santoso',
}


@pytest.fixture
def funded_seller(seller):
    SellerBalance.objects.create(seller=seller, available_balance=Decimal('200000.00'))
    return seller


@pytest.fixture
def finished_rental(rental_vehicle, customer, seller, future, pay):
    """A two-day rental that was paid, picked up and returned."""
    booking = create_rental_booking(customer.pk, rental_vehicle.pk, future(1), future(3))
    pay(booking)
    type(booking).objects.filter(pk=booking.pk).update(pickup_date=future(-1))
    actor = Actor.from_user(seller)
    transition_order(booking.ref, 'berjalan', actor)
    return transition_order(booking.ref, 'selesai', actor)


@pytest.mark.django_db
class TestBalances:

    def test_unknown_seller_has_zero_balance(self, seller):
        balance = get_seller_balance(seller.pk)

        assert balance.available == Decimal('0.00')
        assert balance.pending == Decimal('0.00')
        assert balance.total_earned == Decimal('0.00')

    def test_finished_rental_is_available(self, finished_rental, seller):
        balance = get_seller_balance(seller.pk)

        assert balance.available == Decimal('665000.00')
        assert balance.pending == Decimal('0.00')
        assert balance.total_earned == Decimal('665000.00')

    def test_promote_twice_is_noop(self, finished_rental, seller):
        assert promote_to_available(seller.pk, finished_rental.ref) is None

        assert get_seller_balance(seller.pk).available == Decimal('665000.00')

    def test_credit_requires_pending_entry_of_same_seller(self, seller, other_customer):
        entry = TransactionLog.objects.create(
            transaction_type='sale_payment', user=seller, amount=Decimal('10.00'),
            net_amount=Decimal('9.50'), status='pending',
        )

        with pytest.raises(ValidationError):
            credit_pending(other_customer.pk, Decimal('9.50'), entry)
        with pytest.raises(ValidationError):
            credit_pending(seller.pk, Decimal('-1.00'), entry)

    def test_earnings_summary(self, finished_rental, seller):
        earnings = get_seller_earnings(seller.pk)

        assert earnings == {
            'gross': Decimal('700000.00'),
            'commission': Decimal('35000.00'),
            'net': Decimal('665000.00'),
            'count': 1,
        }
        assert get_seller_earnings(seller.pk, kind='sale')['count'] == 0


@pytest.mark.django_db
class TestWithdrawals:

    def test_request_reserves_funds(self, funded_seller):
        withdrawal = request_withdrawal(funded_seller.pk, Decimal('150000.00'), PAYOUT)

        assert withdrawal.status == 'pending'
        assert withdrawal.bank_name == 'BCA'
        assert get_seller_balance(funded_seller.pk).available == Decimal('50000.00')

        entry = TransactionLog.objects.get(withdrawal=withdrawal)
        assert entry.transaction_type == 'seller_withdrawal'
        assert entry.net_amount == Decimal('-150000.00')
        assert entry.status == 'pending'

    def test_below_minimum_rejected(self, funded_seller):
        with pytest.raises(ValidationError):
            request_withdrawal(funded_seller.pk, Decimal('49999.99'), PAYOUT)

    def test_malformed_amount_rejected(self, funded_seller):
        with pytest.raises(ValidationError) as exc_info:
            request_withdrawal(funded_seller.pk, 'fifty thousand', PAYOUT)

        assert 'amount' in exc_info.value.message_dict
        assert get_seller_balance(funded_seller.pk).available == Decimal('200000.00')

    def test_amount_rounded_to_cents(self, funded_seller):
        withdrawal = request_withdrawal(funded_seller.pk, '60000.005', PAYOUT)

        withdrawal.refresh_from_db()
        assert withdrawal.amount == Decimal('60000.01')
        assert get_seller_balance(funded_seller.pk).available == Decimal('139999.99')

    def test_missing_payout_details_rejected(self, funded_seller):
        with pytest.raises(ValidationError) as exc_info:
            request_withdrawal(funded_seller.pk, Decimal('60000.00'), {'bank_name': 'BCA'})

        assert 'account_number' in exc_info.value.message_dict

    def test_insufficient_funds_reports_shortfall(self, funded_seller):
        with pytest.raises(InsufficientFundsError) as exc_info:
            request_withdrawal(funded_seller.pk, Decimal('250000.00'), PAYOUT)

        assert exc_info.value.shortfall == Decimal('50000.00')
        assert exc_info.value.detail['shortfall'] == '50000.00'
        assert get_seller_balance(funded_seller.pk).available == Decimal('200000.00')
        assert not Withdrawal.objects.exists()

    def test_pending_funds_cannot_be_withdrawn(self, confirmed_sale, seller, pay):
        pay(confirmed_sale)
        SellerBalance.objects.filter(seller=seller).update(pending_balance=Decimal('100000.00'))

        with pytest.raises(InsufficientFundsError):
            request_withdrawal(seller.pk, Decimal('60000.00'), PAYOUT)

    def test_completed_withdrawal(self, funded_seller):
        withdrawal = request_withdrawal(funded_seller.pk, Decimal('100000.00'), PAYOUT)

        process_withdrawal(withdrawal.pk, 'processing')
        withdrawal = process_withdrawal(withdrawal.pk, 'completed')

        assert withdrawal.status == 'completed'
        assert withdrawal.processed_at is not None
        assert withdrawal.completed_at is not None
        assert TransactionLog.objects.get(withdrawal=withdrawal).status == 'completed'
        assert get_seller_balance(funded_seller.pk).available == Decimal('100000.00')

    def test_failed_withdrawal_returns_funds(self, funded_seller):
        withdrawal = request_withdrawal(funded_seller.pk, Decimal('100000.00'), PAYOUT)

        withdrawal = process_withdrawal(withdrawal.pk, 'failed', failure_reason='Account closed')

        assert withdrawal.failure_reason == 'Account closed'
        assert TransactionLog.objects.get(withdrawal=withdrawal).status == 'failed'
        assert get_seller_balance(funded_seller.pk).available == Decimal('200000.00')

    def test_failure_needs_reason(self, funded_seller):
        withdrawal = request_withdrawal(funded_seller.pk, Decimal('100000.00'), PAYOUT)

        with pytest.raises(ValidationError):
            process_withdrawal(withdrawal.pk, 'failed')

    def test_cannot_complete_pending_withdrawal(self, funded_seller):
        withdrawal = request_withdrawal(funded_seller.pk, Decimal('100000.00'), PAYOUT)

        with pytest.raises(InvalidTransitionError):
            process_withdrawal(withdrawal.pk, 'completed')

    def test_money_is_conserved(self, finished_rental, seller):
        withdrawal = request_withdrawal(seller.pk, Decimal('300000.00'), PAYOUT)
        process_withdrawal(withdrawal.pk, 'processing')
        process_withdrawal(withdrawal.pk, 'completed')

        balance = get_seller_balance(seller.pk)
        paid_out = sum(
            w.amount for w in Withdrawal.objects.filter(seller=seller, status='completed')
        )
        assert balance.available + balance.pending + paid_out == balance.total_earned
        assert balance.available == Decimal('365000.00')
