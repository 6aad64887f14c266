"""
Tests for the sale order lifecycle.

A sale goes pending_confirmation -> pending_payment -> paid ->
document_processing -> completed. The vehicle follows the order
(pending_sale once paid, sold on completion, available again when the
order is rejected or cancelled) and completion is gated on all four
document transfer flags.
"""

from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError
from django.db.models import ProtectedError

from marketplace.exceptions import InvalidTransitionError, TransitionForbiddenError
from marketplace.models import Payment, SaleOrder, TransactionLog
from marketplace.orders import (
    SYSTEM,
    Actor,
    accept_counter_offer,
    counter_offer,
    create_sale_order,
    mark_documents_transferred,
    transition_order,
)
from marketplace.payments import create_payment
from marketplace.settlement import get_seller_balance

ALL_DOCUMENTS = list(SaleOrder.DOCUMENT_FIELDS)


@pytest.mark.django_db
class TestSaleOrderCreation:

    def test_order_uses_offer_price(self, sale_vehicle, customer):
        order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('95.00'))

        assert order.status == 'pending_confirmation'
        assert order.asking_price == Decimal('100.00')
        assert order.final_price == Decimal('95.00')
        assert order.order_id.startswith('SAL-')
        assert order.confirmation_deadline is not None

    def test_order_without_offer_uses_asking_price(self, sale_vehicle, customer):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        assert order.final_price == Decimal('100.00')

    def test_rental_vehicle_cannot_be_bought(self, rental_vehicle, customer):
        with pytest.raises(ValidationError):
            create_sale_order(customer.pk, rental_vehicle.pk)

    def test_non_positive_offer_rejected(self, sale_vehicle, customer):
        with pytest.raises(ValidationError):
            create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('0'))

    def test_unknown_test_drive_rejected(self, sale_vehicle, customer):
        with pytest.raises(ValidationError):
            create_sale_order(customer.pk, sale_vehicle.pk, testdrive_booking_id=12345)


@pytest.mark.django_db
class TestSaleConfirmation:

    def test_seller_confirms(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        order = transition_order(order.ref, 'pending_payment', Actor.from_user(seller))

        assert order.status == 'pending_payment'
        assert order.confirmed_at is not None

    def test_buyer_cannot_confirm(self, sale_vehicle, customer):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        with pytest.raises(TransitionForbiddenError):
            transition_order(order.ref, 'pending_payment', Actor.from_user(customer))

    def test_seller_rejects_with_reason(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        order = transition_order(order.ref, 'rejected', Actor.from_user(seller), reason='Already promised')

        assert order.status == 'rejected'
        assert order.reject_reason == 'Already promised'
        sale_vehicle.refresh_from_db()
        assert sale_vehicle.status == 'available'

    def test_buyer_cancels_before_payment(self, confirmed_sale, customer):
        order = transition_order(confirmed_sale.ref, 'cancelled', Actor.from_user(customer), reason='Found another')

        assert order.status == 'cancelled'

    def test_seller_cannot_cancel(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        with pytest.raises(TransitionForbiddenError):
            transition_order(order.ref, 'cancelled', Actor.from_user(seller), reason='No')

    def test_counter_offer_keeps_final_price_until_accepted(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('80.00'))

        order = counter_offer(order.pk, Actor.from_user(seller), Decimal('90.00'), notes='Lowest I can go')

        assert order.status == 'pending_confirmation'
        assert order.counter_offer_price == Decimal('90.00')
        assert order.final_price == Decimal('80.00')
        assert order.seller_notes == 'Lowest I can go'

    def test_buyer_accepts_counter_offer(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('95.00'))
        counter_offer(order.pk, Actor.from_user(seller), Decimal('99.00'))

        order = accept_counter_offer(order.pk, Actor.from_user(customer))

        assert order.status == 'pending_payment'
        assert order.final_price == Decimal('99.00')
        assert order.payable_amount == Decimal('99.00')
        assert order.offer_price == Decimal('95.00')

    def test_seller_cannot_confirm_own_counter_offer(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('95.00'))
        counter_offer(order.pk, Actor.from_user(seller), Decimal('99.00'))

        with pytest.raises(InvalidTransitionError):
            transition_order(order.ref, 'pending_payment', Actor.from_user(seller))

        order.refresh_from_db()
        assert order.status == 'pending_confirmation'
        assert order.final_price == Decimal('95.00')

    def test_only_buyer_accepts_counter_offer(self, sale_vehicle, customer, other_customer, seller, admin_user):
        order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('95.00'))
        counter_offer(order.pk, Actor.from_user(seller), Decimal('99.00'))

        for user in (seller, other_customer, admin_user):
            with pytest.raises(TransitionForbiddenError):
                accept_counter_offer(order.pk, Actor.from_user(user))

    def test_accept_without_counter_offer_rejected(self, sale_vehicle, customer):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        with pytest.raises(InvalidTransitionError):
            accept_counter_offer(order.pk, Actor.from_user(customer))

    def test_buyer_may_cancel_instead_of_accepting(self, sale_vehicle, customer, seller):
        order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('95.00'))
        counter_offer(order.pk, Actor.from_user(seller), Decimal('99.00'))

        order = transition_order(order.ref, 'cancelled', Actor.from_user(customer), reason='Too expensive')

        assert order.status == 'cancelled'

    def test_counter_offer_only_by_seller(self, sale_vehicle, customer):
        order = create_sale_order(customer.pk, sale_vehicle.pk)

        with pytest.raises(TransitionForbiddenError):
            counter_offer(order.pk, Actor.from_user(customer), Decimal('90.00'))

    def test_counter_offer_after_confirmation_rejected(self, confirmed_sale, seller):
        with pytest.raises(InvalidTransitionError):
            counter_offer(confirmed_sale.pk, Actor.from_user(seller), Decimal('90.00'))


@pytest.mark.django_db
class TestSalePaidFlow:

    def test_payment_moves_order_to_document_processing(self, confirmed_sale, sale_vehicle, seller, pay):
        pay(confirmed_sale)

        confirmed_sale.refresh_from_db()
        sale_vehicle.refresh_from_db()
        assert confirmed_sale.status == 'document_processing'
        assert confirmed_sale.document_transfer_started_at is not None
        assert sale_vehicle.status == 'pending_sale'
        assert get_seller_balance(seller.pk).pending == Decimal('90.25')

    def test_full_lifecycle(self, confirmed_sale, sale_vehicle, seller, customer, pay):
        pay(confirmed_sale)

        mark_documents_transferred(confirmed_sale.pk, Actor.from_user(seller), ALL_DOCUMENTS)
        order = transition_order(confirmed_sale.ref, 'completed', Actor.from_user(customer))

        sale_vehicle.refresh_from_db()
        balance = get_seller_balance(seller.pk)
        assert order.status == 'completed'
        assert order.completed_at is not None
        assert sale_vehicle.status == 'sold'
        assert balance.available == Decimal('90.25')
        assert balance.pending == Decimal('0.00')
        assert balance.total_earned == Decimal('90.25')

        entry = TransactionLog.objects.get(transaction_type='sale_payment')
        assert entry.status == 'completed'
        assert entry.amount == Decimal('95.00')
        assert entry.commission_amount == Decimal('4.75')

    def test_completion_requires_all_documents(self, confirmed_sale, seller, customer, pay):
        pay(confirmed_sale)
        mark_documents_transferred(confirmed_sale.pk, Actor.from_user(seller), ALL_DOCUMENTS[:3])

        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_order(confirmed_sale.ref, 'completed', Actor.from_user(customer))

        assert 'tax_transferred' in str(exc_info.value.detail)
        confirmed_sale.refresh_from_db()
        assert confirmed_sale.status == 'document_processing'
        assert get_seller_balance(seller.pk).available == Decimal('0.00')

    def test_documents_only_in_document_processing(self, confirmed_sale, seller):
        with pytest.raises(InvalidTransitionError):
            mark_documents_transferred(confirmed_sale.pk, Actor.from_user(seller), ALL_DOCUMENTS)

    def test_buyer_cannot_record_documents(self, confirmed_sale, customer, pay):
        pay(confirmed_sale)

        with pytest.raises(TransitionForbiddenError):
            mark_documents_transferred(confirmed_sale.pk, Actor.from_user(customer), ALL_DOCUMENTS)

    def test_unknown_document_rejected(self, confirmed_sale, seller, pay):
        pay(confirmed_sale)

        with pytest.raises(ValidationError):
            mark_documents_transferred(confirmed_sale.pk, Actor.from_user(seller), ['passport'])

    def test_direct_save_cannot_complete_without_documents(self, confirmed_sale, pay):
        pay(confirmed_sale)
        confirmed_sale.refresh_from_db()
        confirmed_sale.status = 'completed'

        with pytest.raises(ValidationError):
            confirmed_sale.save()

    def test_paid_sale_cannot_be_cancelled_by_buyer(self, confirmed_sale, customer, pay):
        pay(confirmed_sale)

        with pytest.raises(InvalidTransitionError):
            transition_order(confirmed_sale.ref, 'cancelled', Actor.from_user(customer), reason='Changed mind')

    def test_paid_sale_cannot_be_deleted(self, confirmed_sale, pay):
        pay(confirmed_sale)
        confirmed_sale.refresh_from_db()

        with pytest.raises(InvalidTransitionError):
            confirmed_sale.delete()
        assert SaleOrder.objects.filter(pk=confirmed_sale.pk).exists()

    def test_sold_vehicle_stays_sold(self, confirmed_sale, sale_vehicle, seller, customer, pay):
        pay(confirmed_sale)
        mark_documents_transferred(confirmed_sale.pk, Actor.from_user(seller), ALL_DOCUMENTS)
        transition_order(confirmed_sale.ref, 'completed', Actor.from_user(customer))

        with pytest.raises(InvalidTransitionError):
            transition_order(confirmed_sale.ref, 'cancelled', SYSTEM, reason='Too late')

        sale_vehicle.refresh_from_db()
        assert sale_vehicle.status == 'sold'

    def test_seller_cannot_complete_own_sale(self, confirmed_sale, seller, pay):
        seller_actor = Actor.from_user(seller)
        pay(confirmed_sale)
        mark_documents_transferred(confirmed_sale.pk, seller_actor, ALL_DOCUMENTS)

        with pytest.raises(TransitionForbiddenError):
            transition_order(confirmed_sale.ref, 'completed', seller_actor)

        confirmed_sale.refresh_from_db()
        assert confirmed_sale.status == 'document_processing'
        assert get_seller_balance(seller.pk).available == Decimal('0.00')

    def test_admin_can_complete_for_buyer(self, confirmed_sale, seller, admin_user, pay):
        pay(confirmed_sale)
        mark_documents_transferred(confirmed_sale.pk, Actor.from_user(seller), ALL_DOCUMENTS)

        order = transition_order(confirmed_sale.ref, 'completed', Actor.from_user(admin_user))

        assert order.status == 'completed'


@pytest.mark.django_db
class TestPaidOrderProtection:

    def test_deleting_buyer_keeps_paid_order(self, confirmed_sale, customer, pay):
        payment = pay(confirmed_sale)

        with pytest.raises(ProtectedError):
            customer.delete()

        assert SaleOrder.objects.filter(pk=confirmed_sale.pk).exists()
        assert Payment.objects.filter(pk=payment.pk).exists()
        assert TransactionLog.objects.get(payment=payment).sale_order_id == confirmed_sale.pk

    def test_deleting_seller_keeps_paid_order(self, confirmed_sale, seller, pay):
        pay(confirmed_sale)

        with pytest.raises(ProtectedError):
            seller.delete()

        assert SaleOrder.objects.filter(pk=confirmed_sale.pk).exists()

    def test_unpaid_order_with_payment_record_is_kept(self, confirmed_sale):
        payment = create_payment(confirmed_sale.ref, confirmed_sale.payable_amount)

        with pytest.raises(ProtectedError):
            confirmed_sale.delete()

        assert Payment.objects.filter(pk=payment.pk).exists()
