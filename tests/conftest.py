"""
Shared fixtures for the marketplace test suite.

Users, vehicles and JWT-authenticated API clients used across test modules,
and the --require-row-locks switch CI uses to make sure the row_locks tests
actually run.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.db import connection
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from marketplace.models import Vehicle
from marketplace.orders import Actor, create_sale_order, transition_order
from marketplace.payments import apply_gateway_event, create_payment

User = get_user_model()


def pytest_addoption(parser):
    parser.addoption(
        '--require-row-locks',
        action='store_true',
        default=False,
        help='Fail instead of skipping row_locks tests when the database has no SELECT ... FOR UPDATE.',
    )


def pytest_collection_modifyitems(config, items):
    if not config.getoption('--require-row-locks'):
        return
    if not connection.features.has_select_for_update:
        raise pytest.UsageError(
            f'--require-row-locks: the {connection.vendor} backend has no row locks; set DB_ENGINE=mysql.'
        )


@pytest.fixture
def api_client():
    """Return API client for testing."""
    return APIClient()


@pytest.fixture
def seller(db):
    return User.objects.create_user(
        username='seller',
        email='seller@test.com',
        password='TestPass123!',
        role='seller',
    )


@pytest.fixture
def customer(db):
    return User.objects.create_user(
        username='customer',
        email='customer@test.com',
        password='TestPass123!',
        role='customer',
    )


@pytest.fixture
def other_customer(db):
    return User.objects.create_user(
        username='customer2',
        email='customer2@test.com',
        password='TestPass123!',
        role='customer',
    )


@pytest.fixture
def admin_user(db):
    return User.objects.create_user(
        username='admin',
        email='admin@test.com',
        password='TestPass123!',
        role='admin',
    )


@pytest.fixture
def rental_vehicle(seller):
    return Vehicle.objects.create(
        seller=seller,
        title='Toyota Avanza 2022',
        listing_kind='rental',
        price=Decimal('350000.00'),
    )


@pytest.fixture
def sale_vehicle(seller):
    return Vehicle.objects.create(
        seller=seller,
        title='Honda Civic 2019',
        listing_kind='sale',
        price=Decimal('100.00'),
    )


@pytest.fixture
def auth_client():
    """Factory returning an APIClient authenticated as the given user."""
    def make_client(user):
        client = APIClient()
        token = RefreshToken.for_user(user).access_token
        client.credentials(HTTP_AUTHORIZATION=f'Bearer {token}')
        return client
    return make_client


def days_from_now(days, hour=9):
    """Timezone-aware datetime `days` days ahead at a fixed hour."""
    moment = timezone.now() + timedelta(days=days)
    return moment.replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest.fixture
def future():
    return days_from_now


def settle_payment(order, status='settlement'):
    """Open a payment for the order's full amount and apply a gateway event to it."""
    payment = create_payment(order.ref, order.payable_amount)
    return apply_gateway_event(payment.order_id, status)


@pytest.fixture
def pay():
    return settle_payment


@pytest.fixture
def confirmed_sale(sale_vehicle, customer, seller):
    """Sale order for 95.00 on the 100.00 vehicle, confirmed by the seller."""
    order = create_sale_order(customer.pk, sale_vehicle.pk, offer_price=Decimal('95.00'))
    return transition_order(order.ref, 'pending_payment', Actor.from_user(seller))
