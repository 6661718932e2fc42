"""Shared fixtures for django-orders tests."""

import pytest

from django_orders.gateways import MockGateway


@pytest.fixture
def user(django_user_model):
    """Create the purchasing user."""
    return django_user_model.objects.create_user(
        username='buyer',
        email='buyer@example.com',
        password='testpass123',
    )


@pytest.fixture
def other_user(django_user_model):
    """Create a second user who owns nothing."""
    return django_user_model.objects.create_user(
        username='other',
        email='other@example.com',
        password='testpass123',
    )


@pytest.fixture
def paid_tests(db):
    """Published t1 (9900) and t2 (19900), unpublished t3, deleted t4."""
    from django.utils import timezone

    from tests.testapp.models import PaidTest

    return {
        't1': PaidTest.objects.create(id='t1', title='Physics Mock Test', price=9900),
        't2': PaidTest.objects.create(id='t2', title='Chemistry Test Series', price=19900),
        't3': PaidTest.objects.create(id='t3', title='Draft Test', price=4900, is_published=False),
        't4': PaidTest.objects.create(
            id='t4', title='Retired Test', price=4900, deleted_at=timezone.now(),
        ),
    }


@pytest.fixture
def catalog():
    from tests.testapp.catalog import PaidTestCatalog

    return PaidTestCatalog()


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def pending_order(user, paid_tests):
    """Pending order: t1 x1 + t2 x2, subtotal 49700, tax 8946, total 58646."""
    from django_orders.services import checkout

    return checkout(user, [('t1', 1), ('t2', 2)])


@pytest.fixture
def paid_order(pending_order):
    """The pending order after payment pay_1 was confirmed and access granted."""
    from django_orders.reconciliation import on_payment_confirmed

    return on_payment_confirmed(pending_order.pk, 'pay_1', 'paid')
