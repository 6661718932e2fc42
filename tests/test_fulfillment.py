"""Tests for access grants, revocation and fulfillment retries."""

from datetime import timedelta
from unittest import mock

import pytest
from django.db import DatabaseError
from django.utils import timezone
from freezegun import freeze_time

from django_orders.cancellation import cancel_order
from django_orders.exceptions import FulfillmentRetryableError
from django_orders.fulfillment import (
    grant_access,
    process_fulfillment_retries,
    queue_fulfillment_retry,
    revoke_access,
    user_has_access,
)
from django_orders.models import AccessGrant, FulfillmentRetry, Order
from django_orders.reconciliation import on_payment_confirmed
from django_orders.services import checkout, update_order_status


@pytest.mark.django_db
class TestGrantAccess:
    """Tests for grant_access."""

    def test_paid_order_grants_one_per_item(self, user, paid_order):
        grants = AccessGrant.objects.filter(order=paid_order)

        assert grants.count() == 2
        assert {g.item_id for g in grants} == {'t1', 't2'}
        assert all(g.user_id == user.pk for g in grants)
        assert user_has_access(user, 't1')
        assert user_has_access(user, 't2')

    def test_repeated_grants_are_idempotent(self, paid_order):
        first = grant_access(paid_order)
        second = grant_access(paid_order)

        assert {g.pk for g in first} == {g.pk for g in second}
        assert AccessGrant.objects.filter(order=paid_order).count() == 2

    def test_pending_order_is_not_granted(self, user, pending_order):
        assert grant_access(pending_order) == []
        assert not user_has_access(user, 't1')

    def test_refunded_order_is_not_granted(self, user, paid_order):
        update_order_status(
            paid_order.pk, 'processing', 'refunded', fields={'payment_status': 'refunded'},
        )
        AccessGrant.objects.filter(order=paid_order).delete()

        assert grant_access(paid_order) == []

    def test_cancellation_committed_before_lock_grants_nothing(self, user, paid_order, gateway):
        """A refund that lands while the grant waits for the order row wins."""
        AccessGrant.objects.filter(order=paid_order).delete()
        select_for_update = Order.objects.select_for_update
        cancelled = []

        def cancel_then_lock(*args, **kwargs):
            if not cancelled:
                cancelled.append(cancel_order(paid_order.pk, user, gateway=gateway))
            return select_for_update(*args, **kwargs)

        with mock.patch.object(Order.objects, 'select_for_update', side_effect=cancel_then_lock):
            grants = grant_access(paid_order)

        assert grants == []
        assert cancelled[0].status == 'refunded'
        assert AccessGrant.objects.filter(order=paid_order).active().count() == 0
        assert not user_has_access(user, 't1')

    def test_stale_order_instance_is_rechecked(self, user, paid_order, gateway):
        AccessGrant.objects.filter(order=paid_order).delete()
        cancel_order(paid_order.pk, user, gateway=gateway)

        assert paid_order.status == 'processing'
        assert grant_access(paid_order) == []
        assert AccessGrant.objects.filter(order=paid_order).count() == 0

    def test_database_error_is_retryable(self, paid_order):
        with mock.patch(
            'django_orders.fulfillment.AccessGrant.objects.get_or_create',
            side_effect=DatabaseError('connection lost'),
        ):
            with pytest.raises(FulfillmentRetryableError) as exc_info:
                grant_access(paid_order)

        assert exc_info.value.code == 'FULFILLMENT_RETRY'


@pytest.mark.django_db
class TestRevokeAccess:
    """Tests for revoke_access."""

    def test_revokes_only_that_orders_grants(self, user, paid_order, paid_tests):
        repurchase = checkout(user, [('t1', 1)])
        on_payment_confirmed(repurchase.pk, 'pay_2', 'paid')

        revoked = revoke_access(paid_order, reason='refunded')

        assert revoked == 2
        assert AccessGrant.objects.filter(order=paid_order).active().count() == 0
        other = AccessGrant.objects.get(order=repurchase)
        assert other.is_active
        assert user_has_access(user, 't1')
        assert not user_has_access(user, 't2')

    def test_revoke_is_idempotent(self, paid_order):
        assert revoke_access(paid_order) == 2
        revoked_at = list(
            AccessGrant.objects.filter(order=paid_order).values_list('revoked_at', flat=True)
        )

        assert revoke_access(paid_order) == 0
        assert list(
            AccessGrant.objects.filter(order=paid_order).values_list('revoked_at', flat=True)
        ) == revoked_at

    def test_revoke_keeps_rows(self, paid_order):
        revoke_access(paid_order, reason='refunded')

        grants = AccessGrant.objects.filter(order=paid_order)
        assert grants.count() == 2
        assert set(grants.values_list('revoke_reason', flat=True)) == {'refunded'}

    def test_order_without_grants(self, pending_order):
        assert revoke_access(pending_order) == 0


@pytest.mark.django_db
class TestFulfillmentRetries:
    """Tests for queue_fulfillment_retry and process_fulfillment_retries."""

    def test_queue_keeps_one_pending_per_action(self, paid_order):
        first = queue_fulfillment_retry(paid_order, FulfillmentRetry.Action.GRANT, 'boom')
        second = queue_fulfillment_retry(paid_order, FulfillmentRetry.Action.GRANT, 'boom again')

        assert first.pk == second.pk
        second.refresh_from_db()
        assert second.last_error == 'boom again'
        assert FulfillmentRetry.objects.count() == 1

    def test_retry_not_due_yet_is_skipped(self, paid_order):
        queue_fulfillment_retry(paid_order, FulfillmentRetry.Action.REVOKE, 'boom')

        run = process_fulfillment_retries()

        assert run == (0, 0, 0)

    def test_due_retry_runs_action(self, user, paid_order):
        retry = queue_fulfillment_retry(paid_order, FulfillmentRetry.Action.REVOKE, 'boom')

        with freeze_time(timezone.now() + timedelta(minutes=5)):
            run = process_fulfillment_retries()

        assert run.succeeded == 1
        retry.refresh_from_db()
        assert retry.state == FulfillmentRetry.State.SUCCEEDED
        assert retry.attempts == 1
        assert not user_has_access(user, 't1')

    def test_failed_retry_backs_off_then_gives_up(self, paid_order, settings):
        settings.ORDERS_FULFILLMENT_MAX_ATTEMPTS = 2
        settings.ORDERS_RETRY_BACKOFF_SECONDS = 10
        retry = queue_fulfillment_retry(paid_order, FulfillmentRetry.Action.REVOKE, 'boom')
        start = timezone.now()

        with mock.patch(
            'django_orders.fulfillment.revoke_access',
            side_effect=FulfillmentRetryableError('still down'),
        ):
            with freeze_time(start + timedelta(seconds=11)):
                run = process_fulfillment_retries()
                retry.refresh_from_db()
                assert run.rescheduled == 1
                assert retry.attempts == 1
                assert retry.next_attempt_at == timezone.now() + timedelta(seconds=20)

            with freeze_time(start + timedelta(seconds=40)):
                run = process_fulfillment_retries()

        assert run.failed == 1
        retry.refresh_from_db()
        assert retry.state == FulfillmentRetry.State.FAILED
        assert retry.attempts == 2
        assert retry.last_error == 'still down'

    def test_grant_retry_heals_missing_grants(self, user, paid_order):
        AccessGrant.objects.filter(order=paid_order).delete()
        queue_fulfillment_retry(paid_order, FulfillmentRetry.Action.GRANT, 'boom')

        with freeze_time(timezone.now() + timedelta(minutes=5)):
            run = process_fulfillment_retries()

        assert run.succeeded == 1
        assert user_has_access(user, 't1')
