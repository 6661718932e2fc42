"""Tests for the orders JSON API."""

import hashlib
import hmac
import json
import uuid
from unittest import mock

import pytest
from django.urls import reverse

from django_orders.exceptions import ConflictError
from django_orders.models import AccessGrant, Order
from django_orders.services import checkout


def webhook_signature(body: bytes) -> str:
    return hmac.new(b'test-webhook-secret', body, hashlib.sha256).hexdigest()


@pytest.fixture
def api(client, user):
    client.force_login(user)
    return client


def post_json(client, url, data):
    return client.post(url, data=json.dumps(data), content_type='application/json')


@pytest.mark.django_db
class TestOrdersEndpoint:
    """Tests for GET/POST orders/."""

    def test_requires_login(self, client):
        response = client.get(reverse('django_orders:orders'))

        assert response.status_code == 401
        assert response.json()['code'] == 'UNAUTHENTICATED'

    def test_checkout(self, api, paid_tests):
        response = post_json(api, reverse('django_orders:orders'), {
            'items': [{'item_id': 't1', 'quantity': 1}, {'item_id': 't2', 'quantity': 2}],
            'billing_address': {'name': 'Asha', 'city': 'Pune'},
        })

        assert response.status_code == 201
        order = response.json()['order']
        assert order['status'] == 'pending'
        assert order['total'] == 58646
        assert len(order['items']) == 2
        assert order['events'][0]['message'] == 'Order created'

    def test_checkout_empty_cart(self, api, paid_tests):
        response = post_json(api, reverse('django_orders:orders'), {'items': []})

        assert response.status_code == 400
        assert response.json()['code'] == 'EMPTY_CART'

    def test_checkout_unpublished_item(self, api, paid_tests):
        response = post_json(api, reverse('django_orders:orders'), {
            'items': [{'item_id': 't3', 'quantity': 1}],
        })

        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_CART'
        assert Order.objects.count() == 0

    def test_checkout_bad_json(self, api):
        response = api.post(reverse('django_orders:orders'), data='{', content_type='application/json')

        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_REQUEST'

    def test_list_with_status_filter(self, api, user, pending_order, paid_tests):
        response = api.get(reverse('django_orders:orders'), {'status': 'pending', 'limit': 5})

        assert response.status_code == 200
        data = response.json()
        assert [o['id'] for o in data['orders']] == [str(pending_order.pk)]
        assert data['pagination'] == {'total': 1, 'page': 1, 'limit': 5, 'total_pages': 1}

    def test_list_bad_page(self, api):
        response = api.get(reverse('django_orders:orders'), {'page': 'x'})

        assert response.status_code == 400


@pytest.mark.django_db
class TestOrderDetailEndpoint:

    def test_owner_sees_order(self, api, pending_order):
        response = api.get(reverse('django_orders:order_detail', args=[pending_order.pk]))

        assert response.status_code == 200
        assert response.json()['order']['order_number'] == pending_order.order_number

    def test_other_user_gets_404(self, client, other_user, pending_order):
        client.force_login(other_user)

        response = client.get(reverse('django_orders:order_detail', args=[pending_order.pk]))

        assert response.status_code == 404
        assert response.json()['code'] == 'ORDER_NOT_FOUND'

    def test_missing_and_malformed_ids_match(self, api):
        missing = api.get(reverse('django_orders:order_detail', args=[uuid.uuid4()]))
        malformed = api.get(reverse('django_orders:order_detail', args=['nope']))

        assert missing.status_code == malformed.status_code == 404


@pytest.mark.django_db
class TestCancelEndpoint:

    def test_cancel_paid_order_refunds(self, api, user, paid_order):
        response = api.post(reverse('django_orders:order_cancel', args=[paid_order.pk]))

        assert response.status_code == 200
        data = response.json()
        assert data['refunded'] is True
        assert data['order']['status'] == 'refunded'
        assert AccessGrant.objects.filter(order=paid_order).active().count() == 0

    def test_cancel_completed_order(self, api, paid_order):
        Order.objects.filter(pk=paid_order.pk).update(status='completed')

        response = api.post(reverse('django_orders:order_cancel', args=[paid_order.pk]))

        assert response.status_code == 400
        assert response.json()['code'] == 'ORDER_CANNOT_BE_CANCELLED'

    def test_get_not_allowed(self, api, pending_order):
        response = api.get(reverse('django_orders:order_cancel', args=[pending_order.pk]))

        assert response.status_code == 405


@pytest.mark.django_db
class TestPaymentEndpoints:

    def test_start_payment(self, api, pending_order):
        response = api.post(reverse('django_orders:order_payment', args=[pending_order.pk]))

        assert response.status_code == 200
        data = response.json()
        assert data['gateway_order_id'].startswith('order_')
        assert data['amount'] == 58646

    def test_verify(self, api, pending_order):
        gateway_order_id = api.post(
            reverse('django_orders:order_payment', args=[pending_order.pk])
        ).json()['gateway_order_id']
        signature = hmac.new(
            b'test-key-secret', f"{gateway_order_id}|pay_1".encode(), hashlib.sha256,
        ).hexdigest()

        response = post_json(api, reverse('django_orders:payment_verify'), {
            'razorpay_order_id': gateway_order_id,
            'razorpay_payment_id': 'pay_1',
            'razorpay_signature': signature,
        })

        assert response.status_code == 200
        assert response.json()['order']['status'] == 'processing'

    def test_verify_bad_signature(self, api, pending_order):
        response = post_json(api, reverse('django_orders:payment_verify'), {
            'gateway_order_id': 'order_x',
            'payment_id': 'pay_1',
            'signature': 'bad',
        })

        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_SIGNATURE'

    def test_verify_missing_fields(self, api):
        response = post_json(api, reverse('django_orders:payment_verify'), {'payment_id': 'pay_1'})

        assert response.status_code == 400


@pytest.mark.django_db
class TestWebhookEndpoint:
    """Tests for payments/webhook/."""

    @pytest.fixture
    def started_order(self, api, pending_order):
        api.post(reverse('django_orders:order_payment', args=[pending_order.pk]))
        pending_order.refresh_from_db()
        return pending_order

    def send(self, client, event, signature=None):
        body = json.dumps(event).encode()
        headers = {}
        if signature is not False:
            headers['HTTP_X_RAZORPAY_SIGNATURE'] = signature or webhook_signature(body)
        return client.post(
            reverse('django_orders:payment_webhook'),
            data=body,
            content_type='application/json',
            **headers,
        )

    def captured(self, order):
        return {
            'event': 'payment.captured',
            'payload': {'payment': {'entity': {
                'id': 'pay_1', 'order_id': order.gateway_order_id, 'status': 'captured',
            }}},
        }

    def test_captured_marks_paid(self, client, started_order):
        response = self.send(client, self.captured(started_order))

        assert response.status_code == 200
        assert response.json() == {'received': True}
        started_order.refresh_from_db()
        assert started_order.status == 'processing'

    def test_replayed_webhook(self, client, started_order):
        self.send(client, self.captured(started_order))
        response = self.send(client, self.captured(started_order))

        assert response.status_code == 200
        started_order.refresh_from_db()
        assert started_order.status == 'processing'
        assert AccessGrant.objects.filter(order=started_order).count() == 2

    def test_missing_signature(self, client, started_order):
        response = self.send(client, self.captured(started_order), signature=False)

        assert response.status_code == 400
        started_order.refresh_from_db()
        assert started_order.status == 'pending'

    def test_bad_signature(self, client, started_order):
        response = self.send(client, self.captured(started_order), signature='0' * 64)

        assert response.status_code == 400
        started_order.refresh_from_db()
        assert started_order.status == 'pending'

    def test_processing_error_still_acknowledged(self, client, started_order):
        with mock.patch(
            'django_orders.views.handle_gateway_event',
            side_effect=ConflictError('changed concurrently'),
        ):
            response = self.send(client, self.captured(started_order))

        assert response.status_code == 200
        assert response.json() == {'error': 'Error processing event'}

    def test_unknown_gateway_order_acknowledged(self, client, db):
        response = self.send(client, {
            'event': 'payment.captured',
            'payload': {'payment': {'entity': {'id': 'pay_1', 'order_id': 'order_missing'}}},
        })

        assert response.status_code == 200
        assert response.json() == {'received': True}

    def test_events_without_payment_id_acknowledged(self, api, user, started_order):
        second = checkout(user, [('t1', 1)])
        api.post(reverse('django_orders:order_payment', args=[second.pk]))
        second.refresh_from_db()

        for order in (started_order, second):
            event = self.captured(order)
            del event['payload']['payment']['entity']['id']
            response = self.send(api, event)

            assert response.status_code == 200
            assert response.json() == {'received': True}

        assert Order.objects.filter(payment_status='paid').count() == 0
