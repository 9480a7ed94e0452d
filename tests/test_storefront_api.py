import json
import logging
import pathlib
import sqlite3
import sys
import time

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import app as storefront_app
import database
from services.payments import PaymentError, sign_webhook_payload

ADMIN_HEADERS = {'X-Admin-Password': 'correct horse'}
WEBHOOK_SECRET = 'whsec_test_secret'


class FakePaymentClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def create_payment_intent(self, amount, currency='usd', metadata=None):
        self.calls.append((amount, currency, metadata))
        if self.error is not None:
            raise self.error
        return {'clientSecret': 'pi_1_secret_x', 'paymentIntentId': 'pi_1'}


@pytest.fixture
def storefront(tmp_path, monkeypatch):
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    monkeypatch.setattr(database, 'DATA_DIR', data_dir)
    monkeypatch.setattr(database, 'ensure_data_root', lambda: data_dir)
    monkeypatch.setattr(storefront_app, 'ensure_data_root', lambda: data_dir)
    monkeypatch.setattr(storefront_app, '_db_bootstrapped', False)
    storefront_app.app.config['TESTING'] = True

    original_services = storefront_app.app.extensions['storefront']
    payments = FakePaymentClient()
    storefront_app.configure_services(
        storefront_app.app,
        env={},
        quote_engine=original_services.quote_engine,
        payment_client=payments,
        admin_password='correct horse',
        webhook_secret=WEBHOOK_SECRET,
    )
    yield storefront_app.app.test_client(), payments
    storefront_app.app.extensions['storefront'] = original_services


def test_payment_intent_creates_pending_order(storefront):
    client, payments = storefront

    response = client.post('/api/create-payment-intent', json={'amount': 64.99, 'metadata': {'cart': 'c-42'}})

    assert response.status_code == 200
    data = response.get_json()
    assert data['clientSecret'] == 'pi_1_secret_x'
    assert data['paymentIntentId'] == 'pi_1'
    assert payments.calls == [(64.99, 'usd', {'cart': 'c-42'})]

    order = client.get(f"/api/orders/{data['orderId']}").get_json()
    assert order['status'] == 'pending'
    assert order['paymentIntentId'] == 'pi_1'
    assert order['amount'] == 64.99


@pytest.mark.parametrize('payload', [{}, {'amount': 0}, {'amount': -10}, {'amount': 'free'}])
def test_payment_intent_rejects_invalid_amounts(storefront, payload):
    client, payments = storefront
    response = client.post('/api/create-payment-intent', json=payload)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid amount'
    assert payments.calls == []


def test_payment_intent_rejects_oversized_amount(storefront):
    client, payments = storefront
    response = client.post('/api/create-payment-intent', json={'amount': '1e1000000'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid amount'
    assert payments.calls == []


def test_payment_intent_without_configuration(storefront):
    client, _ = storefront
    storefront_app.get_services().payment_client = None
    response = client.post('/api/create-payment-intent', json={'amount': 10})
    assert response.status_code == 500
    assert 'not configured' in response.get_json()['error']


def test_payment_provider_failure_is_a_bad_gateway(storefront):
    client, _ = storefront
    storefront_app.get_services().payment_client = FakePaymentClient(error=PaymentError('Your card was declined.'))
    response = client.post('/api/create-payment-intent', json={'amount': 10})
    assert response.status_code == 502
    assert response.get_json()['error'] == 'Your card was declined.'


def test_product_crud_requires_admin_password(storefront):
    client, _ = storefront
    product = {'name': 'Pro Jersey 2025', 'price': 74.99, 'category': 'apparel'}

    assert client.post('/api/products', json=product).status_code == 403
    assert client.post('/api/products', json=product, headers={'X-Admin-Password': 'nope'}).status_code == 403

    created = client.post('/api/products', json=product, headers=ADMIN_HEADERS)
    assert created.status_code == 201
    product_id = created.get_json()['id']

    listed = client.get('/api/products').get_json()
    assert [item['name'] for item in listed] == ['Pro Jersey 2025']

    updated = client.put(f'/api/products/{product_id}', json={'price': 59.99}, headers=ADMIN_HEADERS)
    assert updated.get_json()['price'] == 59.99
    assert updated.get_json()['name'] == 'Pro Jersey 2025'

    assert client.delete(f'/api/products/{product_id}', headers=ADMIN_HEADERS).status_code == 200
    assert client.get(f'/api/products/{product_id}').status_code == 404


@pytest.mark.parametrize(
    'payload',
    [{'price': 10}, {'name': '  ', 'price': 10}, {'name': 'Mug', 'price': -1}, {'name': 'Mug', 'price': '12'}],
)
def test_product_validation(storefront, payload):
    client, _ = storefront
    response = client.post('/api/products', json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 400


def test_admin_routes_disabled_without_configured_password(storefront):
    client, _ = storefront
    storefront_app.get_services().admin_password = None
    response = client.get('/api/orders', headers={'X-Admin-Password': ''})
    assert response.status_code == 403


def test_order_listing_for_admin(storefront):
    client, _ = storefront
    client.post('/api/create-payment-intent', json={'amount': 12})
    orders = client.get('/api/orders', headers=ADMIN_HEADERS).get_json()
    assert len(orders) == 1
    assert client.get('/api/orders/missing').status_code == 404


def _payment_event(event_type, intent_id):
    return json.dumps({
        'id': 'evt_1',
        'type': event_type,
        'data': {'object': {'id': intent_id, 'object': 'payment_intent'}},
    }).encode('utf-8')


def _post_webhook(client, body, secret=WEBHOOK_SECRET):
    signature = sign_webhook_payload(body, secret, int(time.time()))
    return client.post(
        '/api/webhook', data=body, content_type='application/json', headers={'Stripe-Signature': signature}
    )


@pytest.mark.parametrize('event_type, status', [
    ('payment_intent.succeeded', 'accepted'),
    ('payment_intent.payment_failed', 'declined'),
])
def test_webhook_updates_order_status(storefront, event_type, status):
    client, _ = storefront
    order_id = client.post('/api/create-payment-intent', json={'amount': 30}).get_json()['orderId']

    response = _post_webhook(client, _payment_event(event_type, 'pi_1'))

    assert response.status_code == 200
    assert response.get_json() == {'received': True}
    order = client.get(f'/api/orders/{order_id}').get_json()
    assert order['status'] == status
    assert order['paymentIntentId'] == 'pi_1'


def test_webhook_rejects_bad_signature(storefront):
    client, _ = storefront
    order_id = client.post('/api/create-payment-intent', json={'amount': 30}).get_json()['orderId']

    response = _post_webhook(client, _payment_event('payment_intent.succeeded', 'pi_1'), secret='whsec_wrong')

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Webhook signature verification failed'
    assert client.get(f'/api/orders/{order_id}').get_json()['status'] == 'pending'


def test_webhook_without_signature_header(storefront):
    client, _ = storefront
    response = client.post('/api/webhook', data=_payment_event('payment_intent.succeeded', 'pi_1'))
    assert response.status_code == 400


def test_webhook_ignores_unhandled_event_types(storefront):
    client, _ = storefront
    order_id = client.post('/api/create-payment-intent', json={'amount': 30}).get_json()['orderId']

    response = _post_webhook(client, _payment_event('charge.refunded', 'pi_1'))

    assert response.status_code == 200
    assert response.get_json() == {'received': True}
    assert client.get(f'/api/orders/{order_id}').get_json()['status'] == 'pending'


def test_webhook_for_unknown_intent_is_acknowledged(storefront):
    client, _ = storefront
    response = _post_webhook(client, _payment_event('payment_intent.succeeded', 'pi_unknown'))
    assert response.status_code == 200


def test_webhook_requires_configured_secret(storefront):
    client, _ = storefront
    storefront_app.get_services().webhook_secret = None
    response = _post_webhook(client, _payment_event('payment_intent.succeeded', 'pi_1'))
    assert response.status_code == 500


def test_unsaved_order_logs_payment_intent(storefront, monkeypatch, caplog):
    client, _ = storefront

    def failing_insert(*args, **kwargs):
        raise sqlite3.OperationalError('database is locked')

    monkeypatch.setattr(storefront_app, 'insert_document', failing_insert)
    with caplog.at_level(logging.ERROR):
        response = client.post('/api/create-payment-intent', json={'amount': 30})

    assert response.status_code == 500
    assert response.get_json()['success'] is False
    assert 'pi_1' in caplog.text
