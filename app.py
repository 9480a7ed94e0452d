import os
import hmac
import socket
import sys
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from database import (
    DocumentNotFoundError,
    delete_document,
    find_document,
    get_db_connection,
    get_document,
    init_db,
    insert_document,
    list_documents,
    update_document,
)
from data_paths import ensure_data_root
from services.payments import (
    PaymentClient,
    PaymentError,
    WebhookSignatureError,
    build_payment_client,
    to_minor_units,
    verify_webhook_event,
)
from services.postal import build_estimator
from services.rate_api import build_rate_client
from services.validation import ShippingError, ValidationError, parse_quote_request
from services.zones import describe_zones
from shipcostestimate import (
    ALGORITHM,
    DEFAULT_ORIGIN_ZIP,
    FIXED_BASE_COST,
    QuoteEngine,
)

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
DEFAULT_PORT = 5002
CURRENCY = 'USD'
ESTIMATED_DELIVERY = '3-5 business days'

# ZIPs quoted by the formula check endpoint, nearest to farthest from the origin.
FORMULA_SAMPLE_ZIPS = [
    '11549', '10001', '19101', '20001', '60601',
    '33101', '75201', '80201', '98101', '90210',
]

# Order status applied for each payment provider event.
WEBHOOK_ORDER_STATUS = {
    'payment_intent.succeeded': 'accepted',
    'payment_intent.payment_failed': 'declined',
}

app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False
app.secret_key = os.environ.get('FLASK_SECRET_KEY') or os.urandom(24)

_db_bootstrapped = False


@dataclass
class StorefrontServices:
    """Collaborators constructed once at start-up and shared by every request."""

    quote_engine: QuoteEngine
    payment_client: Optional[PaymentClient] = None
    admin_password: Optional[str] = None
    webhook_secret: Optional[str] = None


def configure_services(flask_app: Flask, env: Optional[Mapping[str, str]] = None, **overrides) -> StorefrontServices:
    """Build storefront collaborators from ``env`` and attach them to ``flask_app``.

    Keyword overrides (``quote_engine``, ``payment_client``, ``admin_password``,
    ``webhook_secret``) replace the environment-built collaborator of the same name.
    """
    env = os.environ if env is None else env
    if 'quote_engine' not in overrides:
        estimator = build_estimator(
            env.get('SHIPPING_ORIGIN_ZIP') or DEFAULT_ORIGIN_ZIP,
            env.get('SHIPPING_ZIP_DATABASE') or None,
        )
        overrides['quote_engine'] = QuoteEngine(estimator, rate_client=build_rate_client(env))
    settings = {
        'payment_client': build_payment_client(env),
        'admin_password': env.get('ADMIN_PASSWORD') or None,
        'webhook_secret': env.get('PAYMENT_WEBHOOK_SECRET') or None,
    }
    settings.update(overrides)
    services = StorefrontServices(**settings)
    flask_app.extensions['storefront'] = services
    flask_app.logger.info(
        'Shipping origin %s, carrier rates %s, payments %s',
        services.quote_engine.origin.code,
        'enabled' if services.quote_engine.rate_client else 'disabled',
        'enabled' if services.payment_client else 'disabled',
    )
    return services


def get_services() -> StorefrontServices:
    return app.extensions['storefront']


configure_services(app)


@app.before_request
def _ensure_database_initialized():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        ensure_data_root()
        init_db()
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to initialize database before request: %s", exc)


def _error(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


@app.errorhandler(HTTPException)
def _handle_http_error(exc):
    return _error(exc.description or exc.name, exc.code or 500)


@app.errorhandler(Exception)
def _handle_unexpected_error(exc):
    app.logger.exception('Unhandled error serving %s %s', request.method, request.path)
    message = str(exc) if app.debug else 'Internal server error'
    return _error(message, 500)


def _require_admin():
    """Return an error response unless the request carries the admin password."""
    expected = get_services().admin_password
    if not expected:
        return _error('Admin access is not configured.', 403)
    supplied = request.headers.get('X-Admin-Password', '')
    if not hmac.compare_digest(supplied.encode('utf-8'), expected.encode('utf-8')):
        return _error('Admin password required.', 403)
    return None


# --- Shipping ---

@app.route('/api/calculate-shipping', methods=['POST'])
def calculate_shipping():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        app.logger.info(
            'Shipping calculation request: zip=%s country=%s',
            payload.get('destinationZip'), payload.get('destinationCountry'),
        )
    try:
        quote_request = parse_quote_request(payload)
        result = get_services().quote_engine.quote(quote_request)
    except ShippingError as exc:
        app.logger.info('Rejected shipping request: %s', exc.message)
        return _error(exc.message, exc.status_code)

    app.logger.info('Calculated shipping cost: %.2f (%s)', result.total_cost, result.rate_source)
    response = {'success': True}
    response.update(result.to_dict())
    response['currency'] = CURRENCY
    response['estimatedDelivery'] = ESTIMATED_DELIVERY
    response['algorithm'] = ALGORITHM
    return jsonify(response), 200


@app.route('/api/shipping/zones', methods=['GET'])
def get_shipping_zones():
    engine = get_services().quote_engine
    return jsonify({'origin': engine.origin.code, 'zones': describe_zones()}), 200


def _formula_description(engine: QuoteEngine) -> Dict[str, Any]:
    origin = engine.origin
    return {
        'description': ALGORITHM['description'],
        'fixedInputs': {
            'packageBillableWeight': '1.0 lb',
            'carrierBaseCost': '$8.50',
            'fixedOverhead': '$15.00 (Packaging + Handling)',
            'originZip': f'{origin.code} ({origin.city}, {origin.state})',
        },
        'baseCost': FIXED_BASE_COST,
    }


@app.route('/api/test-shipping-formula', methods=['GET'])
def shipping_formula_samples():
    engine = get_services().quote_engine
    results: List[Dict[str, Any]] = []
    for zip_code in FORMULA_SAMPLE_ZIPS:
        try:
            result = engine.quote_postal_code(zip_code)
        except ShippingError as exc:
            results.append({'zip': zip_code, 'error': exc.message})
            continue
        entry = {'zip': zip_code}
        entry.update(result.to_dict())
        results.append(entry)
    return jsonify({
        'formula': _formula_description(engine),
        'testResults': results,
        'shippingZones': describe_zones(),
    }), 200


@app.route('/api/test-shipping-formula', methods=['POST'])
def shipping_formula_for_zip():
    payload = request.get_json(silent=True) or {}
    zip_code = payload.get('zip') if isinstance(payload, dict) else None
    if not zip_code:
        return _error('ZIP code is required', 400)
    engine = get_services().quote_engine
    try:
        result = engine.quote_postal_code(zip_code)
    except ShippingError as exc:
        return _error(exc.message, exc.status_code)
    response = {'success': True, 'zip': zip_code}
    response.update(result.to_dict())
    response['formula'] = {
        'description': ALGORITHM['description'],
        'calculation': f"${FIXED_BASE_COST:.2f} + ${result.zone.surcharge:.2f} = ${result.total_cost:.2f}",
    }
    return jsonify(response), 200


# --- Checkout ---

@app.route('/api/create-payment-intent', methods=['POST'])
def create_payment_intent():
    client = get_services().payment_client
    if client is None:
        app.logger.error('Payment API key is not configured on the server.')
        return _error('Payment system not configured. Please contact support.', 500)

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    amount = payload.get('amount')
    currency = str(payload.get('currency') or 'usd')
    metadata = payload.get('metadata') if isinstance(payload.get('metadata'), dict) else {}
    try:
        to_minor_units(amount)
    except ValueError:
        return _error('Invalid amount', 400)

    app.logger.info('Creating payment intent for amount: %s %s', amount, currency)
    try:
        intent = client.create_payment_intent(amount, currency=currency, metadata=metadata)
    except PaymentError as exc:
        app.logger.warning('Payment intent failed: %s', exc)
        return _error(str(exc), 502)

    conn = get_db_connection()
    try:
        order = insert_document(conn, 'orders', {
            'status': 'pending',
            'amount': amount,
            'currency': currency.lower(),
            'paymentIntentId': intent['paymentIntentId'],
            'metadata': metadata,
        })
    except sqlite3.Error:
        app.logger.exception(
            'Payment intent %s was created but its order could not be saved', intent['paymentIntentId']
        )
        return _error('Order could not be saved. Please contact support.', 500)
    finally:
        conn.close()

    return jsonify({
        'clientSecret': intent['clientSecret'],
        'paymentIntentId': intent['paymentIntentId'],
        'orderId': order['id'],
    }), 200


@app.route('/api/webhook', methods=['POST'])
def payment_webhook():
    """Apply payment provider events to the matching order."""
    secret = get_services().webhook_secret
    if not secret:
        app.logger.error('Payment webhook secret is not configured on the server.')
        return _error('Webhook not configured.', 500)

    try:
        event = verify_webhook_event(request.get_data(), request.headers.get('Stripe-Signature'), secret)
    except WebhookSignatureError as exc:
        app.logger.warning('Webhook signature verification failed: %s', exc)
        return _error('Webhook signature verification failed', 400)

    status = WEBHOOK_ORDER_STATUS.get(event['type'])
    if status is None:
        app.logger.info('Unhandled event type: %s', event['type'])
        return jsonify({'received': True}), 200

    data = event.get('data')
    intent = data.get('object') if isinstance(data, dict) else None
    intent_id = intent.get('id') if isinstance(intent, dict) else None
    if not isinstance(intent_id, str):
        return _error('Webhook event has no payment intent id', 400)

    conn = get_db_connection()
    try:
        order = find_document(conn, 'orders', 'paymentIntentId', intent_id)
        update_document(conn, 'orders', order['id'], {'status': status})
    except DocumentNotFoundError:
        app.logger.warning('No order recorded for payment intent %s (%s)', intent_id, event['type'])
        return jsonify({'received': True}), 200
    finally:
        conn.close()

    app.logger.info('Order %s marked %s for payment intent %s', order['id'], status, intent_id)
    return jsonify({'received': True}), 200


# --- Products & orders ---

def _clean_product(payload: Any, partial: bool = False) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    product = dict(payload)
    if 'name' in product or not partial:
        name = product.get('name')
        if not isinstance(name, str) or not name.strip():
            raise ValidationError('Product name is required')
        product['name'] = name.strip()
    if 'price' in product or not partial:
        price = product.get('price')
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise ValidationError('Product price must be a non-negative number')
    return product


@app.route('/api/products', methods=['GET'])
def get_products():
    conn = get_db_connection()
    try:
        return jsonify(list_documents(conn, 'products')), 200
    finally:
        conn.close()


@app.route('/api/products/<string:product_id>', methods=['GET'])
def get_product(product_id):
    conn = get_db_connection()
    try:
        return jsonify(get_document(conn, 'products', product_id)), 200
    except DocumentNotFoundError as exc:
        return _error(str(exc), 404)
    finally:
        conn.close()


@app.route('/api/products', methods=['POST'])
def add_product():
    denied = _require_admin()
    if denied:
        return denied
    try:
        product = _clean_product(request.get_json(silent=True))
    except ValidationError as exc:
        return _error(exc.message, 400)
    conn = get_db_connection()
    try:
        created = insert_document(conn, 'products', product)
    except sqlite3.Error as e:
        app.logger.error(f"DB err add product: {e}")
        return _error('DB error.', 500)
    finally:
        conn.close()
    app.logger.info('Product %s created', created['id'])
    return jsonify(created), 201


@app.route('/api/products/<string:product_id>', methods=['PUT'])
def update_product(product_id):
    denied = _require_admin()
    if denied:
        return denied
    try:
        changes = _clean_product(request.get_json(silent=True), partial=True)
    except ValidationError as exc:
        return _error(exc.message, 400)
    conn = get_db_connection()
    try:
        return jsonify(update_document(conn, 'products', product_id, changes)), 200
    except DocumentNotFoundError as exc:
        return _error(str(exc), 404)
    finally:
        conn.close()


@app.route('/api/products/<string:product_id>', methods=['DELETE'])
def delete_product(product_id):
    denied = _require_admin()
    if denied:
        return denied
    conn = get_db_connection()
    try:
        delete_document(conn, 'products', product_id)
    except DocumentNotFoundError as exc:
        return _error(str(exc), 404)
    finally:
        conn.close()
    return jsonify({'success': True}), 200


@app.route('/api/orders', methods=['GET'])
def get_orders():
    denied = _require_admin()
    if denied:
        return denied
    conn = get_db_connection()
    try:
        return jsonify(list_documents(conn, 'orders')), 200
    finally:
        conn.close()


@app.route('/api/orders/<string:order_id>', methods=['GET'])
def get_order(order_id):
    conn = get_db_connection()
    try:
        return jsonify(get_document(conn, 'orders', order_id)), 200
    except DocumentNotFoundError as exc:
        return _error(str(exc), 404)
    finally:
        conn.close()


@app.route('/api/health', methods=['GET'])
def health():
    engine = get_services().quote_engine
    return jsonify({'status': 'ok', 'postalCodes': len(engine.estimator.directory)}), 200


def is_port_in_use(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(('127.0.0.1', port)) == 0


def main():
    port = int(os.environ.get('PORT') or DEFAULT_PORT)
    if is_port_in_use(port):
        print(f"Port {port} is already in use.")
        sys.exit(1)
    init_db()
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    main()
