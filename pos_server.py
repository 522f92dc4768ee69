"""
JSON HTTP adapter for the till UI.

All amounts cross this boundary as decimal strings ("12.50") and are turned
into minor units here; the engine behind it never sees floats.
"""
from flask import Flask, jsonify, request
from typing import Any, Dict, List, Optional

import money
from cart import Product, line_ref
from payments import AllocationError
from pos_service import CartInUse, EmptyCart, PosService
from pos_store import (
    ImmutableTransaction,
    InvalidTransition,
    LocalWriteFailure,
    PriceNotFound,
    TransactionNotFound,
)


def _error(message: str, code: int, **extra):
    body = {'status': 'error', 'message': message}
    body.update(extra)
    return jsonify(body), code


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _amount(data: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    raw = data.get(key)
    if raw in (None, ''):
        return default
    return money.from_decimal(raw, allow_negative=True)


def _parse_payments(raw: Any) -> List[Dict[str, Any]]:
    if raw in (None, ''):
        return []
    if not isinstance(raw, list):
        raise money.InvalidAmount('payments must be a list')
    parsed = []
    for idx, p in enumerate(raw, start=1):
        if not isinstance(p, dict):
            raise money.InvalidAmount(f'Payment #{idx} is invalid')
        parsed.append({
            'method': p.get('method'),
            'amount_minor': money.from_decimal(p.get('amount', '0'), allow_negative=True),
            'note': p.get('note'),
        })
    return parsed


def _parse_purchase_lines(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise money.InvalidAmount('lines must be a non-empty list')
    parsed = []
    for idx, line in enumerate(raw, start=1):
        if not isinstance(line, dict):
            raise money.InvalidAmount(f'Line #{idx} is invalid')
        if line.get('unit_cost') in (None, ''):
            raise money.InvalidAmount(f'Line #{idx} needs a unit_cost')
        parsed.append({
            'product_id': line.get('product_id'),
            'variation_id': line.get('variation_id'),
            'name': line.get('name'),
            'unit_price_minor': money.from_decimal(line.get('unit_cost')),
            'quantity': line.get('quantity', 1),
            'discount_minor': _amount(line, 'discount', 0),
            'tax_minor': _amount(line, 'tax', 0),
        })
    return parsed


def create_app(service: PosService, catalog_names: Any = None) -> Flask:
    """Build the Flask app around one PosService (one till, one cart)."""
    app = Flask(__name__)
    app.config['POS_SERVICE'] = service

    def _product_from(data: Dict[str, Any]) -> Product:
        ref = line_ref(data.get('product_id'), data.get('variation_id'))
        if not ref[0]:
            raise money.InvalidAmount('product_id is required')
        name = data.get('name')
        if not name and catalog_names is not None:
            name = catalog_names(ref[0], ref[1])
        return Product(ref[0], ref[1], name or ref[0], _amount(data, 'tax', 0) or 0)

    @app.errorhandler(money.InvalidAmount)
    def _invalid_amount(exc):
        return _error(str(exc), 400, error='invalid_amount')

    @app.errorhandler(AllocationError)
    def _allocation_error(exc):
        return _error(str(exc), 400, error='allocation_error', reason=exc.reason)

    @app.errorhandler(EmptyCart)
    def _empty_cart(exc):
        return _error(str(exc), 400, error='empty_cart')

    @app.errorhandler(PriceNotFound)
    @app.errorhandler(TransactionNotFound)
    def _not_found(exc):
        return _error(str(exc) or 'Not found', 404, error='not_found')

    @app.errorhandler(CartInUse)
    @app.errorhandler(ImmutableTransaction)
    @app.errorhandler(InvalidTransition)
    def _conflict(exc):
        return _error(str(exc), 409, error='conflict')

    @app.errorhandler(LocalWriteFailure)
    def _local_write(exc):
        app.logger.error('Local write failed: %s', exc)
        return _error('Sale could not be saved locally', 500, error='local_write_failure')

    # ---------- cart ----------
    @app.route('/api/cart')
    def api_cart():
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    @app.route('/api/cart', methods=['DELETE'])
    def api_cart_cancel():
        service.cancel()
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    @app.route('/api/cart/items', methods=['POST'])
    def api_cart_add():
        service.add_or_increment(_product_from(_payload()))
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    @app.route('/api/cart/items/<product_id>/<variation_id>', methods=['PUT', 'PATCH'])
    def api_cart_update(product_id, variation_id):
        data = _payload()
        ref = line_ref(product_id, variation_id)
        if 'quantity' in data:
            service.set_quantity(ref, data['quantity'])
        if 'discount' in data:
            service.set_line_discount(ref, _amount(data, 'discount', 0))
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    @app.route('/api/cart/items/<product_id>/<variation_id>', methods=['DELETE'])
    def api_cart_remove(product_id, variation_id):
        service.remove_line(line_ref(product_id, variation_id))
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    @app.route('/api/cart/adjustments', methods=['POST'])
    def api_cart_adjust():
        data = _payload()
        if 'discount' in data:
            service.set_discount(_amount(data, 'discount', 0))
        if 'shipping' in data:
            service.set_shipping(_amount(data, 'shipping', 0))
        if 'order_tax' in data:
            service.set_order_tax(_amount(data, 'order_tax', 0))
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    # ---------- checkout ----------
    @app.route('/api/checkout', methods=['POST'])
    def api_checkout():
        data = _payload()
        tendered = _amount(data, 'cash_tendered')
        result = service.checkout(
            customer_id=data.get('customer_id'),
            location_id=data.get('location_id'),
            proposed_payments=_parse_payments(data.get('payments')),
            allow_partial=bool(data.get('allow_partial')),
            cash_tendered_minor=tendered,
            note=data.get('note'),
            sync=data.get('sync', True) is not False,
        )
        app.logger.info('Checkout %s: %s', result.transaction.invoice_no, result.message)
        return jsonify(result.as_dict()), 201

    @app.route('/api/purchases', methods=['POST'])
    def api_purchase():
        data = _payload()
        result = service.record_purchase(
            supplier_id=data.get('supplier_id'),
            lines=_parse_purchase_lines(data.get('lines')),
            proposed_payments=_parse_payments(data.get('payments')),
            allow_partial=data.get('allow_partial', True) is not False,
            location_id=data.get('location_id'),
            discount_minor=_amount(data, 'discount', 0),
            shipping_minor=_amount(data, 'shipping', 0),
            order_tax_minor=_amount(data, 'order_tax', 0),
            note=data.get('note'),
            sync=data.get('sync', True) is not False,
        )
        app.logger.info('Purchase %s: %s', result.transaction.invoice_no, result.message)
        return jsonify(result.as_dict()), 201

    # ---------- sales ----------
    @app.route('/api/sales/status')
    def api_sales_status():
        """Counts of local sales per status."""
        return jsonify({'status': 'success', 'counts': service.recorder.status_counts()})

    @app.route('/api/sales/events')
    def api_sales_events():
        try:
            since = int(request.args.get('since', '0'))
        except ValueError:
            return _error('since must be an integer', 400)
        events = service.status_events(since_id=since, local_id=request.args.get('local_id') or None)
        last = events[-1].id if events else since
        return jsonify({'status': 'success', 'events': [e.as_dict() for e in events], 'last_id': last})

    @app.route('/api/sales/parked')
    def api_sales_parked():
        return jsonify({'status': 'success', 'sales': [t.as_dict() for t in service.parked()]})

    @app.route('/api/sales/park', methods=['POST'])
    def api_sales_park():
        data = _payload()
        draft = service.park(customer_id=data.get('customer_id'), note=data.get('note'))
        return jsonify({'status': 'success', 'sale': draft.as_dict()}), 201

    @app.route('/api/sales/<local_id>/resume', methods=['POST'])
    def api_sales_resume(local_id):
        service.resume(local_id)
        return jsonify({'status': 'success', 'cart': service.cart_summary()})

    @app.route('/api/sales/<local_id>')
    def api_sale(local_id):
        return jsonify({'status': 'success', 'sale': service.transaction(local_id).as_dict()})

    @app.route('/api/sales/<local_id>/sync', methods=['POST'])
    def api_sale_sync(local_id):
        result = service.sync_now(local_id)
        sale = service.transaction(local_id).as_dict()
        if result is None:
            return jsonify({'status': 'success', 'message': 'nothing to do', 'sale': sale})
        return jsonify({
            'status': 'success' if result.ok else 'error',
            'message': 'synced' if result.ok else (result.error or 'sync failed'),
            'sale': sale,
        }), (200 if result.ok else 502)

    @app.route('/api/admin/sync/resync', methods=['POST'])
    def api_resync():
        data = _payload()
        try:
            limit = int(data.get('limit') or 20)
        except (TypeError, ValueError):
            return _error('limit must be an integer', 400)
        summary = service.resync(limit=limit)
        app.logger.info('Manual resync: %s', summary)
        return jsonify({'status': 'success', 'summary': summary})

    return app
