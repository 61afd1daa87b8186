"""
Local HTTP agent the till UI talks to.

Everything here answers from the device: catalog and users come from the
cache (refreshed when the remote service answers), sales are written to the
local store first and synced in the background.
"""
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

import offline_config as cfg
from catalog_cache import CatalogCache, UserDirectory
from connectivity import ConnectivityMonitor
from offline_store import LocalStore, open_store
from pos_api import PosApiClient
from sale_recorder import EmptyCartError, SaleRecorder, SaleSaveError
from sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def _truthy(value: Optional[str]) -> bool:
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _error(message: str, status: int):
    return jsonify({'success': False, 'message': message}), status


def _validate_sale_payload(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return 'Invalid JSON payload'
    items = data.get('items')
    if not isinstance(items, list):
        return 'Items are required'
    return None


def create_app(
    store: Optional[LocalStore] = None,
    client: Optional[PosApiClient] = None,
    engine: Optional[SyncEngine] = None,
    monitor: Optional[ConnectivityMonitor] = None,
) -> Flask:
    store = store or open_store()
    client = client or PosApiClient()
    engine = engine or SyncEngine(store, client)
    monitor = monitor or ConnectivityMonitor(client.ping)
    catalog = CatalogCache(store, client)
    users = UserDirectory(store, client)
    recorder = SaleRecorder(store, engine=engine, is_online=monitor.is_online)

    app = Flask(__name__)
    app.logger.setLevel(cfg.log_level())
    logging.getLogger('werkzeug').setLevel(cfg.log_level())
    app.config['POS_STORE'] = store
    app.config['POS_ENGINE'] = engine
    app.config['POS_MONITOR'] = monitor

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        if 'Expires' in response.headers:
            del response.headers['Expires']
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    @app.route('/health')
    def health():
        return jsonify({
            'success': True,
            'online': monitor.is_online(),
            'pending': store.count_unsynced(),
            'sync_state': engine.state,
        })

    @app.route('/api/products')
    def products():
        return jsonify({'success': True, 'products': catalog.load_catalog()})

    @app.route('/api/products/barcode/<code>')
    def product_by_barcode(code: str):
        product = catalog.find_by_barcode(code)
        if not product:
            return _error(f'Product not found ({code})', 404)
        return jsonify({'success': True, 'product': product})

    @app.route('/api/users')
    def user_list():
        return jsonify({'success': True, 'users': users.load_users()})

    @app.route('/api/sales', methods=['POST'])
    def create_sale():
        data = request.get_json(silent=True)
        problem = _validate_sale_payload(data)
        if problem:
            return _error(problem, 400)
        try:
            sale = recorder.finalize_sale(data['items'], data.get('paymentMode') or 'Cash',
                                          discount=data.get('discount'))
        except EmptyCartError as exc:
            return _error(str(exc), 400)
        except SaleSaveError as exc:
            return _error(str(exc), 500)
        except ValueError as exc:
            return _error(str(exc), 400)
        return jsonify({'success': True, 'sale': sale}), 201

    @app.route('/api/sales/pending')
    def pending_sales():
        sales = store.get_unsynced()
        return jsonify({'success': True, 'count': len(sales), 'sales': sales})

    @app.route('/api/sync', methods=['POST'])
    def sync_now():
        if _truthy(request.args.get('wait')):
            result: Dict[str, Any] = engine.drain('manual')
            return jsonify({'success': result['status'] not in ('failed',), 'result': result})
        queued = engine.request_sync('manual')
        return jsonify({'success': True, 'queued': queued}), 202

    @app.route('/api/sync/status')
    def sync_status():
        return jsonify({'success': True, 'online': monitor.is_online(), **engine.status()})

    @app.route('/api/sync/requeue/<invoice_id>', methods=['POST'])
    def sync_requeue(invoice_id: str):
        if not engine.requeue(invoice_id):
            return _error(f'No rejection history for {invoice_id}', 404)
        return jsonify({'success': True, 'invoiceId': invoice_id})

    return app


def start_background(app: Flask) -> None:
    """Start the connectivity monitor and sync worker attached to ``app``."""
    engine: SyncEngine = app.config['POS_ENGINE']
    monitor: ConnectivityMonitor = app.config['POS_MONITOR']
    monitor.add_listener(lambda: engine.request_sync('online'))
    engine.start()
    monitor.start()


def stop_background(app: Flask) -> None:
    app.config['POS_MONITOR'].stop()
    app.config['POS_ENGINE'].stop()
