from flask import Flask, g, jsonify, request
import requests
import datetime as dt
import logging
import sqlite3
import threading
from functools import wraps
from typing import Any, Dict, List, Optional

import catalog_sync
import pos_config
import pos_store
import shift_service
from attendance_gate import (
    ACTIONS,
    AccessDenied,
    AttendanceEvent,
    AttendanceGate,
    Capability,
    InvalidTransition,
    OutOfOrderEvent,
    allowed_actions,
    capabilities_for,
    parse_timestamp,
)
from checkout_pricing import CheckoutTransaction, LoyaltyAccount, LoyaltyRule, ValidationError, parse_cart_lines
from checkout_service import complete_checkout
from erp_client import ERPNextClient, ERPNextError
from sync_orchestrator import DuplicateDispatch, Notification, SyncOrchestrator
from zatca_tlv import EncodingError

app = Flask(__name__)

try:
    app.logger.setLevel(getattr(logging, pos_config.POS_LOG_LEVEL, logging.INFO))
except Exception:
    app.logger.setLevel(logging.INFO)

POS_DB_PATH = pos_config.POS_DB_PATH
SCHEMA_PATH = pos_config.POS_SCHEMA_PATH
SYNC_MODE = pos_config.SYNC_MODE
EMPLOYEE_HEADER = 'X-Employee-ID'

_SCHEMA_READY = set()
_SCHEMA_LOCK = threading.Lock()
_ORCHESTRATOR: Optional[SyncOrchestrator] = None
_ORCHESTRATOR_LOCK = threading.Lock()
_ERP_CLIENT: Optional[ERPNextClient] = None

_LEVELS = {'info': logging.INFO, 'warning': logging.WARNING, 'error': logging.ERROR}


# ---------- PLUMBING ----------
def _db_connect() -> sqlite3.Connection:
    conn = pos_store.connect(POS_DB_PATH)
    with _SCHEMA_LOCK:
        if POS_DB_PATH not in _SCHEMA_READY:
            pos_store.init_db(conn, SCHEMA_PATH)
            _SCHEMA_READY.add(POS_DB_PATH)
    return conn


def _get_conn() -> sqlite3.Connection:
    if 'db' not in g:
        g.db = _db_connect()
    return g.db


@app.teardown_appcontext
def _close_conn(exc):
    conn = g.pop('db', None)
    if conn is not None:
        conn.close()


def _erp_client() -> ERPNextClient:
    global _ERP_CLIENT
    if _ERP_CLIENT is None:
        _ERP_CLIENT = ERPNextClient.from_env()
    return _ERP_CLIENT


def _log_notification(note: Notification):
    app.logger.log(_LEVELS.get(note.level, logging.INFO), "[sync] %s", note.message)


def _refresh_stock():
    catalog_sync.refresh_stock_job(_erp_client(), POS_DB_PATH, pos_config.POS_WAREHOUSE)


def _get_orchestrator() -> SyncOrchestrator:
    global _ORCHESTRATOR
    with _ORCHESTRATOR_LOCK:
        if _ORCHESTRATOR is None:
            _ORCHESTRATOR = SyncOrchestrator(
                _erp_client(),
                refresh_stock=_refresh_stock,
                notify=_log_notification,
                refresh_delay=pos_config.STOCK_REFRESH_DELAY,
            )
        return _ORCHESTRATOR


def _sync_in_background(sale_id: str):
    """Drain this sale's outbox rows off the request thread."""
    def _run():
        conn = pos_store.connect(POS_DB_PATH)
        try:
            _get_orchestrator().process_outbox(conn, ref_id=sale_id)
        except Exception:
            app.logger.exception("Inline sync failed for sale %s", sale_id)
        finally:
            conn.close()
    thr = threading.Thread(target=_run, name=f'sync-{sale_id}', daemon=True)
    thr.start()
    return thr


def _gate() -> AttendanceGate:
    conn = _get_conn()
    return AttendanceGate(lambda emp: pos_store.attendance_events_for(conn, emp))


def _employee_id() -> str:
    return (request.headers.get(EMPLOYEE_HEADER) or '').strip()


def requires(capability: Capability):
    """Attendance gate for a route: the employee must be present."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            # A missing header resolves to 'absent' and is refused like any other.
            _gate().require(_employee_id(), capability)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def _attempt_rows(report) -> List[Dict[str, Any]]:
    return [
        {'sale_id': a.sale_id, 'target': a.target, 'outcome': a.outcome,
         'erp_docname': a.erp_docname, 'error': a.error}
        for a in report.attempts
    ]


def _capability_names(caps: Capability) -> List[str]:
    return [c.name.lower() for c in Capability if c in caps]


# ---------- ERROR MAPPING ----------
@app.errorhandler(ValidationError)
def _on_validation_error(exc):
    return jsonify({'status': 'error', 'message': str(exc)}), 400


@app.errorhandler(EncodingError)
def _on_encoding_error(exc):
    app.logger.warning("ZATCA encoding failed: %s", exc)
    return jsonify({'status': 'error', 'message': f'ZATCA QR could not be encoded: {exc}'}), 400


@app.errorhandler(AccessDenied)
def _on_access_denied(exc):
    return jsonify({
        'status': 'error',
        'message': str(exc),
        'attendance_status': exc.status,
    }), 403


@app.errorhandler(InvalidTransition)
def _on_invalid_transition(exc):
    return jsonify({'status': 'error', 'message': str(exc), 'attendance_status': exc.status}), 409


@app.errorhandler(OutOfOrderEvent)
def _on_out_of_order_event(exc):
    return jsonify({'status': 'error', 'message': str(exc)}), 400


@app.errorhandler(shift_service.ShiftError)
def _on_shift_error(exc):
    return jsonify({'status': 'error', 'message': str(exc)}), 409


@app.errorhandler(DuplicateDispatch)
def _on_duplicate_dispatch(exc):
    return jsonify({'status': 'error', 'message': str(exc)}), 409


@app.errorhandler(ERPNextError)
def _on_erp_error(exc):
    return jsonify({'status': 'error', 'message': exc.message, 'erp_status': exc.status_code}), 502


@app.errorhandler(requests.RequestException)
def _on_erp_unreachable(exc):
    app.logger.warning("ERPNext unreachable: %s", exc)
    return jsonify({'status': 'error', 'message': f'ERPNext unreachable: {exc}'}), 502


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


# ---------- OPEN ROUTES ----------
@app.route('/api/health')
def api_health():
    return jsonify({
        'status': 'success',
        'erp_configured': _erp_client().configured,
        'sync_mode': SYNC_MODE,
    })


@app.route('/api/attendance/<employee_id>')
def api_attendance_status(employee_id):
    status = _gate().status(employee_id)
    return jsonify({
        'status': 'success',
        'employee_id': employee_id,
        'attendance_status': status,
        'allowed_actions': list(allowed_actions(status)),
        'capabilities': _capability_names(capabilities_for(status)),
    })


@app.route('/api/attendance', methods=['POST'])
def api_attendance_record():
    """Append one attendance event after checking it is a legal next step."""
    data = request.get_json(silent=True) or {}
    employee_id = str(data.get('employee_id') or _employee_id() or '').strip()
    action = str(data.get('action') or '').strip().lower()
    if not employee_id:
        return jsonify({'status': 'error', 'message': 'employee_id is required'}), 400
    if action not in ACTIONS:
        return jsonify({'status': 'error', 'message': f'Unknown attendance action {action!r}'}), 400
    try:
        timestamp = parse_timestamp(data['timestamp']) if data.get('timestamp') else dt.datetime.now()
    except ValueError as exc:
        raise ValidationError(f'Invalid timestamp: {exc}') from None
    conn = _get_conn()
    try:
        event = AttendanceEvent(employee_id, action, timestamp)
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    gate = _gate()
    current = gate.status(employee_id)
    new_status = gate.admit(event)
    pos_store.append_attendance_event(conn, event)
    app.logger.info("Attendance %s for %s: %s -> %s", action, employee_id, current, new_status)
    return jsonify({
        'status': 'success',
        'employee_id': employee_id,
        'attendance_status': new_status,
        'capabilities': _capability_names(capabilities_for(new_status)),
    })


# ---------- CHECKOUT ----------
def _resolve_rows(conn: sqlite3.Connection, rows: Any) -> List[Dict[str, Any]]:
    """Fill missing rate/cost/name from the local catalog."""
    if not isinstance(rows, list) or not rows:
        raise ValidationError('Items are required')
    resolved = []
    for row in rows:
        if not isinstance(row, dict):
            resolved.append(row)
            continue
        row = dict(row)
        code = str(row.get('item_code') or row.get('code') or row.get('id') or '').strip()
        item = pos_store.get_item(conn, code) if code else None
        if item:
            if row.get('rate') is None and row.get('price') is None:
                row['rate'] = item['standard_rate']
            row.setdefault('cost_price', item['valuation_rate'])
            row.setdefault('item_name', item['item_name'])
        resolved.append(row)
    return resolved


def _build_transaction(conn: sqlite3.Connection, data: Dict[str, Any]) -> CheckoutTransaction:
    txn = CheckoutTransaction(rule=LoyaltyRule(), vat_rate=pos_config.VAT_RATE)
    customer_id = str(data.get('customer_id') or '').strip()
    if customer_id:
        account = pos_store.get_loyalty_account(conn, customer_id)
        if account is None:
            customer = data.get('customer') if isinstance(data.get('customer'), dict) else {}
            account = LoyaltyAccount(
                customer_id=customer_id,
                customer_name=customer.get('name') or customer_id,
                phone=customer.get('phone') or '',
                email=customer.get('email') or '',
            )
        txn.account = account
    for line in parse_cart_lines(_resolve_rows(conn, data.get('items'))):
        txn.add_line(line)
    if data.get('redeem_points'):
        txn.activate_redemption(True)
    return txn


@app.route('/api/cart/price', methods=['POST'])
@requires(Capability.POS)
def api_cart_price():
    data = request.get_json(silent=True) or {}
    txn = _build_transaction(_get_conn(), data)
    pricing = txn.price()
    payload = {'status': 'success', 'totals': pricing.display()}
    if txn.account is not None:
        payload['loyalty_points'] = txn.account.points
    return jsonify(payload)


@app.route('/api/checkout', methods=['POST'])
@requires(Capability.CHECKOUT)
def api_checkout():
    """Commit a sale locally, then hand it to ERP sync."""
    data = request.get_json(silent=True) or {}
    conn = _get_conn()
    txn = _build_transaction(conn, data)
    payment_method = data.get('payment_method') or 'Cash'
    sale = complete_checkout(conn, txn, payment_method, cashier=_employee_id())
    try:
        shift_service.record_sale_in_open_shift(conn, sale.pricing.grand_total, sale.payment_method)
    except Exception:
        app.logger.exception("Could not add sale %s to the open shift", sale.sale_id)

    sync = 'queued'
    if SYNC_MODE == 'inline' and _erp_client().configured:
        _sync_in_background(sale.sale_id)
        sync = 'dispatched'
    return jsonify({
        'status': 'success',
        'sale_id': sale.sale_id,
        'created_utc': sale.created_utc,
        'totals': sale.pricing.display(),
        'zatca_qr': sale.zatca_qr,
        'points_earned': sale.points_earned,
        'loyalty_balance': sale.loyalty_balance,
        'sync': sync,
    })


@app.route('/api/sale/<sale_id>')
@requires(Capability.REPORTS)
def api_sale(sale_id):
    conn = _get_conn()
    sale = pos_store.get_sale(conn, sale_id)
    if not sale:
        return jsonify({'status': 'error', 'message': 'Sale not found'}), 404
    sale['outbox'] = pos_store.outbox_status(conn, sale_id)
    sale['sync_attempts'] = pos_store.sync_attempts_for(conn, sale_id)
    return jsonify({'status': 'success', 'sale': sale})


@app.route('/api/notifications')
@requires(Capability.POS)
def api_notifications():
    limit = request.args.get('limit', default=50, type=int)
    return jsonify({'status': 'success', 'notifications': pos_store.list_notifications(_get_conn(), limit)})


@app.route('/api/sync/outbox', methods=['POST'])
@requires(Capability.POS)
def api_sync_outbox():
    if not _erp_client().configured:
        return jsonify({'status': 'error', 'message': 'ERPNext is not configured'}), 503
    report = _get_orchestrator().process_outbox(_get_conn())
    return jsonify({
        'status': 'success',
        'attempts': _attempt_rows(report),
        'refresh_scheduled': report.refresh_scheduled,
    })


@app.route('/api/sync/retry', methods=['POST'])
@requires(Capability.POS)
def api_sync_retry():
    """Requeue a sale's failed ERPNext writes and send them again."""
    data = request.get_json(silent=True) or {}
    sale_id = str(data.get('sale_id') or '').strip()
    target = (str(data.get('target') or '').strip().lower()) or None
    if not sale_id:
        raise ValidationError('sale_id is required')
    if not _erp_client().configured:
        return jsonify({'status': 'error', 'message': 'ERPNext is not configured'}), 503
    try:
        report = _get_orchestrator().requeue_failed(_get_conn(), sale_id, target)
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    if not report.requeued:
        return jsonify({'status': 'error', 'message': f'No retryable writes for sale {sale_id}'}), 409
    return jsonify({
        'status': 'success',
        'requeued': report.requeued,
        'attempts': _attempt_rows(report),
        'outbox': pos_store.outbox_status(_get_conn(), sale_id),
    })


@app.route('/api/sync/stats')
@requires(Capability.REPORTS)
def api_sync_stats():
    return jsonify({'status': 'success', 'outbox': pos_store.outbox_stats(_get_conn())})


# ---------- SHIFTS ----------
@app.route('/api/shift')
@requires(Capability.SHIFT)
def api_shift_current():
    state = shift_service.current_shift(_get_conn())
    return jsonify({'status': 'success', 'shift': state.to_dict() if state else None})


@app.route('/api/shift/open', methods=['POST'])
@requires(Capability.SHIFT)
def api_shift_open():
    data = request.get_json(silent=True) or {}
    client = _erp_client()
    state = shift_service.open_shift(
        _get_conn(),
        client if client.configured else None,
        user=str(data.get('user') or _employee_id()),
        user_name=data.get('user_name') or '',
        opening_cash=data.get('opening_cash', 0),
        branch=data.get('branch'),
        pos_profile=data.get('pos_profile'),
    )
    return jsonify({'status': 'success', 'shift': state.to_dict()})


@app.route('/api/shift/close', methods=['POST'])
@requires(Capability.SHIFT)
def api_shift_close():
    data = request.get_json(silent=True) or {}
    if data.get('actual_cash') is None:
        return jsonify({'status': 'error', 'message': 'actual_cash is required'}), 400
    client = _erp_client()
    report = shift_service.close_shift(
        _get_conn(),
        client if client.configured else None,
        actual_cash=data['actual_cash'],
        notes=data.get('closing_notes') or '',
    )
    return jsonify({'status': 'success', 'x_report': report.to_dict()})


# ---------- CATALOG ----------
@app.route('/api/items')
@requires(Capability.CATALOG)
def api_items():
    conn = _get_conn()
    items = pos_store.list_items(conn)
    for item in items:
        item['stock_qty'] = pos_store.stock_qty(conn, item['item_code'])
    return jsonify({'status': 'success', 'items': items})


@app.route('/api/catalog/sync', methods=['POST'])
@requires(Capability.CATALOG)
def api_catalog_sync():
    client = _erp_client()
    if not client.configured:
        return jsonify({'status': 'error', 'message': 'ERPNext is not configured'}), 503
    conn = _get_conn()
    counts = {
        'items': catalog_sync.pull_items(conn, client),
        'item_groups': catalog_sync.pull_item_groups(conn, client),
        'stock': catalog_sync.refresh_stock(conn, client, pos_config.POS_WAREHOUSE),
    }
    app.logger.info("Catalog sync finished: %s", counts)
    return jsonify({'status': 'success', 'counts': counts})


@app.route('/api/item-groups', methods=['POST'])
@requires(Capability.CATALOG)
def api_item_group_create():
    data = request.get_json(silent=True) or {}
    client = _erp_client()
    if not client.configured:
        return jsonify({'status': 'error', 'message': 'ERPNext is not configured'}), 503
    try:
        doc = catalog_sync.push_item_group(client, data)
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    pos_store.upsert_item_group(_get_conn(), {
        'name': doc.get('name') or data.get('item_group_name'),
        'item_group_name': doc.get('item_group_name'),
        'parent_item_group': doc.get('parent_item_group'),
        'image': doc.get('image'),
    })
    return jsonify({'status': 'success', 'item_group': doc})
