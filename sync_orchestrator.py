"""
Best-effort ERPNext sync for completed sales.

A completed sale produces two independent writes: a Sales Invoice and a
Material Issue Stock Entry. Both are issued back-to-back on a worker pool
and each outcome becomes one immutable ``SyncAttempt``. Nothing here ever
changes the local sale; a failed write is recorded, surfaced as a
notification and left for an operator to requeue.
"""
from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pos_store
from checkout_pricing import (
    DISCOUNT_PERCENTAGE,
    ZERO,
    CartLine,
    PricingResult,
    line_discount,
    quantize_money,
)
from erp_client import SALES_INVOICE, STOCK_ENTRY, ERPNextError
from pos_config import STOCK_REFRESH_DELAY, ERPSettings

log = logging.getLogger(__name__)

INVOICE = 'invoice'
STOCK = 'stock'
TARGETS = (INVOICE, STOCK)
TARGET_DOCTYPE = {INVOICE: SALES_INVOICE, STOCK: STOCK_ENTRY}
TARGET_LABEL = {INVOICE: 'sales invoice', STOCK: 'stock entry'}

SUCCESS = 'success'
VALIDATION_ERROR = 'validation_error'
STOCK_ERROR = 'stock_error'
NETWORK_ERROR = 'network_error'
OUTCOMES = (SUCCESS, VALIDATION_ERROR, STOCK_ERROR, NETWORK_ERROR)

# Gateway and availability errors from the proxy in front of ERPNext.
TRANSIENT_STATUS = (502, 503, 504)

STOCK_ERROR_PATTERN = re.compile(
    r'Insufficient.*Stock|Not enough stock|Negative Stock|NegativeStockError', re.IGNORECASE)

# Operator hints for common ERPNext rejections.
ERROR_HINTS = (
    (re.compile(r'Missing.*Account|Account.*not.*found|Invalid.*Account', re.IGNORECASE),
     'Missing account: verify the account settings in ERPNext'),
    (re.compile(r'Duplicate.*entry|already exists', re.IGNORECASE),
     'Duplicate entry: this document already exists'),
    (re.compile(r'Mandatory.*field|required.*field|cannot be empty', re.IGNORECASE),
     'Required field missing: check the submitted data'),
    (re.compile(r'permission|not allowed|forbidden', re.IGNORECASE),
     'Permission denied: check the API user roles in ERPNext'),
)


class DuplicateDispatch(RuntimeError):
    def __init__(self, sale_id: str, target: str):
        super().__init__(f"{target} for sale {sale_id} was already dispatched")
        self.sale_id = sale_id
        self.target = target


@dataclass(frozen=True)
class CompletedSale:
    """Immutable snapshot of a committed sale."""
    sale_id: str
    created_utc: str
    lines: Tuple[CartLine, ...]
    pricing: PricingResult
    zatca_qr: str
    payment_method: str = 'Cash'
    cashier: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: str = ''
    customer_phone: str = ''
    customer_email: str = ''
    loyalty_balance: Optional[int] = None
    points_earned: int = 0

    @property
    def posting_date(self) -> str:
        return self.created_utc[:10]

    @property
    def posting_time(self) -> str:
        return self.created_utc[11:19]


@dataclass(frozen=True)
class SyncAttempt:
    attempt_id: str
    sale_id: str
    target: str
    payload: Dict[str, Any]
    outcome: str
    error: Optional[str] = None
    erp_docname: Optional[str] = None
    created_utc: str = field(default_factory=pos_store.iso_now)

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


@dataclass(frozen=True)
class SyncResult:
    ok: bool
    attempt: SyncAttempt
    error: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: SyncAttempt) -> 'SyncResult':
        return cls(ok=attempt.ok, attempt=attempt, error=attempt.error)


@dataclass(frozen=True)
class Notification:
    level: str
    sale_id: str
    target: str
    outcome: str
    message: str


@dataclass
class SyncReport:
    attempts: List[SyncAttempt] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)
    refresh_scheduled: bool = False
    requeued: int = 0

    @property
    def results(self) -> List[SyncResult]:
        return [SyncResult.from_attempt(a) for a in self.attempts]

    def for_target(self, target: str) -> Optional[SyncAttempt]:
        for attempt in self.attempts:
            if attempt.target == target:
                return attempt
        return None


@dataclass
class SyncHandle:
    sale_id: str
    invoice: Future
    stock: Future

    def attempts(self, timeout: Optional[float] = None) -> List[SyncAttempt]:
        return [self.invoice.result(timeout), self.stock.result(timeout)]


# ---------- CLASSIFICATION ----------
def classify_failure(exc: BaseException) -> str:
    if isinstance(exc, ERPNextError):
        if STOCK_ERROR_PATTERN.search(exc.message or '') or STOCK_ERROR_PATTERN.search(str(exc.body or '')):
            return STOCK_ERROR
        if exc.status_code in TRANSIENT_STATUS:
            return NETWORK_ERROR
        # 4xx and a plain 500 are ERPNext rejecting the document itself.
        return VALIDATION_ERROR
    # Transport failures, timeouts and an unconfigured client: the write never reached ERPNext.
    return NETWORK_ERROR


def error_hint(message: Optional[str]) -> Optional[str]:
    for pattern, hint in ERROR_HINTS:
        if message and pattern.search(message):
            return hint
    return None


def notification_for(attempt: SyncAttempt) -> Notification:
    label = TARGET_LABEL.get(attempt.target, attempt.target)
    sale = attempt.sale_id
    if attempt.outcome == SUCCESS:
        doctype = TARGET_DOCTYPE.get(attempt.target, label)
        docname = attempt.erp_docname or '(unnamed)'
        return Notification('info', sale, attempt.target, attempt.outcome,
                            f"{doctype} {docname} created for sale {sale}")
    if attempt.outcome == STOCK_ERROR:
        return Notification('warning', sale, attempt.target, attempt.outcome,
                            f"Insufficient stock in ERPNext: {label} for sale {sale} was not posted")
    if attempt.outcome == NETWORK_ERROR:
        return Notification('warning', sale, attempt.target, attempt.outcome,
                            f"ERPNext unreachable: {label} for sale {sale} was not sent ({attempt.error})")
    detail = error_hint(attempt.error) or attempt.error
    return Notification('error', sale, attempt.target, attempt.outcome,
                        f"ERPNext rejected the {label} for sale {sale}: {detail}")


# ---------- PAYLOADS ----------
def _money(value: Decimal) -> float:
    return float(quantize_money(value))


def _invoice_item(line: CartLine, settings: ERPSettings) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        'item_code': line.item_code,
        'item_name': line.item_name,
        'qty': line.qty,
        'price_list_rate': _money(line.unit_price),
        'rate': _money(line.unit_price),
        'amount': _money(line.amount - line_discount(line)),
        'uom': settings.uom,
        'income_account': settings.income_account,
        'expense_account': settings.expense_account,
        'cost_center': settings.cost_center,
        'warehouse': settings.warehouse,
    }
    if line.discount > ZERO:
        if line.discount_type == DISCOUNT_PERCENTAGE:
            row['discount_percentage'] = float(line.discount)
        else:
            row['discount_amount'] = _money(line.discount)
    return row


def build_sales_invoice_payload(sale: CompletedSale, settings: Optional[ERPSettings] = None) -> Dict[str, Any]:
    settings = settings or ERPSettings()
    pricing = sale.pricing
    rate_pct = settings.vat_rate * 100
    payload: Dict[str, Any] = {
        'doctype': SALES_INVOICE,
        'naming_series': 'SINV-.YYYY.-',
        'company': settings.company,
        'customer': sale.customer_id or settings.walkin_customer,
        'customer_name': sale.customer_name or sale.customer_id or settings.walkin_customer,
        'customer_phone': sale.customer_phone or '',
        'customer_email': sale.customer_email or '',
        'posting_date': sale.posting_date,
        'posting_time': sale.posting_time,
        'set_posting_time': 1,
        'due_date': sale.posting_date,
        'currency': settings.currency,
        'conversion_rate': 1,
        'selling_price_list': settings.price_list,
        'pos_profile': settings.pos_profile,
        'debit_to': settings.debit_account,
        'items': [_invoice_item(line, settings) for line in sale.lines],
        'taxes': [{
            'charge_type': 'On Net Total',
            'account_head': settings.vat_account,
            'description': f"VAT {rate_pct.normalize():f}% (Saudi Arabia)",
            'rate': float(rate_pct),
            'cost_center': settings.cost_center,
            'included_in_print_rate': 0,
        }],
        'mode_of_payment': sale.payment_method,
        'payments': [{
            'mode_of_payment': sale.payment_method,
            'amount': _money(pricing.grand_total),
        }],
        'paid_amount': _money(pricing.grand_total),
        'is_pos': 1,
        'update_stock': 0,
        'disable_rounded_total': 1,
        'docstatus': 1,
        'custom_zatca_qr': sale.zatca_qr,
        'custom_zatca_phase': '1',
        'custom_zatca_compliance': 'Simplified Tax Invoice',
        'custom_pos_invoice_id': sale.sale_id,
    }
    if pricing.points_redeemed:
        # Points reduce the taxable net, so they travel as an additional discount.
        payload.update({
            'apply_discount_on': 'Net Total',
            'discount_amount': _money(pricing.points_discount),
            'custom_loyalty_points_redeemed': pricing.points_redeemed,
            'custom_loyalty_discount': _money(pricing.points_discount),
        })
    if sale.points_earned:
        payload['custom_loyalty_points_earned'] = sale.points_earned
    if sale.cashier:
        payload['custom_pos_cashier'] = sale.cashier
    return payload


def build_stock_entry_payload(sale: CompletedSale, settings: Optional[ERPSettings] = None) -> Dict[str, Any]:
    settings = settings or ERPSettings()
    merged: Dict[str, Dict[str, Any]] = {}
    for line in sale.lines:
        row = merged.get(line.item_code)
        if row is None:
            merged[line.item_code] = {
                'item_code': line.item_code,
                'item_name': line.item_name,
                'qty': line.qty,
                'basic_rate': _money(line.cost_price),
                's_warehouse': settings.warehouse,
                'uom': settings.uom,
                'stock_uom': settings.uom,
                'conversion_factor': 1,
            }
        else:
            row['qty'] += line.qty
    return {
        'doctype': STOCK_ENTRY,
        'stock_entry_type': 'Material Issue',
        'purpose': 'Material Issue',
        'company': settings.company,
        'posting_date': sale.posting_date,
        'posting_time': sale.posting_time,
        'set_posting_time': 1,
        'from_warehouse': settings.warehouse,
        'items': list(merged.values()),
        'remarks': f"POS sale {sale.sale_id}",
        'custom_pos_invoice_id': sale.sale_id,
        'docstatus': 1,
    }


def build_payloads(sale: CompletedSale, settings: Optional[ERPSettings] = None) -> Dict[str, Dict[str, Any]]:
    return {
        INVOICE: build_sales_invoice_payload(sale, settings),
        STOCK: build_stock_entry_payload(sale, settings),
    }


def _start_timer(delay: float, fn: Callable[[], Any]) -> threading.Timer:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


# ---------- ORCHESTRATOR ----------
class SyncOrchestrator:
    def __init__(self, client, executor: Optional[Executor] = None,
                 scheduler: Optional[Callable[[float, Callable[[], Any]], Any]] = None,
                 refresh_stock: Optional[Callable[[], Any]] = None,
                 notify: Optional[Callable[[Notification], Any]] = None,
                 refresh_delay: float = STOCK_REFRESH_DELAY,
                 settings: Optional[ERPSettings] = None):
        self.client = client
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='erp-sync')
        self.scheduler = scheduler or _start_timer
        self.refresh_stock = refresh_stock
        self.notify = notify
        self.refresh_delay = refresh_delay
        self.settings = settings or ERPSettings()
        self._dispatched: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def _claim(self, sale_id: str, target: str) -> None:
        key = (sale_id, target)
        with self._lock:
            if key in self._dispatched:
                raise DuplicateDispatch(sale_id, target)
            self._dispatched.add(key)

    def _release(self, sale_id: str, target: str) -> None:
        with self._lock:
            self._dispatched.discard((sale_id, target))

    def was_dispatched(self, sale_id: str, target: str) -> bool:
        with self._lock:
            return (sale_id, target) in self._dispatched

    def _write(self, sale_id: str, target: str, payload: Dict[str, Any]) -> SyncAttempt:
        attempt_id = str(uuid.uuid4())
        doctype = TARGET_DOCTYPE[target]
        try:
            doc = self.client.post_resource(doctype, payload)
        except Exception as exc:
            outcome = classify_failure(exc)
            message = exc.message if isinstance(exc, ERPNextError) else str(exc)
            log.warning("%s for sale %s failed (%s): %s", doctype, sale_id, outcome, message)
            return SyncAttempt(attempt_id, sale_id, target, payload, outcome, error=message)
        docname = doc.get('name') if isinstance(doc, dict) else None
        log.info("%s %s created for sale %s", doctype, docname or '(unnamed)', sale_id)
        return SyncAttempt(attempt_id, sale_id, target, payload, SUCCESS, erp_docname=docname)

    def submit(self, sale_id: str, target: str, payload: Dict[str, Any]) -> Future:
        if target not in TARGET_DOCTYPE:
            raise ValueError(f"Unknown sync target {target!r}")
        self._claim(sale_id, target)
        return self.executor.submit(self._write, sale_id, target, payload)

    def dispatch(self, sale: CompletedSale) -> SyncHandle:
        """Issue both writes without waiting for either."""
        payloads = build_payloads(sale, self.settings)
        invoice = self.submit(sale.sale_id, INVOICE, payloads[INVOICE])
        stock = self.submit(sale.sale_id, STOCK, payloads[STOCK])
        return SyncHandle(sale.sale_id, invoice, stock)

    def finish(self, attempts: List[SyncAttempt]) -> SyncReport:
        report = SyncReport(attempts=list(attempts))
        for attempt in attempts:
            note = notification_for(attempt)
            report.notifications.append(note)
            if self.notify is not None:
                try:
                    self.notify(note)
                except Exception:
                    log.exception("Notification hook failed for sale %s", attempt.sale_id)
        if any(a.ok for a in attempts):
            report.refresh_scheduled = self.schedule_refresh()
        return report

    def sync(self, sale: CompletedSale, timeout: Optional[float] = None) -> SyncReport:
        return self.finish(self.dispatch(sale).attempts(timeout))

    def schedule_refresh(self) -> bool:
        if self.refresh_stock is None:
            return False
        self.scheduler(self.refresh_delay, self._run_refresh)
        return True

    def _run_refresh(self) -> None:
        try:
            self.refresh_stock()
        except Exception:
            log.exception("Deferred stock refresh failed")

    def process_outbox(self, conn, limit: int = 20, ref_id: Optional[str] = None) -> SyncReport:
        """Send queued outbox rows. Each row is marked dispatched before its write.

        The outbox row carries the dispatch state from then on, so the in-memory
        claim is released once the attempt is recorded.
        """
        rows = pos_store.pending_outbox(conn, limit=limit, ref_id=ref_id)
        submitted: List[Tuple[Any, Future]] = []
        for row in rows:
            if not pos_store.mark_outbox_dispatched(conn, row['id']):
                continue
            payload = json.loads(row['payload_json'])
            try:
                fut = self.submit(row['ref_id'], row['kind'], payload)
            except (DuplicateDispatch, ValueError) as exc:
                log.warning("Skipping outbox row %s: %s", row['id'], exc)
                pos_store.complete_outbox(conn, row['id'], pos_store.OUTBOX_SKIPPED)
                continue
            submitted.append((row, fut))
        attempts = []
        for row, fut in submitted:
            try:
                attempt = fut.result()
                pos_store.record_sync_attempt(conn, attempt)
                pos_store.complete_outbox(conn, row['id'], attempt.outcome)
            finally:
                self._release(row['ref_id'], row['kind'])
            attempts.append(attempt)
        report = self.finish(attempts)
        for note in report.notifications:
            pos_store.add_notification(conn, note)
        return report

    def requeue_failed(self, conn, sale_id: str, target: Optional[str] = None) -> SyncReport:
        """Send a sale's failed writes again. Each resend is a new SyncAttempt."""
        if target is not None and target not in TARGETS:
            raise ValueError(f"Unknown sync target {target!r}")
        requeued = pos_store.requeue_outbox(conn, sale_id, kind=target)
        if not requeued:
            return SyncReport()
        report = self.process_outbox(conn, ref_id=sale_id)
        report.requeued = requeued
        return report

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
