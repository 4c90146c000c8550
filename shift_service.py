"""
POS shifts and the X-report cash reconciliation.

    expected_cash_sales   = cash-mode sales in the shift
    expected_total_cash   = opening_cash + expected_cash_sales
    cash_discrepancy      = actual_cash - expected_total_cash
    discrepancy_percentage = cash_discrepancy / expected_total_cash * 100 (0 when nothing is expected)
"""
import datetime as dt
import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pos_store
from checkout_pricing import ZERO, ValidationError, quantize_money, to_decimal
from erp_client import POS_CLOSING_ENTRY, POS_OPENING_ENTRY
from pos_config import ERPSettings
from zatca_tlv import invoice_timestamp

log = logging.getLogger(__name__)

OPEN = 'Open'
CLOSED = 'Closed'
CASH_MODE = 'Cash'


class ShiftError(RuntimeError):
    pass


def is_cash_mode(mode: str) -> bool:
    return (mode or '').strip().casefold() == CASH_MODE.casefold()


@dataclass
class PaymentSummary:
    mode: str
    amount: Decimal = ZERO
    count: int = 0


@dataclass
class ShiftState:
    shift_name: str
    user: str
    user_name: str
    branch: str
    pos_profile: str
    opening_time: str
    opening_cash: Decimal
    status: str = OPEN
    total_sales: Decimal = ZERO
    total_returns: Decimal = ZERO
    total_transactions: int = 0
    payment_methods: List[PaymentSummary] = field(default_factory=list)
    synced: bool = False

    def payment(self, mode: str) -> Optional[PaymentSummary]:
        for summary in self.payment_methods:
            if summary.mode.casefold() == (mode or '').casefold():
                return summary
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('opening_cash', 'total_sales', 'total_returns'):
            data[key] = str(data[key])
        data['payment_methods'] = [
            {'mode': p.mode, 'amount': str(p.amount), 'count': p.count} for p in self.payment_methods
        ]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShiftState':
        data = dict(data)
        for key in ('opening_cash', 'total_sales', 'total_returns'):
            data[key] = Decimal(str(data.get(key) or '0'))
        data['payment_methods'] = [
            PaymentSummary(p['mode'], Decimal(str(p.get('amount') or '0')), int(p.get('count') or 0))
            for p in data.get('payment_methods') or []
        ]
        return cls(**data)


@dataclass(frozen=True)
class XReport:
    shift_name: str
    user: str
    user_name: str
    branch: str
    opening_time: str
    closing_time: str
    opening_cash: Decimal
    expected_cash_sales: Decimal
    expected_total_cash: Decimal
    actual_cash_in_drawer: Decimal
    cash_discrepancy: Decimal
    discrepancy_percentage: Decimal
    total_sales: Decimal
    total_returns: Decimal
    total_transactions: int
    payment_breakdown: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(quantize_money(value))
        return data


def record_shift_sale(state: ShiftState, amount: Any, mode: str, is_return: bool = False) -> ShiftState:
    if state.status != OPEN:
        raise ShiftError(f"Shift {state.shift_name} is closed")
    value = to_decimal(amount, 'amount')
    if value < ZERO:
        raise ValidationError("amount cannot be negative")
    if is_return:
        state.total_returns += value
        return state
    mode = (mode or CASH_MODE).strip()
    state.total_sales += value
    state.total_transactions += 1
    summary = state.payment(mode)
    if summary is None:
        summary = PaymentSummary(mode)
        state.payment_methods.append(summary)
    summary.amount += value
    summary.count += 1
    return state


def build_x_report(state: ShiftState, actual_cash: Any, closing_time: Optional[str] = None) -> XReport:
    actual = to_decimal(actual_cash, 'actual_cash')
    if actual < ZERO:
        raise ValidationError("actual_cash cannot be negative")
    cash_sales = sum((p.amount for p in state.payment_methods if is_cash_mode(p.mode)), ZERO)
    expected = state.opening_cash + cash_sales
    discrepancy = actual - expected
    percentage = discrepancy / expected * 100 if expected > ZERO else ZERO
    return XReport(
        shift_name=state.shift_name,
        user=state.user,
        user_name=state.user_name,
        branch=state.branch,
        opening_time=state.opening_time,
        closing_time=closing_time or invoice_timestamp(),
        opening_cash=state.opening_cash,
        expected_cash_sales=cash_sales,
        expected_total_cash=expected,
        actual_cash_in_drawer=actual,
        cash_discrepancy=discrepancy,
        discrepancy_percentage=percentage,
        total_sales=state.total_sales,
        total_returns=state.total_returns,
        total_transactions=state.total_transactions,
        payment_breakdown=[
            {'mode': p.mode, 'amount': float(quantize_money(p.amount)), 'count': p.count}
            for p in state.payment_methods
        ],
    )


def build_opening_payload(state: ShiftState, settings: Optional[ERPSettings] = None) -> Dict[str, Any]:
    settings = settings or ERPSettings()
    day = state.opening_time[:10]
    return {
        'doctype': POS_OPENING_ENTRY,
        'company': settings.company,
        'pos_profile': state.pos_profile or settings.pos_profile,
        'user': state.user,
        'period_start_date': day,
        'posting_date': day,
        'custom_branch': state.branch,
        'balance_details': [
            {'mode_of_payment': CASH_MODE, 'opening_amount': float(quantize_money(state.opening_cash))},
        ],
    }


def build_closing_payload(state: ShiftState, report: XReport, notes: str = '') -> Dict[str, Any]:
    day = report.closing_time[:10]
    return {
        'doctype': POS_CLOSING_ENTRY,
        'pos_opening_entry': state.shift_name,
        'posting_date': day,
        'period_end_date': day,
        'payment_reconciliation': [
            {
                'mode_of_payment': CASH_MODE,
                'expected_amount': float(quantize_money(report.expected_total_cash)),
                'closing_amount': float(quantize_money(report.actual_cash_in_drawer)),
                'difference': float(quantize_money(report.cash_discrepancy)),
            },
        ],
        'custom_closing_notes': notes or '',
        'custom_x_report_json': json.dumps(report.to_dict(), ensure_ascii=False),
    }


def _erp_ready(client) -> bool:
    return client is not None and getattr(client, 'configured', False)


def current_shift(conn: sqlite3.Connection) -> Optional[ShiftState]:
    row = pos_store.get_open_shift(conn)
    return ShiftState.from_dict(row['state']) if row else None


def _save(conn: sqlite3.Connection, state: ShiftState, closing_time: Optional[str] = None,
          report: Optional[XReport] = None):
    pos_store.save_shift(conn, state.shift_name, state.status, state.opening_time, state.to_dict(),
                         closing_time=closing_time, x_report=report.to_dict() if report else None)


def open_shift(conn: sqlite3.Connection, client, user: str, user_name: str = '', opening_cash: Any = 0,
               branch: Optional[str] = None, pos_profile: Optional[str] = None,
               settings: Optional[ERPSettings] = None, now: Optional[dt.datetime] = None) -> ShiftState:
    settings = settings or ERPSettings()
    if current_shift(conn) is not None:
        raise ShiftError("A shift is already open. Please close it first.")
    if not user:
        raise ValidationError("user is required")
    cash = to_decimal(opening_cash, 'opening_cash')
    if cash < ZERO:
        raise ValidationError("opening_cash cannot be negative")
    opened = invoice_timestamp(now)
    state = ShiftState(
        shift_name=f"LOCAL-SHIFT-{opened.replace('-', '').replace(':', '')}",
        user=user,
        user_name=user_name or user,
        branch=branch or settings.branch,
        pos_profile=pos_profile or settings.pos_profile,
        opening_time=opened,
        opening_cash=cash,
    )
    if _erp_ready(client):
        doc = client.post_resource(POS_OPENING_ENTRY, build_opening_payload(state, settings))
        state.shift_name = doc.get('name') or state.shift_name
        state.synced = True
    else:
        log.warning("ERPNext not configured; shift %s opened locally only", state.shift_name)
    _save(conn, state)
    log.info("Shift %s opened by %s with %s cash", state.shift_name, state.user, quantize_money(cash))
    return state


def record_sale_in_open_shift(conn: sqlite3.Connection, amount: Any, mode: str,
                              is_return: bool = False) -> Optional[ShiftState]:
    state = current_shift(conn)
    if state is None:
        return None
    record_shift_sale(state, amount, mode, is_return=is_return)
    _save(conn, state)
    return state


def close_shift(conn: sqlite3.Connection, client, actual_cash: Any, notes: str = '',
                now: Optional[dt.datetime] = None) -> XReport:
    state = current_shift(conn)
    if state is None:
        raise ShiftError("No open shift to close")
    report = build_x_report(state, actual_cash, closing_time=invoice_timestamp(now))
    if state.synced and _erp_ready(client):
        client.post_resource(POS_CLOSING_ENTRY, build_closing_payload(state, report, notes))
    else:
        log.warning("Shift %s closed locally only", state.shift_name)
    state.status = CLOSED
    _save(conn, state, closing_time=report.closing_time, report=report)
    if report.cash_discrepancy != ZERO:
        log.warning("Shift %s cash discrepancy %s (%s%%)", state.shift_name,
                    quantize_money(report.cash_discrepancy), quantize_money(report.discrepancy_percentage))
    else:
        log.info("Shift %s closed, drawer balanced", state.shift_name)
    return report
