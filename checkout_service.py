"""
Checkout completion: price, encode the ZATCA QR, commit locally.

The local commit is the point of no return. Sync to ERPNext happens after,
from the outbox rows written in the same transaction.
"""
import datetime as dt
import logging
import sqlite3
from dataclasses import replace
from typing import Optional
from uuid import uuid4

import pos_store
from checkout_pricing import CheckoutTransaction, ValidationError, points_earned, quantize_money
from pos_config import POS_TILL, ERPSettings
from sync_orchestrator import CompletedSale, build_payloads
from zatca_tlv import ZATCAInvoiceData, build_tlv_base64, invoice_timestamp

log = logging.getLogger(__name__)


def _format_till_segment(till_value: Optional[str]) -> str:
    if till_value is None:
        return '000'
    cleaned = ''.join(ch for ch in str(till_value) if ch.isdigit())
    if not cleaned:
        return '000'
    if len(cleaned) >= 3:
        return cleaned[-3:]
    return cleaned.zfill(3)


def generate_invoice_id(now: Optional[dt.datetime] = None, till: Optional[str] = None) -> str:
    """Timestamp + till + random suffix; never reused."""
    now = now or dt.datetime.now(dt.timezone.utc)
    return f"INV-{now:%Y%m%d%H%M%S}-{_format_till_segment(till)}{uuid4().hex[:6].upper()}"


def complete_checkout(
    conn: sqlite3.Connection,
    txn: CheckoutTransaction,
    payment_method: str = 'Cash',
    settings: Optional[ERPSettings] = None,
    now: Optional[dt.datetime] = None,
    invoice_id: Optional[str] = None,
    cashier: Optional[str] = None,
) -> CompletedSale:
    settings = settings or ERPSettings()
    if not txn.lines:
        raise ValidationError("Cart is empty")
    payment_method = (payment_method or '').strip()
    if not payment_method:
        raise ValidationError("payment_method is required")

    pricing = txn.price()
    now = now or dt.datetime.now(dt.timezone.utc)
    created_utc = invoice_timestamp(now)
    sale_id = invoice_id or generate_invoice_id(now, POS_TILL)

    # Raises EncodingError before anything is committed.
    qr = build_tlv_base64(ZATCAInvoiceData(
        invoice_id=sale_id,
        seller_name=settings.seller_name,
        vat_number=settings.vat_number,
        timestamp=created_utc,
        invoice_total=quantize_money(pricing.grand_total),
        vat_amount=quantize_money(pricing.vat),
    ))

    txn.commit_redemption()
    account = txn.account
    earned = points_earned(pricing.net_total, txn.rule) if account else 0
    sale = CompletedSale(
        sale_id=sale_id,
        created_utc=created_utc,
        lines=tuple(txn.lines),
        pricing=pricing,
        zatca_qr=qr,
        payment_method=payment_method,
        cashier=cashier,
        customer_id=account.customer_id if account else None,
        customer_name=account.customer_name if account else '',
        customer_phone=account.phone if account else '',
        customer_email=account.email if account else '',
        loyalty_balance=account.points + earned if account else None,
        points_earned=earned,
    )
    try:
        balance = pos_store.insert_sale(conn, sale, build_payloads(sale, settings), warehouse=settings.warehouse)
    except Exception:
        txn.rollback_redemption()
        raise
    if account is not None and balance is not None:
        # The balance read inside the sale transaction replaces the in-memory one.
        account.points = balance
        sale = replace(sale, loyalty_balance=balance)
    log.info("Sale %s committed: total=%s vat=%s points=%s", sale_id,
             pricing.display()['grand_total'], pricing.display()['vat'], pricing.points_redeemed)
    return sale
