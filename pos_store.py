"""
Local SQLite store: catalog, stock, loyalty balances, committed sales, the
ERP outbox with its sync attempts, operator notifications, the attendance
log and shifts.
"""
import datetime as dt
import json
import logging
import sqlite3
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import pos_config
from attendance_gate import AttendanceEvent, parse_timestamp
from checkout_pricing import LoyaltyAccount, ValidationError, format_money, line_discount

log = logging.getLogger(__name__)

OUTBOX_QUEUED = 'queued'
OUTBOX_DISPATCHED = 'dispatched'
OUTBOX_SKIPPED = 'skipped'
# Outcomes an operator may send again.
OUTBOX_RETRYABLE = ('validation_error', 'stock_error', 'network_error')


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


def connect(db_path: Optional[str] = None, check_same_thread: bool = True) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or pos_config.POS_DB_PATH, timeout=30, check_same_thread=check_same_thread,
                           isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection, schema_path: Optional[str] = None):
    with open(schema_path or pos_config.POS_SCHEMA_PATH, "r", encoding="utf-8") as f:
        conn.executescript(f.read())
    conn.commit()
    _ensure_outbox_retries(conn)


def _ensure_outbox_retries(conn: sqlite3.Connection):
    """Add the retries column to outbox tables created before it existed."""
    existing = {row["name"] for row in conn.execute("PRAGMA table_info(outbox)").fetchall()}
    if "retries" not in existing:
        conn.execute("ALTER TABLE outbox ADD COLUMN retries INTEGER NOT NULL DEFAULT 0")
        conn.commit()


# ---------- CATALOG & STOCK ----------
def upsert_item(conn: sqlite3.Connection, item: Dict[str, Any], commit: bool = True):
    conn.execute("""
        INSERT INTO items (item_code, item_name, item_group, standard_rate, valuation_rate, stock_uom, active, modified_utc)
        VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(item_code) DO UPDATE SET
          item_name=excluded.item_name,
          item_group=excluded.item_group,
          standard_rate=excluded.standard_rate,
          valuation_rate=excluded.valuation_rate,
          stock_uom=excluded.stock_uom,
          active=excluded.active,
          modified_utc=excluded.modified_utc
    """, (
        item["item_code"],
        item.get("item_name") or item["item_code"],
        item.get("item_group"),
        str(item.get("standard_rate") or 0),
        str(item.get("valuation_rate") or 0),
        item.get("stock_uom") or pos_config.POS_STOCK_UOM,
        0 if item.get("disabled") else int(item.get("active", 1)),
        item.get("modified") or iso_now(),
    ))
    if commit:
        conn.commit()


def get_item(conn: sqlite3.Connection, item_code: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM items WHERE item_code=?", (item_code,)).fetchone()
    if not row:
        return None
    item = dict(row)
    item["standard_rate"] = Decimal(item["standard_rate"] or "0")
    item["valuation_rate"] = Decimal(item["valuation_rate"] or "0")
    return item


def list_items(conn: sqlite3.Connection, include_inactive: bool = False) -> List[Dict[str, Any]]:
    sql = "SELECT item_code, item_name, item_group, standard_rate, stock_uom, active FROM items"
    if not include_inactive:
        sql += " WHERE active=1"
    return [dict(r) for r in conn.execute(sql + " ORDER BY item_name").fetchall()]


def upsert_stock(conn: sqlite3.Connection, item_code: str, qty: float,
                 warehouse: Optional[str] = None, commit: bool = True):
    conn.execute("""
        INSERT INTO stock (item_code, warehouse, qty, asof_utc) VALUES (?,?,?,?)
        ON CONFLICT(item_code, warehouse) DO UPDATE SET qty=excluded.qty, asof_utc=excluded.asof_utc
    """, (item_code, warehouse or pos_config.POS_WAREHOUSE, float(qty), iso_now()))
    if commit:
        conn.commit()


def stock_qty(conn: sqlite3.Connection, item_code: str, warehouse: Optional[str] = None) -> float:
    row = conn.execute("SELECT qty FROM stock WHERE item_code=? AND warehouse=?",
                       (item_code, warehouse or pos_config.POS_WAREHOUSE)).fetchone()
    return float(row["qty"]) if row else 0.0


def upsert_item_group(conn: sqlite3.Connection, group: Dict[str, Any], commit: bool = True):
    conn.execute("""
        INSERT INTO item_groups (name, item_group_name, parent_item_group, image, modified_utc)
        VALUES (?,?,?,?,?)
        ON CONFLICT(name) DO UPDATE SET
          item_group_name=excluded.item_group_name,
          parent_item_group=excluded.parent_item_group,
          image=excluded.image,
          modified_utc=excluded.modified_utc
    """, (
        group["name"],
        group.get("item_group_name") or group["name"],
        group.get("parent_item_group"),
        group.get("image"),
        group.get("modified") or iso_now(),
    ))
    if commit:
        conn.commit()


def list_item_groups(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    return [dict(r) for r in conn.execute("SELECT * FROM item_groups ORDER BY name").fetchall()]


# ---------- LOYALTY ----------
def get_loyalty_account(conn: sqlite3.Connection, customer_id: str) -> Optional[LoyaltyAccount]:
    row = conn.execute("SELECT * FROM loyalty_accounts WHERE customer_id=?", (customer_id,)).fetchone()
    if not row:
        return None
    return LoyaltyAccount(
        customer_id=row["customer_id"],
        points=int(row["points"] or 0),
        customer_name=row["customer_name"] or "",
        phone=row["phone"] or "",
        email=row["email"] or "",
    )


def upsert_loyalty_account(conn: sqlite3.Connection, account: LoyaltyAccount, commit: bool = True):
    conn.execute("""
        INSERT INTO loyalty_accounts (customer_id, customer_name, phone, email, points, modified_utc)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(customer_id) DO UPDATE SET
          customer_name=excluded.customer_name,
          phone=excluded.phone,
          email=excluded.email,
          points=excluded.points,
          modified_utc=excluded.modified_utc
    """, (account.customer_id, account.customer_name, account.phone, account.email,
          int(account.points), iso_now()))
    if commit:
        conn.commit()


# ---------- SALES ----------
def _sale_snapshot(sale) -> Dict[str, Any]:
    return {
        "sale_id": sale.sale_id,
        "created_utc": sale.created_utc,
        "cashier": sale.cashier,
        "customer_id": sale.customer_id,
        "payment_method": sale.payment_method,
        "totals": sale.pricing.display(),
        "zatca_qr": sale.zatca_qr,
        "lines": [
            {
                "item_code": l.item_code,
                "item_name": l.item_name,
                "qty": l.qty,
                "rate": str(l.unit_price),
                "discount": str(l.discount),
                "discount_type": l.discount_type,
            }
            for l in sale.lines
        ],
    }


def insert_sale(conn: sqlite3.Connection, sale, outbox: Dict[str, Dict[str, Any]],
                warehouse: Optional[str] = None) -> Optional[int]:
    """
    Commit a completed sale locally in one transaction: header, lines, stock
    decrement (floored at 0), loyalty balance and one outbox row per ERP
    write (``outbox`` maps kind -> payload). Rolls back on any failure.

    Returns the customer's new points balance (None for walk-in sales).
    Raises ValidationError when the stored balance no longer covers the
    redeemed points.
    """
    warehouse = warehouse or pos_config.POS_WAREHOUSE
    pricing = sale.pricing
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("""
            INSERT INTO sales (sale_id, created_utc, cashier, customer_id, payment_method, subtotal, discount,
                               points_discount, points_redeemed, vat, grand_total, zatca_qr, payload_json)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            sale.sale_id, sale.created_utc, sale.cashier, sale.customer_id, sale.payment_method,
            str(pricing.subtotal), str(pricing.line_discount), str(pricing.points_discount),
            int(pricing.points_redeemed), str(pricing.vat), str(pricing.grand_total),
            sale.zatca_qr, _dumps(_sale_snapshot(sale)),
        ))

        for idx, line in enumerate(sale.lines, start=1):
            conn.execute("""
                INSERT INTO sale_lines (sale_id, line_no, item_code, item_name, qty, rate, discount,
                                        discount_type, cost_price, line_total)
                VALUES (?,?,?,?,?,?,?,?,?,?)
            """, (sale.sale_id, idx, line.item_code, line.item_name, line.qty, str(line.unit_price),
                  str(line.discount), line.discount_type, str(line.cost_price),
                  str(line.amount - line_discount(line))))

            conn.execute("""
                INSERT INTO stock (item_code, warehouse, qty, asof_utc) VALUES (?,?,?,?)
                ON CONFLICT(item_code, warehouse) DO UPDATE SET qty = MAX(0, stock.qty - ?)
            """, (line.item_code, warehouse, 0, sale.created_utc, line.qty))

        balance = None
        if sale.customer_id:
            balance = _apply_loyalty(conn, sale)

        for kind, payload in outbox.items():
            conn.execute("""
                INSERT INTO outbox (kind, ref_id, created_utc, payload_json) VALUES (?,?,?,?)
            """, (kind, sale.sale_id, sale.created_utc, _dumps(payload)))

        conn.commit()
        return balance
    except Exception:
        conn.rollback()
        raise


def _apply_loyalty(conn: sqlite3.Connection, sale) -> int:
    """Debit redeemed and credit earned points against the stored balance.

    Runs inside the sale transaction, so the balance read here is the one the
    update lands on.
    """
    redeemed = int(sale.pricing.points_redeemed)
    row = conn.execute("SELECT points FROM loyalty_accounts WHERE customer_id=?",
                       (sale.customer_id,)).fetchone()
    balance = int(row["points"]) if row else 0
    if redeemed > balance:
        raise ValidationError(
            f"Customer {sale.customer_id} has {balance} points; cannot redeem {redeemed}")
    if row is None:
        conn.execute("""
            INSERT INTO loyalty_accounts (customer_id, customer_name, phone, email, points, modified_utc)
            VALUES (?,?,?,?,0,?)
        """, (sale.customer_id, sale.customer_name, sale.customer_phone, sale.customer_email,
              sale.created_utc))
    conn.execute("""
        UPDATE loyalty_accounts SET points = points - ? + ?, modified_utc=? WHERE customer_id=?
    """, (redeemed, int(sale.points_earned), sale.created_utc, sale.customer_id))
    return balance - redeemed + int(sale.points_earned)


def get_sale(conn: sqlite3.Connection, sale_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sales WHERE sale_id=?", (sale_id,)).fetchone()
    if not row:
        return None
    sale = dict(row)
    sale["payload"] = json.loads(sale.pop("payload_json") or "{}")
    for key in ("subtotal", "discount", "points_discount", "vat", "grand_total"):
        sale[key] = format_money(Decimal(sale[key]))
    sale["lines"] = [dict(r) for r in conn.execute(
        "SELECT * FROM sale_lines WHERE sale_id=? ORDER BY line_no", (sale_id,)).fetchall()]
    return sale


# ---------- OUTBOX ----------
def pending_outbox(conn: sqlite3.Connection, limit: int = 20, ref_id: Optional[str] = None) -> List[sqlite3.Row]:
    if ref_id:
        return conn.execute("""
            SELECT id, kind, ref_id, payload_json FROM outbox
            WHERE status=? AND ref_id=? ORDER BY id ASC LIMIT ?
        """, (OUTBOX_QUEUED, ref_id, limit)).fetchall()
    return conn.execute("""
        SELECT id, kind, ref_id, payload_json FROM outbox
        WHERE status=? ORDER BY id ASC LIMIT ?
    """, (OUTBOX_QUEUED, limit)).fetchall()


def mark_outbox_dispatched(conn: sqlite3.Connection, outbox_id: int) -> bool:
    """Claim a queued row. False when another worker already took it."""
    cur = conn.execute(
        "UPDATE outbox SET status=?, dispatched_utc=? WHERE id=? AND status=?",
        (OUTBOX_DISPATCHED, iso_now(), outbox_id, OUTBOX_QUEUED),
    )
    conn.commit()
    return cur.rowcount == 1


def complete_outbox(conn: sqlite3.Connection, outbox_id: int, outcome: str):
    conn.execute("UPDATE outbox SET status=? WHERE id=?", (outcome, outbox_id))
    conn.commit()


def outbox_status(conn: sqlite3.Connection, ref_id: str) -> Dict[str, str]:
    rows = conn.execute("SELECT kind, status FROM outbox WHERE ref_id=?", (ref_id,)).fetchall()
    return {r["kind"]: r["status"] for r in rows}


def requeue_outbox(conn: sqlite3.Connection, ref_id: str, kind: Optional[str] = None,
                   max_retries: Optional[int] = None) -> int:
    """Put failed rows of a sale back in the queue. Returns how many were requeued.

    Rows that already used up ``max_retries`` stay where they are.
    """
    max_retries = pos_config.OUTBOX_MAX_RETRIES if max_retries is None else max_retries
    marks = ",".join("?" for _ in OUTBOX_RETRYABLE)
    sql = f"""
        UPDATE outbox SET status=?, dispatched_utc=NULL, retries=retries + 1
        WHERE ref_id=? AND status IN ({marks}) AND retries < ?
    """
    params: List[Any] = [OUTBOX_QUEUED, ref_id, *OUTBOX_RETRYABLE, max_retries]
    if kind:
        sql += " AND kind=?"
        params.append(kind)
    cur = conn.execute(sql, params)
    conn.commit()
    if cur.rowcount:
        log.info("Requeued %d outbox row(s) for %s", cur.rowcount, ref_id)
    return cur.rowcount


def outbox_stats(conn: sqlite3.Connection) -> Dict[str, int]:
    """Row counts per outbox status, plus ``failed`` across the retryable outcomes."""
    stats = {status: 0 for status in (OUTBOX_QUEUED, OUTBOX_DISPATCHED, 'success', OUTBOX_SKIPPED)}
    stats.update({status: 0 for status in OUTBOX_RETRYABLE})
    for row in conn.execute("SELECT status, COUNT(*) AS n FROM outbox GROUP BY status"):
        stats[row["status"]] = row["n"]
    stats["failed"] = sum(stats[s] for s in OUTBOX_RETRYABLE)
    marks = ",".join("?" for _ in OUTBOX_RETRYABLE)
    stats["exhausted"] = conn.execute(
        f"SELECT COUNT(*) FROM outbox WHERE status IN ({marks}) AND retries >= ?",
        (*OUTBOX_RETRYABLE, pos_config.OUTBOX_MAX_RETRIES),
    ).fetchone()[0]
    return stats


def record_sync_attempt(conn: sqlite3.Connection, attempt):
    conn.execute("""
        INSERT INTO sync_attempts (attempt_id, sale_id, target, outcome, error, erp_docname, payload_json, created_utc)
        VALUES (?,?,?,?,?,?,?,?)
    """, (attempt.attempt_id, attempt.sale_id, attempt.target, attempt.outcome, attempt.error,
          attempt.erp_docname, _dumps(attempt.payload), attempt.created_utc))
    conn.commit()


def sync_attempts_for(conn: sqlite3.Connection, sale_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute("""
        SELECT attempt_id, sale_id, target, outcome, error, erp_docname, created_utc
        FROM sync_attempts WHERE sale_id=? ORDER BY created_utc, target
    """, (sale_id,)).fetchall()
    return [dict(r) for r in rows]


# ---------- NOTIFICATIONS ----------
def add_notification(conn: sqlite3.Connection, note) -> int:
    cur = conn.execute("""
        INSERT INTO notifications (sale_id, target, level, outcome, message, created_utc)
        VALUES (?,?,?,?,?,?)
    """, (note.sale_id, note.target, note.level, note.outcome, note.message, iso_now()))
    conn.commit()
    return cur.lastrowid


def list_notifications(conn: sqlite3.Connection, limit: int = 50) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM notifications ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    return [dict(r) for r in rows]


# ---------- ATTENDANCE ----------
def append_attendance_event(conn: sqlite3.Connection, event: AttendanceEvent) -> int:
    cur = conn.execute("""
        INSERT INTO attendance_events (employee_id, action, event_ts, created_utc) VALUES (?,?,?,?)
    """, (event.employee_id, event.action, event.timestamp.isoformat(), iso_now()))
    conn.commit()
    return cur.lastrowid


def attendance_events_for(conn: sqlite3.Connection, employee_id: str) -> List[AttendanceEvent]:
    rows = conn.execute(
        "SELECT employee_id, action, event_ts FROM attendance_events WHERE employee_id=? ORDER BY id",
        (employee_id,),
    ).fetchall()
    return [AttendanceEvent(r["employee_id"], r["action"], parse_timestamp(r["event_ts"])) for r in rows]


# ---------- SHIFTS ----------
def save_shift(conn: sqlite3.Connection, shift_name: str, status: str, opening_time: str,
               state: Dict[str, Any], closing_time: Optional[str] = None,
               x_report: Optional[Dict[str, Any]] = None):
    conn.execute("""
        INSERT INTO shifts (shift_name, status, opening_time, closing_time, state_json, x_report_json)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(shift_name) DO UPDATE SET
          status=excluded.status,
          closing_time=excluded.closing_time,
          state_json=excluded.state_json,
          x_report_json=excluded.x_report_json
    """, (shift_name, status, opening_time, closing_time, _dumps(state),
          _dumps(x_report) if x_report is not None else None))
    conn.commit()


def _shift_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    shift = dict(row)
    shift["state"] = json.loads(shift.pop("state_json") or "{}")
    raw_report = shift.pop("x_report_json")
    shift["x_report"] = json.loads(raw_report) if raw_report else None
    return shift


def get_open_shift(conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT * FROM shifts WHERE status='Open' ORDER BY opening_time DESC LIMIT 1").fetchone()
    return _shift_row(row)


def get_shift(conn: sqlite3.Connection, shift_name: str) -> Optional[Dict[str, Any]]:
    return _shift_row(conn.execute("SELECT * FROM shifts WHERE shift_name=?", (shift_name,)).fetchone())

