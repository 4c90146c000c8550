#!/usr/bin/env python3
"""
Sanad Sync Worker

Drains the local outbox into ERPNext: every queued Sales Invoice and
Stock Entry is sent once, its outcome recorded as a sync attempt.

Env vars:
  POS_DB_PATH      SQLite DB path (default: pos.db)
  SYNC_INTERVAL    seconds between loops (default: 10)
  ERPNEXT_URL / ERPNEXT_API_KEY / ERPNEXT_API_SECRET

Run:
  python sync_worker.py
"""
import logging
import sqlite3
import time
from typing import Optional

import catalog_sync
import pos_config
import pos_store
from erp_client import ERPNextClient
from sync_orchestrator import SyncOrchestrator, SyncReport

log = logging.getLogger('sync_worker')


def connect_db(db_path: Optional[str] = None) -> sqlite3.Connection:
    conn = pos_store.connect(db_path or pos_config.POS_DB_PATH)
    pos_store.init_db(conn)
    return conn


def build_orchestrator(client: ERPNextClient, db_path: Optional[str] = None) -> SyncOrchestrator:
    return SyncOrchestrator(
        client,
        refresh_stock=lambda: catalog_sync.refresh_stock_job(client, db_path, pos_config.POS_WAREHOUSE),
        refresh_delay=pos_config.STOCK_REFRESH_DELAY,
    )


def run_once(conn: sqlite3.Connection, orchestrator: SyncOrchestrator, limit: int = 20) -> SyncReport:
    report = orchestrator.process_outbox(conn, limit=limit)
    if report.attempts:
        ok = sum(1 for a in report.attempts if a.ok)
        log.info("[sync] sent %d write(s): %d ok, %d failed", len(report.attempts), ok, len(report.attempts) - ok)
    return report


def main():
    pos_config.configure_logging()
    client = ERPNextClient.from_env()
    if not client.configured:
        log.error("[sync] ERPNEXT_URL/ERPNEXT_API_KEY/ERPNEXT_API_SECRET are not set; nothing to do")
        return 1
    log.info("[sync] starting worker, interval=%ss, db=%s", pos_config.SYNC_INTERVAL, pos_config.POS_DB_PATH)
    conn = connect_db()
    orchestrator = build_orchestrator(client, pos_config.POS_DB_PATH)
    try:
        while True:
            try:
                run_once(conn, orchestrator)
            except sqlite3.Error:
                log.exception("[sync] outbox drain failed")
            time.sleep(pos_config.SYNC_INTERVAL)
    except KeyboardInterrupt:
        log.info("[sync] exiting on Ctrl+C")
    finally:
        orchestrator.shutdown(wait=False)
        conn.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
