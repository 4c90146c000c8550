"""
Pull the item catalog, item groups and Bin stock levels from ERPNext.

ERPNext is the source of truth for stock; a refresh overwrites local
quantities (last write wins). A 403 on a pull means the API user lacks
read access to that doctype: it is logged once and skipped.
"""
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Set

import pos_config
import pos_store
from erp_client import BIN, ITEM, ITEM_GROUP, ERPNextClient, ERPNextError

log = logging.getLogger(__name__)

ITEM_FIELDS = ['name', 'item_name', 'item_group', 'standard_rate', 'valuation_rate', 'stock_uom', 'disabled', 'modified']
BIN_FIELDS = ['name', 'item_code', 'warehouse', 'actual_qty', 'reserved_qty', 'projected_qty', 'modified']
ITEM_GROUP_FIELDS = ['name', 'item_group_name', 'parent_item_group', 'image', 'modified']

_FORBIDDEN: Set[str] = set()


def _pull(client: ERPNextClient, doctype: str, fields: List[str],
          filters: Optional[List[List[Any]]] = None, limit: int = 500) -> Optional[List[Dict[str, Any]]]:
    try:
        return client.get_list(doctype, fields, filters=filters, limit=limit, order_by='modified asc, name asc')
    except ERPNextError as exc:
        if exc.status_code == 403:
            if doctype not in _FORBIDDEN:
                log.warning("%s pull forbidden (HTTP 403); skipping %s sync", doctype, doctype)
            _FORBIDDEN.add(doctype)
            return None
        raise


def pull_items(conn: sqlite3.Connection, client: ERPNextClient, limit: int = 500) -> int:
    rows = _pull(client, ITEM, ITEM_FIELDS, limit=limit)
    if not rows:
        return 0
    for row in rows:
        pos_store.upsert_item(conn, {
            'item_code': row['name'],
            'item_name': row.get('item_name'),
            'item_group': row.get('item_group'),
            'standard_rate': row.get('standard_rate'),
            'valuation_rate': row.get('valuation_rate'),
            'stock_uom': row.get('stock_uom'),
            'disabled': row.get('disabled'),
            'modified': row.get('modified'),
        }, commit=False)
    conn.commit()
    log.info("Pulled %d items", len(rows))
    return len(rows)


def _sellable_qty(row: Dict[str, Any]) -> float:
    if row.get('projected_qty') is not None:
        return float(row['projected_qty'])
    return float(row.get('actual_qty') or 0) - float(row.get('reserved_qty') or 0)


def refresh_stock(conn: sqlite3.Connection, client: ERPNextClient, warehouse: Optional[str] = None,
                  limit: int = 500) -> int:
    """Overwrite local stock for ``warehouse`` with ERPNext's Bin quantities."""
    warehouse = warehouse or pos_config.POS_WAREHOUSE
    rows = _pull(client, BIN, BIN_FIELDS, filters=[['warehouse', '=', warehouse]], limit=limit)
    if not rows:
        return 0
    count = 0
    for row in rows:
        item_code = row.get('item_code')
        if not item_code:
            continue
        pos_store.upsert_stock(conn, item_code, max(0.0, _sellable_qty(row)), warehouse, commit=False)
        count += 1
    conn.commit()
    log.info("Refreshed stock for %d items in %s", count, warehouse)
    return count


def refresh_stock_job(client: ERPNextClient, db_path: Optional[str] = None,
                      warehouse: Optional[str] = None) -> int:
    """Stock refresh on its own connection, for timers and worker threads."""
    conn = pos_store.connect(db_path)
    try:
        return refresh_stock(conn, client, warehouse)
    finally:
        conn.close()


def item_group_payload(category: Dict[str, Any]) -> Dict[str, Any]:
    name = (category.get('item_group_name') or category.get('name_en') or category.get('name') or '').strip()
    if not name:
        raise ValueError("Item group name is required")
    payload = {
        'doctype': ITEM_GROUP,
        'item_group_name': name,
        'parent_item_group': category.get('parent_item_group') or 'All Item Groups',
        'is_group': 1 if category.get('is_group') else 0,
    }
    if category.get('name_ar'):
        payload['item_group_name_ar'] = category['name_ar']
    if category.get('image'):
        payload['image'] = category['image']
    return payload


def push_item_group(client: ERPNextClient, category: Dict[str, Any]) -> Dict[str, Any]:
    doc = client.post_resource(ITEM_GROUP, item_group_payload(category))
    log.info("Created item group %s", doc.get('name'))
    return doc


def pull_item_groups(conn: sqlite3.Connection, client: ERPNextClient, limit: int = 500) -> int:
    rows = _pull(client, ITEM_GROUP, ITEM_GROUP_FIELDS, limit=limit)
    if not rows:
        return 0
    for row in rows:
        pos_store.upsert_item_group(conn, row, commit=False)
    conn.commit()
    return len(rows)
