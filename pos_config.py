"""
Process-wide configuration for the Sanad checkout core.

Values come from the environment (a local .env is loaded first). Empty
strings are treated as unset so a blank line in .env falls back to defaults.

Env vars:
  POS_DB_PATH              SQLite DB path (default: pos.db)
  POS_SCHEMA_PATH          schema file used by init_db (default: schema.sql)
  ERPNEXT_URL              e.g. https://erp.example.com (sync disabled when unset)
  ERPNEXT_API_KEY / ERPNEXT_API_SECRET
  ERPNEXT_TIMEOUT          seconds per ERP request (default: 20)
  STORE_NAME / STORE_VAT_NUMBER   ZATCA seller fields
  POS_VAT_RATE             default 0.15
  LOYALTY_*                loyalty rule
  STOCK_REFRESH_DELAY      seconds before the post-sale stock re-fetch (default: 5)
"""
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    try:
        return Decimal(_env_string(name, default))
    except (InvalidOperation, TypeError):
        return Decimal(default)


POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
POS_SCHEMA_PATH = _env_string('POS_SCHEMA_PATH', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'schema.sql'))

# ERPNext REST
ERPNEXT_URL = _env_string('ERPNEXT_URL')
ERPNEXT_API_KEY = _env_string('ERPNEXT_API_KEY')
ERPNEXT_API_SECRET = _env_string('ERPNEXT_API_SECRET')
ERPNEXT_TIMEOUT = _env_float('ERPNEXT_TIMEOUT', 20.0)

# ERP document constants
POS_COMPANY = _env_string('POS_COMPANY', 'Sanad Company')
POS_WAREHOUSE = _env_string('POS_WAREHOUSE', 'Stores - S')
POS_STOCK_UOM = _env_string('POS_STOCK_UOM', 'Nos')
POS_WALKIN_CUSTOMER = _env_string('POS_WALKIN_CUSTOMER', 'Walk-in Customer')
POS_PROFILE = _env_string('POS_PROFILE', 'Default POS Profile')
POS_BRANCH = _env_string('POS_BRANCH', 'Main')
POS_TILL = _env_string('POS_TILL')
POS_INCOME_ACCOUNT = _env_string('POS_INCOME_ACCOUNT', 'Sales - S')
POS_DEBIT_ACCOUNT = _env_string('POS_DEBIT_ACCOUNT', 'Debtors - S')
POS_EXPENSE_ACCOUNT = _env_string('POS_EXPENSE_ACCOUNT', 'Cost of Goods Sold - S')
POS_PRICE_LIST = _env_string('POS_PRICE_LIST', 'Standard Selling')
POS_VAT_ACCOUNT = _env_string('POS_VAT_ACCOUNT', 'VAT 15% - Output')
POS_COST_CENTER = _env_string('POS_COST_CENTER', 'Main - S')
POS_CURRENCY = _env_string('POS_CURRENCY', 'SAR')

# ZATCA seller identity
STORE_NAME = _env_string('STORE_NAME', 'Sanad')
STORE_VAT_NUMBER = _env_string('STORE_VAT_NUMBER', '300000000000003')
VAT_RATE = _env_decimal('POS_VAT_RATE', '0.15')

# Loyalty
LOYALTY_POINTS_PER_UNIT = _env_decimal('LOYALTY_POINTS_PER_UNIT', '1')
LOYALTY_REDEEM_THRESHOLD = _env_int('LOYALTY_REDEEM_THRESHOLD', 500)
LOYALTY_POINT_VALUE = _env_decimal('LOYALTY_POINT_VALUE', '0.1')

# Sync behaviour
STOCK_REFRESH_DELAY = _env_float('STOCK_REFRESH_DELAY', 5.0)
SYNC_INTERVAL = _env_float('SYNC_INTERVAL', 10.0)
SYNC_MODE = (_env_string('SYNC_MODE', 'inline') or 'inline').lower()
OUTBOX_MAX_RETRIES = _env_int('OUTBOX_MAX_RETRIES', 5)

POS_LOG_LEVEL = (_env_string('POS_LOG_LEVEL', 'INFO') or 'INFO').upper()

# HTTP server
HOST = _env_string('HOST', '127.0.0.1')
PORT = _env_int('PORT', 5000)
FLASK_DEBUG = (_env_string('FLASK_DEBUG', '0') or '0').lower() in ('1', 'true', 'yes')


@dataclass(frozen=True)
class ERPSettings:
    """Constants stamped onto every outbound ERP document."""
    company: str = POS_COMPANY
    warehouse: str = POS_WAREHOUSE
    uom: str = POS_STOCK_UOM
    walkin_customer: str = POS_WALKIN_CUSTOMER
    pos_profile: str = POS_PROFILE
    branch: str = POS_BRANCH
    income_account: str = POS_INCOME_ACCOUNT
    debit_account: str = POS_DEBIT_ACCOUNT
    expense_account: str = POS_EXPENSE_ACCOUNT
    price_list: str = POS_PRICE_LIST
    vat_account: str = POS_VAT_ACCOUNT
    cost_center: str = POS_COST_CENTER
    currency: str = POS_CURRENCY
    seller_name: str = STORE_NAME
    vat_number: str = STORE_VAT_NUMBER
    vat_rate: Decimal = VAT_RATE


def has_erp_credentials() -> bool:
    return bool(ERPNEXT_URL and ERPNEXT_API_KEY and ERPNEXT_API_SECRET)


def configure_logging(level: Optional[str] = None) -> None:
    name = (level or POS_LOG_LEVEL or 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )
