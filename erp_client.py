"""
Thin ERPNext REST client (token auth, JSON bodies).

Transport failures surface as ``requests.RequestException``; HTTP errors
(status >= 400) as ``ERPNextError`` carrying the status and the most useful
message ERPNext returned.
"""
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

import pos_config

log = logging.getLogger(__name__)

SALES_INVOICE = 'Sales Invoice'
STOCK_ENTRY = 'Stock Entry'
POS_OPENING_ENTRY = 'POS Opening Entry'
POS_CLOSING_ENTRY = 'POS Closing Entry'
ITEM = 'Item'
ITEM_GROUP = 'Item Group'
BIN = 'Bin'


class ERPNextError(Exception):
    def __init__(self, status_code: int, message: str, body: Any = None):
        super().__init__(f"ERPNext HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.body = body


def _server_message(raw: Any) -> Optional[str]:
    """Pull the first human message out of Frappe's ``_server_messages``."""
    try:
        messages = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(messages, list) and messages:
            first = messages[0]
            if isinstance(first, str):
                try:
                    first = json.loads(first)
                except ValueError:
                    return first
            if isinstance(first, dict):
                return first.get('message') or first.get('title')
            return str(first)
    except (TypeError, ValueError):
        return None
    return None


def error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
    except ValueError:
        return (resp.text or '').strip() or f"HTTP {resp.status_code}"
    if not isinstance(j, dict):
        return resp.text
    return (_server_message(j.get('_server_messages'))
            or j.get('exception')
            or j.get('message')
            or j.get('exc_type')
            or resp.text)


def resource_path(doctype: str, name: Optional[str] = None) -> str:
    path = '/api/resource/' + quote(doctype, safe='')
    if name:
        path += '/' + quote(name, safe='')
    return path


class ERPNextClient:
    def __init__(self, base_url: Optional[str], api_key: Optional[str], api_secret: Optional[str],
                 timeout: float = 20, session: Optional[requests.Session] = None):
        self.base_url = (base_url or '').rstrip('/')
        if self.base_url and not self.base_url.startswith(('http://', 'https://')):
            self.base_url = 'https://' + self.base_url
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> 'ERPNextClient':
        return cls(pos_config.ERPNEXT_URL, pos_config.ERPNEXT_API_KEY,
                   pos_config.ERPNEXT_API_SECRET, timeout=pos_config.ERPNEXT_TIMEOUT)

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.api_secret)

    def headers(self) -> Dict[str, str]:
        if not self.configured:
            raise RuntimeError("Missing ERPNEXT_URL/ERPNEXT_API_KEY/ERPNEXT_API_SECRET in environment")
        return {
            'Authorization': f'token {self.api_key}:{self.api_secret}',
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }

    def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = self.base_url + path
        log.debug("ERPNext %s %s", method, path)
        resp = self.session.request(method, url, headers=self.headers(), json=payload,
                                    params=params, timeout=self.timeout)
        if resp.status_code >= 400:
            message = error_message_from_response(resp)
            log.warning("ERPNext %s %s failed (%s): %s", method, path, resp.status_code, message)
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            raise ERPNextError(resp.status_code, message, body)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            raise ERPNextError(resp.status_code, 'Response was not JSON', resp.text) from None

    def post_resource(self, doctype: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a document; returns the saved doc (the ``data`` member)."""
        body = dict(payload)
        body.setdefault('doctype', doctype)
        res = self.request('POST', resource_path(doctype), payload=body)
        return res.get('data') or res

    def get_list(self, doctype: str, fields: List[str], filters: Optional[List[List[Any]]] = None,
                 limit: int = 500, order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            'fields': json.dumps(fields),
            'limit_page_length': limit,
        }
        if filters:
            params['filters'] = json.dumps(filters)
        if order_by:
            params['order_by'] = order_by
        res = self.request('GET', resource_path(doctype), params=params)
        return res.get('data') or []

    def get_doc(self, doctype: str, name: str) -> Dict[str, Any]:
        res = self.request('GET', resource_path(doctype, name))
        return res.get('data') or res
