"""
ZATCA simplified-invoice QR payload (phase 1).

Five mandatory TLV fields, each ``[tag:1][length:1][value:utf-8]``, in tag
order, Base64-encoded as a whole:

  1  seller name
  2  VAT registration number
  3  invoice timestamp (ISO-8601)
  4  invoice total incl. VAT (2 decimals)
  5  VAT amount (2 decimals)

Length is the UTF-8 byte length, not the character count (Arabic names).
"""
from __future__ import annotations

import base64
import binascii
import datetime as dt
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

TAG_SELLER_NAME = 1
TAG_VAT_NUMBER = 2
TAG_TIMESTAMP = 3
TAG_INVOICE_TOTAL = 4
TAG_VAT_AMOUNT = 5

MAX_VALUE_BYTES = 255


class EncodingError(ValueError):
    """A TLV field is missing or cannot be represented."""


@dataclass(frozen=True)
class ZATCAInvoiceData:
    invoice_id: str
    seller_name: str
    vat_number: str
    timestamp: str
    invoice_total: Decimal
    vat_amount: Decimal


def invoice_timestamp(moment: Optional[dt.datetime] = None) -> str:
    moment = moment or dt.datetime.now(dt.timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return moment.replace(microsecond=0).isoformat() + "Z"


def format_amount(value: Any, field_name: str) -> str:
    if isinstance(value, bool) or value is None or (isinstance(value, str) and not value.strip()):
        raise EncodingError(f"{field_name} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise EncodingError(f"{field_name} must be numeric") from None
    if not amount.is_finite():
        raise EncodingError(f"{field_name} must be numeric")
    if amount < 0:
        raise EncodingError(f"{field_name} cannot be negative")
    return f"{amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}"


def encode_tlv_field(tag: int, value: str) -> bytes:
    if value is None or not str(value).strip():
        raise EncodingError(f"TLV tag {tag} has an empty value")
    raw = str(value).encode("utf-8")
    if len(raw) > MAX_VALUE_BYTES:
        raise EncodingError(f"TLV tag {tag} is {len(raw)} bytes; the limit is {MAX_VALUE_BYTES}")
    return bytes((tag, len(raw))) + raw


def tlv_fields(data: ZATCAInvoiceData) -> List[Tuple[int, str]]:
    return [
        (TAG_SELLER_NAME, data.seller_name),
        (TAG_VAT_NUMBER, data.vat_number),
        (TAG_TIMESTAMP, data.timestamp),
        (TAG_INVOICE_TOTAL, format_amount(data.invoice_total, "invoice_total")),
        (TAG_VAT_AMOUNT, format_amount(data.vat_amount, "vat_amount")),
    ]


def encode_tlv(data: ZATCAInvoiceData) -> bytes:
    return b"".join(encode_tlv_field(tag, value) for tag, value in tlv_fields(data))


def build_tlv_base64(data: ZATCAInvoiceData) -> str:
    """Base64 string to embed in the receipt QR code."""
    return base64.b64encode(encode_tlv(data)).decode("ascii")


def decode_tlv(payload: Union[str, bytes]) -> Dict[int, str]:
    """Parse a TLV blob (Base64 text or raw bytes) back into ``{tag: value}``."""
    if isinstance(payload, str):
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise EncodingError("Payload is not valid Base64") from None
    else:
        raw = bytes(payload)
    fields: Dict[int, str] = {}
    offset = 0
    while offset < len(raw):
        if offset + 2 > len(raw):
            raise EncodingError(f"Truncated TLV header at byte {offset}")
        tag = raw[offset]
        length = raw[offset + 1]
        end = offset + 2 + length
        if end > len(raw):
            raise EncodingError(f"TLV tag {tag} declares {length} bytes but the payload ends early")
        try:
            fields[tag] = raw[offset + 2:end].decode("utf-8")
        except UnicodeDecodeError:
            raise EncodingError(f"TLV tag {tag} is not valid UTF-8") from None
        offset = end
    return fields
