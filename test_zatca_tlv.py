import base64
import datetime as dt
import unittest
from decimal import Decimal

import zatca_tlv as z


def _data(**overrides):
    base = dict(
        invoice_id="INV-1",
        seller_name="Sanad",
        vat_number="300000000000003",
        timestamp="2024-05-01T10:15:00Z",
        invoice_total=Decimal("103.50"),
        vat_amount=Decimal("13.50"),
    )
    base.update(overrides)
    return z.ZATCAInvoiceData(**base)


class TLVEncodeTest(unittest.TestCase):
    def test_fields_are_encoded_in_tag_order(self):
        raw = z.encode_tlv(_data())
        self.assertEqual(raw[0], z.TAG_SELLER_NAME)
        self.assertEqual(raw[1], len("Sanad"))
        self.assertEqual(raw[2:7], b"Sanad")
        self.assertEqual(raw[7], z.TAG_VAT_NUMBER)

    def test_length_byte_counts_utf8_bytes(self):
        name = "شركة سند"
        raw = z.encode_tlv(_data(seller_name=name))
        self.assertEqual(raw[1], len(name.encode("utf-8")))
        self.assertNotEqual(raw[1], len(name))

    def test_arabic_round_trip(self):
        data = _data(seller_name="مؤسسة سند للتجارة")
        fields = z.decode_tlv(z.build_tlv_base64(data))
        self.assertEqual(fields, {
            1: "مؤسسة سند للتجارة",
            2: "300000000000003",
            3: "2024-05-01T10:15:00Z",
            4: "103.50",
            5: "13.50",
        })

    def test_encoding_is_deterministic(self):
        self.assertEqual(z.build_tlv_base64(_data()), z.build_tlv_base64(_data()))

    def test_amounts_are_two_decimals(self):
        fields = z.decode_tlv(z.encode_tlv(_data(invoice_total=Decimal("92"), vat_amount=Decimal("12.005"))))
        self.assertEqual(fields[4], "92.00")
        self.assertEqual(fields[5], "12.01")

    def test_output_is_plain_base64(self):
        encoded = z.build_tlv_base64(_data())
        self.assertEqual(base64.b64decode(encoded), z.encode_tlv(_data()))


class TLVErrorTest(unittest.TestCase):
    def test_empty_field_fails(self):
        for field in ("seller_name", "vat_number", "timestamp"):
            with self.subTest(field=field):
                with self.assertRaises(z.EncodingError):
                    z.encode_tlv(_data(**{field: ""}))

    def test_value_over_255_bytes_fails(self):
        with self.assertRaises(z.EncodingError):
            z.encode_tlv(_data(seller_name="س" * 128))

    def test_negative_or_missing_amount_fails(self):
        with self.assertRaises(z.EncodingError):
            z.encode_tlv(_data(vat_amount=Decimal("-1")))
        with self.assertRaises(z.EncodingError):
            z.encode_tlv(_data(invoice_total=None))
        with self.assertRaises(z.EncodingError):
            z.encode_tlv(_data(invoice_total="abc"))

    def test_truncated_payload_fails_to_decode(self):
        raw = z.encode_tlv(_data())
        with self.assertRaises(z.EncodingError):
            z.decode_tlv(raw[:-3])
        with self.assertRaises(z.EncodingError):
            z.decode_tlv(raw + b"\x01")

    def test_invalid_base64_fails_to_decode(self):
        with self.assertRaises(z.EncodingError):
            z.decode_tlv("not base64!")


class TimestampTest(unittest.TestCase):
    def test_aware_datetimes_are_converted_to_utc(self):
        riyadh = dt.timezone(dt.timedelta(hours=3))
        moment = dt.datetime(2024, 5, 1, 13, 15, 30, 999, tzinfo=riyadh)
        self.assertEqual(z.invoice_timestamp(moment), "2024-05-01T10:15:30Z")


if __name__ == "__main__":
    unittest.main()
