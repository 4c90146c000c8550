import unittest
from decimal import Decimal

import checkout_pricing as cp


def _line(price, qty=1, discount=0, kind=cp.DISCOUNT_PERCENTAGE, code="SKU-1", cost=0):
    return cp.CartLine(item_code=code, unit_price=price, qty=qty, discount=discount,
                       discount_type=kind, cost_price=cost)


class PricingTotalsTest(unittest.TestCase):
    def test_plain_cart_totals(self):
        lines = [_line("45.00", qty=2)]
        self.assertEqual(cp.subtotal(lines), Decimal("90.00"))
        self.assertEqual(cp.total_discount(lines), Decimal("0"))
        result = cp.price_cart(lines)
        self.assertEqual(result.display()["vat"], "13.50")
        self.assertEqual(result.display()["grand_total"], "103.50")

    def test_percentage_discount_reduces_vat_base(self):
        lines = [_line("100.00", discount=20)]
        self.assertEqual(cp.line_discount(lines[0]), Decimal("20.00"))
        result = cp.price_cart(lines)
        self.assertEqual(result.subtotal, Decimal("100.00"))
        self.assertEqual(cp.quantize_money(result.vat), Decimal("12.00"))
        self.assertEqual(result.display()["grand_total"], "92.00")

    def test_fixed_discount_is_per_unit(self):
        line = _line("30", qty=3, discount=5, kind=cp.DISCOUNT_FIXED)
        self.assertEqual(cp.line_discount(line), Decimal("15"))

    def test_full_percentage_discount_clamps_at_line_amount(self):
        line = _line("12.50", qty=2, discount=100)
        self.assertEqual(cp.line_discount(line), line.amount)
        self.assertEqual(cp.price_cart([line]).grand_total, Decimal("0"))

    def test_no_intermediate_rounding(self):
        lines = [_line("0.333", qty=3)]
        result = cp.price_cart(lines)
        self.assertEqual(result.subtotal, Decimal("0.999"))
        self.assertEqual(result.display()["subtotal"], "1.00")

    def test_float_prices_keep_their_short_repr(self):
        self.assertEqual(_line(45.1).unit_price, Decimal("45.1"))

    def test_vat_and_grand_total_helpers_agree_with_price_cart(self):
        lines = [_line("19.99", qty=3, discount=10), _line("5", code="SKU-2")]
        off = Decimal("2")
        rate = Decimal("0.15")
        self.assertEqual(cp.grand_total(lines, off, rate),
                         cp.subtotal(lines) - cp.total_discount(lines) - off + cp.vat_amount(lines, off, rate))


class CartLineValidationTest(unittest.TestCase):
    def test_rejects_bad_quantities(self):
        for qty in (0, -1, 1.5, True, "2"):
            with self.subTest(qty=qty):
                with self.assertRaises(cp.ValidationError):
                    _line("10", qty=qty)

    def test_rejects_negative_price(self):
        with self.assertRaises(cp.ValidationError):
            _line("-1")

    def test_rejects_percentage_over_100(self):
        with self.assertRaises(cp.ValidationError):
            _line("10", discount=101)

    def test_rejects_negative_discount(self):
        with self.assertRaises(cp.ValidationError):
            _line("10", discount=-5)

    def test_rejects_fixed_discount_above_unit_price(self):
        with self.assertRaises(cp.ValidationError):
            _line("10", discount=11, kind=cp.DISCOUNT_FIXED)

    def test_rejects_unknown_discount_type(self):
        with self.assertRaises(cp.ValidationError):
            _line("10", discount=1, kind="bogus")

    def test_rejects_non_numeric_price(self):
        with self.assertRaises(cp.ValidationError):
            _line("abc")

    def test_item_name_defaults_to_code(self):
        self.assertEqual(_line("1", code="ABC").item_name, "ABC")


class LoyaltyTest(unittest.TestCase):
    def setUp(self):
        self.rule = cp.LoyaltyRule(points_per_unit=Decimal("1"), redeem_threshold=500, point_value=Decimal("0.1"))

    def test_redeemable_is_floored_to_threshold(self):
        self.assertEqual(cp.redeemable_points(600, self.rule), 500)
        self.assertEqual(cp.redeemable_points(1499, self.rule), 1000)
        self.assertEqual(cp.redeemable_points(499, self.rule), 0)

    def test_redemption_scenario(self):
        account = cp.LoyaltyAccount("CUST-1", points=600)
        txn = cp.CheckoutTransaction(rule=self.rule, account=account)
        txn.add_line(_line("200"))
        txn.activate_redemption()
        result = txn.price()
        self.assertEqual(result.points_redeemed, 500)
        self.assertEqual(result.display()["points_discount"], "50.00")
        self.assertEqual(result.display()["vat"], "22.50")
        self.assertEqual(result.display()["grand_total"], "172.50")
        self.assertEqual(txn.commit_redemption(), 500)
        self.assertEqual(account.points, 100)

    def test_redemption_needs_explicit_activation(self):
        account = cp.LoyaltyAccount("CUST-1", points=600)
        result = cp.price_cart([_line("200")], self.rule, account, redeem=False)
        self.assertEqual(result.points_redeemed, 0)
        self.assertEqual(result.points_discount, Decimal("0"))

    def test_points_never_push_total_below_zero(self):
        account = cp.LoyaltyAccount("CUST-1", points=5000)
        result = cp.price_cart([_line("60")], self.rule, account, redeem=True)
        # one 500-point block is worth 50; a second would exceed the 60 net
        self.assertEqual(result.points_redeemed, 500)
        self.assertGreaterEqual(result.grand_total, Decimal("0"))

    def test_commit_redemption_runs_once(self):
        account = cp.LoyaltyAccount("CUST-1", points=1000)
        txn = cp.CheckoutTransaction(rule=self.rule, account=account)
        txn.add_line(_line("500"))
        txn.activate_redemption()
        self.assertEqual(txn.commit_redemption(), 1000)
        self.assertEqual(txn.commit_redemption(), 1000)
        self.assertEqual(account.points, 0)

    def test_rollback_redemption_restores_balance(self):
        account = cp.LoyaltyAccount("CUST-1", points=700)
        txn = cp.CheckoutTransaction(rule=self.rule, account=account)
        txn.add_line(_line("100"))
        txn.activate_redemption()
        txn.commit_redemption()
        txn.rollback_redemption()
        self.assertEqual(account.points, 700)

    def test_activation_without_account_fails(self):
        txn = cp.CheckoutTransaction(rule=self.rule)
        with self.assertRaises(cp.ValidationError):
            txn.activate_redemption()

    def test_points_earned_floors(self):
        self.assertEqual(cp.points_earned(Decimal("99.99"), self.rule), 99)
        self.assertEqual(cp.points_earned(Decimal("0"), self.rule), 0)

    def test_negative_balance_rejected(self):
        with self.assertRaises(cp.ValidationError):
            cp.LoyaltyAccount("CUST-1", points=-1)


class TransactionTest(unittest.TestCase):
    def test_identical_lines_merge(self):
        txn = cp.CheckoutTransaction()
        txn.add_line(_line("10", qty=1))
        txn.add_line(_line("10", qty=2))
        self.assertEqual(len(txn.lines), 1)
        self.assertEqual(txn.lines[0].qty, 3)

    def test_set_quantity_and_remove(self):
        txn = cp.CheckoutTransaction()
        txn.add_line(_line("10", code="A"))
        txn.add_line(_line("5", code="B"))
        txn.set_quantity("A", 4)
        self.assertEqual(txn.price().subtotal, Decimal("45"))
        txn.remove_line("B")
        self.assertEqual([l.item_code for l in txn.lines], ["A"])
        with self.assertRaises(cp.ValidationError):
            txn.set_quantity("B", 1)

    def test_parse_cart_lines_accepts_request_aliases(self):
        lines = cp.parse_cart_lines([
            {"code": 101, "name": "Tea", "price": "4.50", "quantity": "2"},
            {"item_code": "C-2", "rate": 3, "qty": 1.0, "discount": 1, "discount_type": "fixed"},
        ])
        self.assertEqual(lines[0].item_code, "101")
        self.assertEqual(lines[0].qty, 2)
        self.assertEqual(lines[1].discount_type, cp.DISCOUNT_FIXED)

    def test_parse_cart_lines_rejects_non_objects(self):
        with self.assertRaises(cp.ValidationError):
            cp.parse_cart_lines(["SKU-1"])


if __name__ == "__main__":
    unittest.main()
