from __future__ import annotations

import unittest

from tradesafe.utils.money import (
    bps_minor_half_up,
    money_major_to_minor,
    money_minor_to_major,
    parse_amount_minor,
    split_platform_fee,
)


class MoneyMinorTestCase(unittest.TestCase):
    def test_five_percent_fee_on_hundred(self):
        self.assertEqual(split_platform_fee(10000, 500), (500, 9500))

    def test_fee_rounds_half_up(self):
        # 1010 * 5% = 50.5
        self.assertEqual(bps_minor_half_up(1010, 500), 51)
        self.assertEqual(split_platform_fee(1010, 500), (51, 959))

    def test_fee_and_net_always_sum_to_total(self):
        for total in (1, 7, 19, 333, 10001, 999999):
            fee, net = split_platform_fee(total, 500)
            self.assertEqual(fee + net, total)
            self.assertGreaterEqual(fee, 0)
            self.assertGreaterEqual(net, 0)

    def test_tiny_total_has_zero_fee(self):
        self.assertEqual(split_platform_fee(1, 500), (0, 1))

    def test_non_positive_total_rejected(self):
        with self.assertRaises(ValueError):
            split_platform_fee(0, 500)

    def test_major_minor_conversion(self):
        self.assertEqual(money_major_to_minor("12.345"), 1235)
        self.assertEqual(money_major_to_minor(100), 10000)
        self.assertEqual(money_minor_to_major(9500), 95.0)
        with self.assertRaises(ValueError):
            money_major_to_minor("abc")

    def test_parse_amount_prefers_minor_key(self):
        self.assertEqual(parse_amount_minor({"total_minor": 1234, "total": 99}, "total"), 1234)
        self.assertEqual(parse_amount_minor({"total": "12.50"}, "total"), 1250)
        self.assertIsNone(parse_amount_minor({}, "total"))
        with self.assertRaises(ValueError):
            parse_amount_minor({"total_minor": True}, "total")


if __name__ == "__main__":
    unittest.main()
