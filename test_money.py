import unittest
from decimal import Decimal

import money


class ParseAmountTest(unittest.TestCase):
    def test_decimal_strings_become_minor_units(self):
        self.assertEqual(money.from_decimal("12.34"), 1234)
        self.assertEqual(money.from_decimal("0.1"), 10)
        self.assertEqual(money.from_decimal(" 1,000.50 "), 100050)
        self.assertEqual(money.from_decimal("12.340"), 1234)
        self.assertEqual(money.from_decimal(5), 500)
        self.assertEqual(money.from_decimal(Decimal("0.05")), 5)

    def test_float_input_goes_through_its_repr(self):
        # 0.1 + 0.2 style drift must not leak into minor units
        self.assertEqual(money.from_decimal(19.99), 1999)

    def test_rejects_sub_minor_precision(self):
        with self.assertRaises(money.InvalidAmount):
            money.from_decimal("12.345")

    def test_amounts_wider_than_the_default_context_keep_every_digit(self):
        raw = "12345678901234567890123456789.01"
        minor = money.from_decimal(raw)
        self.assertEqual(minor, 1234567890123456789012345678901)
        self.assertEqual(money.to_decimal(minor), raw)
        with self.assertRaises(money.InvalidAmount):
            money.from_decimal("12345678901234567890123456789.015")

    def test_negative_needs_opt_in(self):
        with self.assertRaises(money.InvalidAmount):
            money.from_decimal("-1")
        self.assertEqual(money.from_decimal("-1", allow_negative=True), -100)

    def test_garbage_is_invalid_amount(self):
        for raw in ("abc", "", "   ", None, True, "NaN", "Infinity", [1]):
            with self.subTest(raw=raw):
                with self.assertRaises(money.InvalidAmount):
                    money.from_decimal(raw)

    def test_invalid_amount_is_a_value_error(self):
        self.assertTrue(issubclass(money.InvalidAmount, ValueError))
        self.assertTrue(issubclass(money.InvalidAmount, money.PosError))


class FormatTest(unittest.TestCase):
    def test_to_decimal(self):
        self.assertEqual(money.to_decimal(1234), "12.34")
        self.assertEqual(money.to_decimal(5), "0.05")
        self.assertEqual(money.to_decimal(0), "0.00")
        self.assertEqual(money.to_decimal(-5), "-0.05")

    def test_to_decimal_wants_ints(self):
        with self.assertRaises(money.InvalidAmount):
            money.to_decimal(12.5)

    def test_parse_back(self):
        for minor in (0, 1, 99, 100, 123456789):
            self.assertEqual(money.from_decimal(money.to_decimal(minor)), minor)


class ArithmeticTest(unittest.TestCase):
    def test_mul_rounds_half_to_even_once(self):
        self.assertEqual(money.mul(250, Decimal("0.5")), 125)
        self.assertEqual(money.mul(5, "0.5"), 2)
        self.assertEqual(money.mul(15, "0.5"), 8)
        self.assertEqual(money.mul(333, "1.5"), 500)
        self.assertEqual(money.mul(1000, 3), 3000)

    def test_mul_keeps_every_digit_of_large_amounts(self):
        self.assertEqual(money.mul(10 ** 30 + 1, "0.5"), 5 * 10 ** 29)
        self.assertEqual(money.mul(10 ** 30 + 3, "0.5"), 5 * 10 ** 29 + 2)
        self.assertEqual(money.mul(123456789012345678901234567891, 3), 370370367037037036703703703673)

    def test_add_sub(self):
        self.assertEqual(money.add(100, 250, 5), 355)
        self.assertEqual(money.add(), 0)
        self.assertEqual(money.sub(100, 250), -150)

    def test_require_non_negative(self):
        self.assertEqual(money.require_non_negative(0), 0)
        with self.assertRaises(money.InvalidAmount):
            money.require_non_negative(-1)
        with self.assertRaises(money.InvalidAmount):
            money.require_non_negative(1.5)
        with self.assertRaises(money.InvalidAmount):
            money.require_non_negative(True)

    def test_parse_quantity(self):
        self.assertEqual(money.parse_quantity("1.5"), Decimal("1.5"))
        self.assertEqual(money.parse_quantity(-2), Decimal(-2))
        with self.assertRaises(money.InvalidAmount):
            money.parse_quantity("two")


if __name__ == "__main__":
    unittest.main()
