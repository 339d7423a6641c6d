import unittest
from decimal import Decimal
from fractions import Fraction

from bucketbook.money import convert_money, distribute_money, format_minor, normalize_currency


class DistributeMoneyTests(unittest.TestCase):
    def test_remainder_goes_to_leading_parts(self) -> None:
        self.assertEqual(distribute_money(100, 3), [34, 33, 33])
        self.assertEqual(distribute_money(10000, 3), [3334, 3333, 3333])
        self.assertEqual(distribute_money(101, 3), [34, 34, 33])

    def test_zero_total_yields_zero_parts(self) -> None:
        self.assertEqual(distribute_money(0, 3), [0, 0, 0])

    def test_parts_sum_to_total_and_differ_by_at_most_one(self) -> None:
        for total in (1, 2, 7, 99, 1000, 123457):
            for parts in (1, 2, 3, 4, 7):
                result = distribute_money(total, parts)
                self.assertEqual(len(result), parts)
                self.assertEqual(sum(result), total)
                self.assertLessEqual(max(result) - min(result), 1)

    def test_fewer_units_than_parts(self) -> None:
        self.assertEqual(distribute_money(2, 3), [1, 1, 0])

    def test_rejects_non_positive_parts(self) -> None:
        with self.assertRaises(ValueError):
            distribute_money(100, 0)

    def test_rejects_negative_total(self) -> None:
        with self.assertRaises(ValueError):
            distribute_money(-1, 3)


class ConvertMoneyTests(unittest.TestCase):
    def test_applies_rate(self) -> None:
        self.assertEqual(convert_money(10000, Decimal("0.92")), 9200)

    def test_rounds_half_away_from_zero(self) -> None:
        self.assertEqual(convert_money(5, Decimal("0.5")), 3)
        self.assertEqual(convert_money(-5, Decimal("0.5")), -3)
        self.assertEqual(convert_money(4, Decimal("0.5")), 2)

    def test_accepts_fraction_and_string_rates(self) -> None:
        self.assertEqual(convert_money(300, Fraction(1, 3)), 100)
        self.assertEqual(convert_money(1000, "1.25"), 1250)

    def test_negative_balances_keep_sign(self) -> None:
        self.assertEqual(convert_money(-10000, Decimal("0.92")), -9200)


class CurrencyFormattingTests(unittest.TestCase):
    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")

    def test_rejects_malformed_codes(self) -> None:
        for value in ("EURO", "E1R", "", "us"):
            with self.assertRaises(ValueError):
                normalize_currency(value)

    def test_formats_minor_units(self) -> None:
        self.assertEqual(format_minor(12345, "USD"), "USD 123.45")
        self.assertEqual(format_minor(-5, "EUR", symbol="€"), "€-0.05")


if __name__ == "__main__":
    unittest.main()
