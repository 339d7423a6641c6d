import unittest

from bucketbook.preferences import (
    DEFAULT_CURRENCIES,
    CurrencyInfo,
    dump_hidden_currencies,
    parse_hidden_currencies,
    visible_currencies,
)


class HiddenCurrencyParsingTests(unittest.TestCase):
    def test_valid_list_is_normalized(self) -> None:
        self.assertEqual(parse_hidden_currencies('["eur", " gbp "]'), frozenset({"EUR", "GBP"}))

    def test_empty_value_hides_nothing(self) -> None:
        self.assertEqual(parse_hidden_currencies(None), frozenset())
        self.assertEqual(parse_hidden_currencies(""), frozenset())

    def test_malformed_json_hides_nothing(self) -> None:
        with self.assertLogs("bucketbook.preferences", level="WARNING"):
            self.assertEqual(parse_hidden_currencies("[EUR"), frozenset())

    def test_non_list_hides_nothing(self) -> None:
        with self.assertLogs("bucketbook.preferences", level="WARNING"):
            self.assertEqual(parse_hidden_currencies('{"EUR": true}'), frozenset())

    def test_non_string_entries_are_dropped(self) -> None:
        self.assertEqual(parse_hidden_currencies('["EUR", 5, null]'), frozenset({"EUR"}))

    def test_dump_is_sorted_and_deduplicated(self) -> None:
        self.assertEqual(dump_hidden_currencies(["gbp", "EUR", "eur"]), '["EUR", "GBP"]')


class VisibleCurrencyTests(unittest.TestCase):
    def test_defaults_listed_when_nothing_customized(self) -> None:
        listed = visible_currencies([])

        self.assertEqual(listed, list(DEFAULT_CURRENCIES))

    def test_hidden_defaults_are_removed(self) -> None:
        codes = [currency.code for currency in visible_currencies([], ["eur"])]

        self.assertNotIn("EUR", codes)
        self.assertIn("USD", codes)

    def test_custom_currencies_follow_defaults_by_code(self) -> None:
        custom = [
            CurrencyInfo("SEK", "Swedish Krona", "kr"),
            CurrencyInfo("BTC", "Bitcoin", "B"),
        ]

        listed = visible_currencies(custom)

        self.assertEqual([currency.code for currency in listed[-2:]], ["BTC", "SEK"])
        self.assertFalse(listed[-1].is_default)


if __name__ == "__main__":
    unittest.main()
