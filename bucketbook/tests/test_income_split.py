import unittest
from datetime import datetime

from bucketbook.balance_engine import Bucket, TransactionType
from bucketbook.income_split import plan_income_split, split_note


class IncomeSplitTests(unittest.TestCase):
    def setUp(self) -> None:
        self.category_ids = {
            Bucket.OBLIGATIONS: 11,
            Bucket.INVESTMENTS: 12,
            Bucket.PERSONAL: 13,
        }
        self.effective_at = datetime(2024, 5, 1, 9, 30)

    def test_remainder_goes_to_obligations_first(self) -> None:
        planned = plan_income_split(10000, "usd", self.effective_at, self.category_ids)

        self.assertEqual([entry.amount_minor for entry in planned], [3334, 3333, 3333])
        self.assertEqual(
            [entry.bucket for entry in planned],
            [Bucket.OBLIGATIONS, Bucket.INVESTMENTS, Bucket.PERSONAL],
        )
        self.assertEqual([entry.category_id for entry in planned], [11, 12, 13])

    def test_split_entries_share_currency_date_and_type(self) -> None:
        planned = plan_income_split(101, " eur ", self.effective_at, self.category_ids)

        self.assertEqual([entry.amount_minor for entry in planned], [34, 34, 33])
        for entry in planned:
            self.assertEqual(entry.currency, "EUR")
            self.assertEqual(entry.effective_at, self.effective_at)
            self.assertIs(entry.type, TransactionType.INCOME)
            self.assertEqual(entry.note, "Income split")

    def test_small_amount_leaves_empty_buckets(self) -> None:
        planned = plan_income_split(1, "USD", self.effective_at, self.category_ids)

        self.assertEqual([entry.amount_minor for entry in planned], [1, 0, 0])

    def test_note_is_suffixed(self) -> None:
        planned = plan_income_split(
            300, "USD", self.effective_at, self.category_ids, note="  Bonus "
        )

        self.assertEqual({entry.note for entry in planned}, {"Bonus (split)"})

    def test_blank_note_uses_default(self) -> None:
        self.assertEqual(split_note(None), "Income split")
        self.assertEqual(split_note("   "), "Income split")
        self.assertEqual(split_note("Salary"), "Salary (split)")

    def test_rejects_non_positive_amount(self) -> None:
        with self.assertRaises(ValueError):
            plan_income_split(0, "USD", self.effective_at, self.category_ids)

    def test_rejects_missing_category(self) -> None:
        del self.category_ids[Bucket.INVESTMENTS]

        with self.assertRaises(ValueError) as ctx:
            plan_income_split(300, "USD", self.effective_at, self.category_ids)

        self.assertIn("investments", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
