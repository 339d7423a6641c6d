import unittest
from decimal import Decimal

from bucketbook.balance_engine import (
    Bucket,
    TransactionRecord,
    TransactionType,
    TransferRecord,
    accumulate_balances,
    bucket_balances,
    overall_balances,
)


def income(amount: int, currency: str = "USD", bucket: Bucket = Bucket.PERSONAL) -> TransactionRecord:
    return TransactionRecord(
        bucket=bucket, type=TransactionType.INCOME, amount_minor=amount, currency=currency
    )


def expense(amount: int, currency: str = "USD", bucket: Bucket = Bucket.PERSONAL) -> TransactionRecord:
    return TransactionRecord(
        bucket=bucket, type=TransactionType.EXPENSE, amount_minor=amount, currency=currency
    )


class BalanceAggregationTests(unittest.TestCase):
    def test_income_minus_expense(self) -> None:
        balances = overall_balances([income(500), expense(200)], [])

        self.assertEqual(balances, {"USD": 300})

    def test_transfer_moves_declared_amounts_within_bucket(self) -> None:
        transfer = TransferRecord(
            bucket=Bucket.PERSONAL,
            from_currency="USD",
            to_currency="EUR",
            from_amount_minor=10000,
            to_amount_minor=9200,
            manual_rate=Decimal("0.5"),
        )

        per_bucket = bucket_balances([], [transfer])

        self.assertEqual(per_bucket[Bucket.PERSONAL], {"EUR": 9200, "USD": -10000})
        self.assertEqual(per_bucket[Bucket.OBLIGATIONS], {})
        self.assertEqual(per_bucket[Bucket.INVESTMENTS], {})

    def test_zero_balances_are_pruned(self) -> None:
        balances = overall_balances([income(700, "GBP"), expense(700, "GBP"), income(1)], [])

        self.assertEqual(balances, {"USD": 1})

    def test_raw_accumulation_keeps_zero_balances(self) -> None:
        balances = accumulate_balances([income(700, "GBP"), expense(700, "GBP")], [])

        self.assertEqual(balances, {"GBP": 0})

    def test_hidden_currencies_never_appear(self) -> None:
        transactions = [income(1000, "EUR"), income(50, "USD")]
        transfers = [
            TransferRecord(
                bucket=Bucket.OBLIGATIONS,
                from_currency="USD",
                to_currency="EUR",
                from_amount_minor=10,
                to_amount_minor=9,
            )
        ]

        self.assertEqual(overall_balances(transactions, transfers, ["eur"]), {"USD": 40})
        per_bucket = bucket_balances(transactions, transfers, {"EUR"})
        for balances in per_bucket.values():
            self.assertNotIn("EUR", balances)

    def test_overall_view_sorted_by_currency(self) -> None:
        balances = overall_balances([income(1, "USD"), income(2, "CHF"), income(3, "EUR")], [])

        self.assertEqual(list(balances), ["CHF", "EUR", "USD"])

    def test_bucket_view_has_fixed_order_and_separates_buckets(self) -> None:
        transactions = [
            income(100, bucket=Bucket.PERSONAL),
            income(200, bucket=Bucket.OBLIGATIONS),
            expense(50, bucket=Bucket.OBLIGATIONS),
        ]

        per_bucket = bucket_balances(transactions, [])

        self.assertEqual(
            list(per_bucket), [Bucket.OBLIGATIONS, Bucket.INVESTMENTS, Bucket.PERSONAL]
        )
        self.assertEqual(per_bucket[Bucket.OBLIGATIONS], {"USD": 150})
        self.assertEqual(per_bucket[Bucket.PERSONAL], {"USD": 100})

    def test_bucket_scope_on_overall_view(self) -> None:
        transactions = [income(100, bucket=Bucket.PERSONAL), income(200, bucket=Bucket.INVESTMENTS)]

        balances = overall_balances(transactions, [], bucket=Bucket.INVESTMENTS)

        self.assertEqual(balances, {"USD": 200})

    def test_no_records_yields_empty_buckets(self) -> None:
        per_bucket = bucket_balances([], [])

        self.assertEqual(per_bucket, {bucket: {} for bucket in Bucket})
        self.assertEqual(overall_balances([], []), {})


class RecordValidationTests(unittest.TestCase):
    def test_bucket_validation_normalizes_case(self) -> None:
        self.assertIs(Bucket.validate(" Investments "), Bucket.INVESTMENTS)

    def test_unknown_bucket_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Bucket.validate("savings")

    def test_outcome_is_an_alias_for_expense(self) -> None:
        self.assertIs(TransactionType.validate("outcome"), TransactionType.EXPENSE)

    def test_unknown_transaction_type_rejected(self) -> None:
        with self.assertRaises(ValueError):
            TransactionType.validate("refund")


if __name__ == "__main__":
    unittest.main()
