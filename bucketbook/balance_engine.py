from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Optional


class Bucket(str, Enum):
    OBLIGATIONS = "obligations"
    INVESTMENTS = "investments"
    PERSONAL = "personal"

    @classmethod
    def validate(cls, value: str) -> "Bucket":
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError("Invalid bucket.") from exc


BUCKET_ORDER = (Bucket.OBLIGATIONS, Bucket.INVESTMENTS, Bucket.PERSONAL)


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"

    @classmethod
    def validate(cls, value: str) -> "TransactionType":
        normalized = value.strip().lower()
        if normalized == "outcome":
            normalized = "expense"
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError("Invalid transaction type.") from exc


@dataclass(frozen=True)
class TransactionRecord:
    bucket: Bucket
    type: TransactionType
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class TransferRecord:
    bucket: Bucket
    from_currency: str
    to_currency: str
    from_amount_minor: int
    to_amount_minor: int
    manual_rate: Optional[Decimal] = None
    effective_at: Optional[datetime] = None
    id: Optional[int] = None


Balances = Dict[str, int]


def accumulate_balances(
    transactions: Iterable[TransactionRecord],
    transfers: Iterable[TransferRecord],
    bucket: Optional[Bucket] = None,
) -> Balances:
    """Sum signed per-currency balances, optionally limited to one bucket.

    The result is raw: zero balances and hidden currencies are still present.
    """
    totals: Dict[str, int] = defaultdict(int)
    for txn in transactions:
        if bucket is not None and txn.bucket != bucket:
            continue
        if txn.type == TransactionType.INCOME:
            totals[txn.currency] += txn.amount_minor
        else:
            totals[txn.currency] -= txn.amount_minor

    # Declared amounts move the balance; manual_rate is not consulted.
    for transfer in transfers:
        if bucket is not None and transfer.bucket != bucket:
            continue
        totals[transfer.from_currency] -= transfer.from_amount_minor
        totals[transfer.to_currency] += transfer.to_amount_minor

    return dict(totals)


def summarize_balances(
    balances: Balances,
    hidden_currencies: Iterable[str] = (),
) -> Balances:
    hidden = {code.upper() for code in hidden_currencies}
    return {
        currency: amount
        for currency, amount in sorted(balances.items())
        if amount != 0 and currency.upper() not in hidden
    }


def overall_balances(
    transactions: Iterable[TransactionRecord],
    transfers: Iterable[TransferRecord],
    hidden_currencies: Iterable[str] = (),
    bucket: Optional[Bucket] = None,
) -> Balances:
    return summarize_balances(
        accumulate_balances(transactions, transfers, bucket=bucket),
        hidden_currencies,
    )


def bucket_balances(
    transactions: Iterable[TransactionRecord],
    transfers: Iterable[TransferRecord],
    hidden_currencies: Iterable[str] = (),
) -> Dict[Bucket, Balances]:
    """Per-bucket balances in fixed bucket order; every bucket is always present."""
    hidden = list(hidden_currencies)
    grouped: Dict[Bucket, Dict[str, int]] = {bucket: defaultdict(int) for bucket in BUCKET_ORDER}

    for txn in transactions:
        delta = txn.amount_minor if txn.type == TransactionType.INCOME else -txn.amount_minor
        grouped[txn.bucket][txn.currency] += delta

    for transfer in transfers:
        totals = grouped[transfer.bucket]
        totals[transfer.from_currency] -= transfer.from_amount_minor
        totals[transfer.to_currency] += transfer.to_amount_minor

    return {
        bucket: summarize_balances(dict(grouped[bucket]), hidden)
        for bucket in BUCKET_ORDER
    }
