from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Mapping, Optional

from bucketbook.balance_engine import BUCKET_ORDER, Bucket, TransactionType
from bucketbook.money import distribute_money, normalize_currency

INCOME_CATEGORY_NAME = "Income"
DEFAULT_SPLIT_NOTE = "Income split"
SPLIT_NOTE_SUFFIX = " (split)"


@dataclass(frozen=True)
class SplitTransaction:
    bucket: Bucket
    category_id: int
    amount_minor: int
    currency: str
    effective_at: datetime
    note: str
    type: TransactionType = TransactionType.INCOME


def split_note(note: Optional[str]) -> str:
    cleaned = note.strip() if note else ""
    if not cleaned:
        return DEFAULT_SPLIT_NOTE
    return f"{cleaned}{SPLIT_NOTE_SUFFIX}"


def plan_income_split(
    amount_minor: int,
    currency: str,
    effective_at: datetime,
    category_ids: Mapping[Bucket, int],
    note: Optional[str] = None,
) -> List[SplitTransaction]:
    """Build one income transaction per bucket, in bucket order.

    Nothing is persisted here; the caller inserts the returned records as a
    single unit.
    """
    if amount_minor <= 0:
        raise ValueError("amount_minor must be greater than zero.")
    missing = [bucket.value for bucket in BUCKET_ORDER if bucket not in category_ids]
    if missing:
        raise ValueError(f"Missing income category for: {', '.join(missing)}")

    normalized_currency = normalize_currency(currency)
    resolved_note = split_note(note)
    amounts = distribute_money(amount_minor, len(BUCKET_ORDER))

    return [
        SplitTransaction(
            bucket=bucket,
            category_id=category_ids[bucket],
            amount_minor=amount,
            currency=normalized_currency,
            effective_at=effective_at,
            note=resolved_note,
        )
        for bucket, amount in zip(BUCKET_ORDER, amounts)
    ]
