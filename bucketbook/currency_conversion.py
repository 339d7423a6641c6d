from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from bucketbook.balance_engine import TransactionRecord, TransferRecord, overall_balances
from bucketbook.money import convert_money, normalize_currency

logger = logging.getLogger(__name__)

ONE = Decimal("1")


@dataclass(frozen=True)
class TransferRateProvider:
    """Exchange rates observed on a user's own transfers.

    Only manually entered transfer rates are used; nothing is fetched from
    an external market source.
    """

    transfers: Sequence[TransferRecord] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "transfers", tuple(self.transfers))

    def get_rate(self, source_currency: str, target_currency: str) -> Optional[Decimal]:
        """Return the rate from source to target, or ``None`` when none is known.

        A transfer in the requested direction wins over an inverted one, even
        if the inverted one is more recent.
        """
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ONE

        direct = self._latest(source, target)
        if direct is not None:
            return direct.manual_rate

        reverse = self._latest(target, source)
        if reverse is not None:
            return ONE / reverse.manual_rate

        return None

    def _latest(self, from_currency: str, to_currency: str) -> Optional[TransferRecord]:
        candidates = [
            transfer
            for transfer in self.transfers
            if transfer.from_currency == from_currency
            and transfer.to_currency == to_currency
            and transfer.manual_rate
        ]
        if not candidates:
            return None
        return max(candidates, key=_recency_key)


@dataclass(frozen=True)
class ConvertedTotal:
    base_currency: str
    total_minor: int
    unconverted_currencies: List[str] = field(default_factory=list)


def compute_converted_total(
    transactions: Iterable[TransactionRecord],
    transfers: Iterable[TransferRecord],
    base_currency: str,
    hidden_currencies: Iterable[str] = (),
    rate_provider: Optional[TransferRateProvider] = None,
) -> ConvertedTotal:
    """Sum every visible balance into the base currency.

    Currencies without a resolvable rate are added 1:1 and reported in
    ``unconverted_currencies``.
    """
    transfer_list = list(transfers)
    provider = rate_provider or TransferRateProvider(transfer_list)
    normalized_base = normalize_currency(base_currency)
    balances = overall_balances(transactions, transfer_list, hidden_currencies)

    total = 0
    unconverted: List[str] = []
    for currency, balance_minor in balances.items():
        if currency == normalized_base:
            total += balance_minor
            continue
        rate = provider.get_rate(currency, normalized_base)
        if rate is None:
            logger.warning(
                "No transfer rate from %s to %s; adding %d minor units unconverted",
                currency,
                normalized_base,
                balance_minor,
            )
            unconverted.append(currency)
            total += balance_minor
        else:
            total += convert_money(balance_minor, rate)

    return ConvertedTotal(
        base_currency=normalized_base,
        total_minor=total,
        unconverted_currencies=unconverted,
    )


def _recency_key(transfer: TransferRecord) -> Tuple[datetime, int]:
    return (transfer.effective_at or datetime.min, transfer.id or 0)
