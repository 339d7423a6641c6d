from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    name: str
    symbol: str
    is_default: bool = False


DEFAULT_CURRENCIES: tuple[CurrencyInfo, ...] = (
    CurrencyInfo("USD", "US Dollar", "$", True),
    CurrencyInfo("EUR", "Euro", "€", True),
    CurrencyInfo("GBP", "British Pound", "£", True),
    CurrencyInfo("JPY", "Japanese Yen", "¥", True),
    CurrencyInfo("CAD", "Canadian Dollar", "C$", True),
    CurrencyInfo("AUD", "Australian Dollar", "A$", True),
    CurrencyInfo("CHF", "Swiss Franc", "CHF", True),
    CurrencyInfo("CNY", "Chinese Yuan", "¥", True),
)
DEFAULT_CURRENCY_CODES = frozenset(currency.code for currency in DEFAULT_CURRENCIES)


@dataclass(frozen=True)
class UserPreferences:
    user_id: int
    base_currency: str
    hidden_currencies: FrozenSet[str] = field(default_factory=frozenset)


def parse_hidden_currencies(raw: str | None) -> FrozenSet[str]:
    """Decode the stored hidden-currency list.

    Anything that is not a JSON list is treated as "nothing hidden"; non-string
    entries are dropped.
    """
    if not raw:
        return frozenset()
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring unreadable hidden currency preference: %r", raw)
        return frozenset()
    if not isinstance(decoded, list):
        logger.warning("Ignoring hidden currency preference that is not a list: %r", raw)
        return frozenset()
    return frozenset(
        code.strip().upper() for code in decoded if isinstance(code, str) and code.strip()
    )


def dump_hidden_currencies(codes: Iterable[str]) -> str:
    return json.dumps(sorted({code.upper() for code in codes}))


def visible_currencies(
    custom_currencies: Iterable[CurrencyInfo],
    hidden_currencies: Iterable[str] = (),
) -> List[CurrencyInfo]:
    """Defaults not hidden or overridden, followed by custom currencies by code."""
    custom = sorted(custom_currencies, key=lambda currency: currency.code)
    custom_codes = {currency.code for currency in custom}
    hidden = {code.upper() for code in hidden_currencies}
    defaults = [
        currency
        for currency in DEFAULT_CURRENCIES
        if currency.code not in custom_codes and currency.code not in hidden
    ]
    return defaults + custom
