"""
Per-user spending limits.

Daily totals are kept in process memory keyed by DID and reset at UTC midnight. They
do not survive a restart and are not shared between instances.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
import threading
from typing import Callable, Dict, Optional


class AmountError(ValueError):
    pass


def parse_amount(value) -> Decimal:
    """Parse a non-negative, finite decimal amount. Raises AmountError otherwise."""
    if value is None:
        value = "0"
    try:
        amount = Decimal(str(value).strip() or "0")
    except InvalidOperation as e:
        raise AmountError("Invalid amount") from e
    if not amount.is_finite() or amount < 0:
        raise AmountError("Invalid amount")
    return amount


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class DailyTotal:
    day: date
    total: Decimal


class DailySpendTracker:
    def __init__(self, today: Optional[Callable[[], date]] = None) -> None:
        self._totals: Dict[str, DailyTotal] = {}
        self._lock = threading.Lock()
        self._today = today or _utc_today

    def daily_total(self, did: str) -> Decimal:
        with self._lock:
            entry = self._totals.get(did)
            if entry is None or entry.day != self._today():
                return Decimal(0)
            return entry.total

    def reserve(self, did: str, amount: Decimal, max_daily: Decimal) -> bool:
        """
        Add ``amount`` to today's total if it stays within ``max_daily``.

        The check and the update happen together, so concurrent sends cannot both slip
        under the limit. A reservation for a transaction that then fails must be given
        back with ``release``.
        """
        today = self._today()
        with self._lock:
            entry = self._totals.get(did)
            if entry is None or entry.day != today:
                entry = DailyTotal(day=today, total=Decimal(0))
            if entry.total + amount > max_daily:
                return False
            entry.total += amount
            self._totals[did] = entry
            return True

    def release(self, did: str, amount: Decimal) -> None:
        with self._lock:
            entry = self._totals.get(did)
            if entry is None or entry.day != self._today():
                return
            entry.total = max(Decimal(0), entry.total - amount)
