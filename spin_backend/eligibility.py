# eligibility.py
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import FailureReason
from .ledger_store import LedgerRow, get_entry


class SpinPath(str, Enum):
    FREE = "FREE"
    CREDIT = "CREDIT"


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    path: Optional[SpinPath]
    remaining_seconds: int
    spin_credits: int = 0

    @property
    def denial_reason(self) -> Optional[FailureReason]:
        if self.allowed:
            return None
        return FailureReason.INSUFFICIENT_COOLDOWN


def evaluate(entry: Optional[LedgerRow], now: int, cooldown_sec: int) -> Eligibility:
    """
    Free spin once the cooldown has elapsed, otherwise a purchased credit, otherwise denied.

    remaining_seconds is the time left on the free-spin cooldown (0 when it has elapsed);
    it is reported on the CREDIT path as well so clients can show both options.
    """
    if entry is None or entry.last_spin_at is None:
        credits = entry.spin_credits if entry else 0
        return Eligibility(allowed=True, path=SpinPath.FREE, remaining_seconds=0, spin_credits=credits)

    # clock skew can put last_spin_at in the future; count that as no time elapsed
    elapsed = max(0, int(now) - int(entry.last_spin_at))
    if elapsed >= cooldown_sec:
        return Eligibility(allowed=True, path=SpinPath.FREE, remaining_seconds=0, spin_credits=entry.spin_credits)

    remaining = cooldown_sec - elapsed
    if entry.spin_credits > 0:
        return Eligibility(allowed=True, path=SpinPath.CREDIT, remaining_seconds=remaining, spin_credits=entry.spin_credits)
    return Eligibility(allowed=False, path=None, remaining_seconds=remaining, spin_credits=0)


def check_eligibility(con: sqlite3.Connection, wallet: str, now: int, cooldown_sec: int) -> Eligibility:
    return evaluate(get_entry(con, wallet), now, cooldown_sec)
