"""Document numbering for invoices, purchase orders and delivery notes.

Two strategies coexist and their output shapes are relied upon by document
lookups elsewhere, so both are kept exactly as issued so far:

* time token, ``"<PREFIX>-<epoch millis>"`` for invoices and purchase orders;
* day-keyed counter, ``"DN-YYYYMMDD-NNN"`` for delivery notes.

The time token is neither monotonic under clock adjustments nor unique within
a millisecond. The day-keyed counter is a read-modify-write on shared state;
without a lock two concurrent callers can be handed the same number.
"""

from __future__ import annotations

import re
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Tuple

from . import log
from .constants import DocumentPrefix


DELIVERY_NOTE_KEY = "lastDeliveryNoteNumber"
SEQUENCE_WIDTH = 3

_DAY_KEYED_PATTERN = re.compile(r"^(?:(?P<prefix>[A-Za-z]+)-)?(?P<day>\d{8})-(?P<sequence>\d+)$")


def _local_now() -> datetime:
    return datetime.now()


def time_token_number(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Return ``"<prefix>-<epoch millis>"`` for ``when`` (default: now)."""

    moment = when or _local_now()
    millis = int(moment.timestamp() * 1000)
    return f"{prefix}-{millis}"


def invoice_number(*, prefix: str = DocumentPrefix.INVOICE.value, when: Optional[datetime] = None) -> str:
    return time_token_number(prefix, when=when)


def purchase_order_number(*, prefix: str = DocumentPrefix.PURCHASE_ORDER.value, when: Optional[datetime] = None) -> str:
    return time_token_number(prefix, when=when)


def day_key(moment: datetime) -> str:
    return moment.strftime("%Y%m%d")


def parse_day_keyed(value: str) -> Optional[Tuple[str, int]]:
    """Split a stored number into ``(YYYYMMDD, sequence)``.

    Accepts values with or without the document prefix; returns ``None`` for
    anything else so that a corrupt counter restarts at one.
    """

    match = _DAY_KEYED_PATTERN.match(value.strip())
    if match is None:
        return None
    return match.group("day"), int(match.group("sequence"))


def format_day_keyed(prefix: str, day: str, sequence: int) -> str:
    return f"{prefix}-{day}-{sequence:0{SEQUENCE_WIDTH}d}"


class CounterStore(Protocol):
    """Persistence for the last issued day-keyed number."""

    def read_last(self, key: str) -> Optional[str]:
        ...

    def write_last(self, key: str, value: str) -> None:
        ...


class InMemoryCounterStore:
    """Process-local counter store; state is lost when the process exits."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def read_last(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def write_last(self, key: str, value: str) -> None:
        self._values[key] = value


@dataclass
class DayKeyedNumberer:
    """Issue ``PREFIX-YYYYMMDD-NNN`` numbers that restart every calendar day.

    State lives entirely in ``store`` and is read on every request, so a
    numberer can be created lazily and dropped at will. Pass ``lock`` (any
    context manager, e.g. :class:`threading.Lock`) to serialise concurrent
    callers; the default performs the read-modify-write unguarded.
    """

    store: CounterStore
    prefix: str = DocumentPrefix.DELIVERY_NOTE.value
    key: str = DELIVERY_NOTE_KEY
    clock: Callable[[], datetime] = _local_now
    lock: Optional[AbstractContextManager] = None

    def next_number(self) -> str:
        """Read the last number, advance it, persist it, and return it."""

        guard = self.lock if self.lock is not None else nullcontext()
        with guard:
            today = day_key(self.clock())
            sequence = 1
            last = self.store.read_last(self.key)
            if last:
                parsed = parse_day_keyed(last)
                if parsed is None:
                    log.warning("Ignoring unparseable stored document number '%s'", last)
                elif parsed[0] == today:
                    sequence = parsed[1] + 1
            number = format_day_keyed(self.prefix, today, sequence)
            self.store.write_last(self.key, number)
        log.info("Issued document number '%s'", number)
        return number

    def peek_last(self) -> Optional[str]:
        return self.store.read_last(self.key)
