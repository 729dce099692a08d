"""
Filing Reminders -- UK Bank Holiday Source

Fetches the England and Wales bank holidays from the GOV.UK JSON feed and
keeps them in memory for a configurable TTL (7 days by default).  Every
successful fetch is also written to the store's ``bank_holidays`` table.

When a fetch fails the cache degrades in order:
    1. the in-memory set, even if expired
    2. the set last persisted to the store
    3. an empty set (send dates then only skip weekends)

Callers never see an exception from this module.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import requests

from .config import BankHolidayConfig
from .models import StoreError

if TYPE_CHECKING:
    from .store import ReminderStore

logger = logging.getLogger(__name__)


class BankHolidayFetchError(Exception):
    """The GOV.UK feed could not be fetched or parsed."""


def parse_bank_holidays(payload: dict[str, Any], division: str) -> set[date]:
    """Extract the event dates of one division from the GOV.UK payload.

    Raises:
        BankHolidayFetchError: The division or its events are missing.
    """
    try:
        events = payload[division]["events"]
        return {date.fromisoformat(event["date"]) for event in events}
    except (KeyError, TypeError, ValueError) as exc:
        raise BankHolidayFetchError(
            f"Unexpected bank holiday payload for division {division!r}: {exc}"
        ) from exc


class BankHolidayCache:
    """In-process bank holiday set with TTL and layered fallbacks.

    Args:
        config: Feed URL, division, TTL and request timeout.
        store: Optional persistent store used to save and reload holidays.
        session: Object with a ``get`` method (``requests`` or a Session).
    """

    def __init__(
        self,
        config: Optional[BankHolidayConfig] = None,
        store: Optional["ReminderStore"] = None,
        session: Any = None,
    ):
        self.config = config or BankHolidayConfig()
        self.store = store
        self._http = session or requests
        self._holidays: Optional[frozenset[date]] = None
        self._fetched_at: Optional[datetime] = None

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.config.cache_ttl_days)

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        if self._holidays is None or self._fetched_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - self._fetched_at < self.ttl

    def fetch(self) -> set[date]:
        """Download and parse the feed.

        Raises:
            BankHolidayFetchError: On any HTTP or payload error.
        """
        try:
            response = self._http.get(
                self.config.url, timeout=self.config.request_timeout_seconds
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise BankHolidayFetchError(f"GOV.UK bank holiday request failed: {exc}") from exc
        return parse_bank_holidays(payload, self.config.division)

    def get_holidays(self, now: Optional[datetime] = None) -> frozenset[date]:
        """Return the current holiday set, refreshing it when the TTL has lapsed."""
        now = now or datetime.now(timezone.utc)
        if self.is_fresh(now):
            return self._holidays

        try:
            holidays = frozenset(self.fetch())
        except BankHolidayFetchError as exc:
            logger.warning("Bank holiday fetch failed: %s", exc)
            return self._fallback()

        self._holidays = holidays
        self._fetched_at = now
        logger.info("Loaded %d bank holidays (%s)", len(holidays), self.config.division)

        if self.store is not None:
            try:
                self.store.save_bank_holidays(holidays, division=self.config.division)
            except StoreError as exc:
                logger.warning("Could not persist bank holidays: %s", exc)
        return holidays

    def _fallback(self) -> frozenset[date]:
        if self._holidays is not None:
            logger.warning("Using expired bank holiday cache (%d dates)", len(self._holidays))
            return self._holidays

        if self.store is not None:
            try:
                persisted = self.store.load_bank_holidays()
            except StoreError as exc:
                logger.warning("Could not load persisted bank holidays: %s", exc)
                persisted = set()
            if persisted:
                logger.warning("Using persisted bank holidays (%d dates)", len(persisted))
                return frozenset(persisted)

        logger.error("No bank holiday data available, using empty set")
        return frozenset()
