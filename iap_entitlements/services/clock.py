"""Clocks used to decide whether an entitlement is still valid.

Responsibilities:
- Provide the current time in Unix milliseconds
- Allow tests and local tooling to pin and fast-forward time
"""

import threading
import time
from typing import Optional

from iap_entitlements.logging_config import get_logger

logger = get_logger(__name__)

MILLIS_PER_MINUTE = 60 * 1000
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR


class Clock:
    """Wall clock."""

    def now_millis(self) -> int:
        """Current time as a Unix timestamp in milliseconds."""
        return int(time.time() * 1000)


class VirtualClock(Clock):
    """Clock that can be pinned and fast-forwarded.

    Args:
        start_millis: initial virtual time; defaults to the wall clock
    """

    def __init__(self, start_millis: Optional[int] = None) -> None:
        self._lock = threading.RLock()
        self._virtual_time_millis = start_millis if start_millis is not None else int(time.time() * 1000)

    def now_millis(self) -> int:
        with self._lock:
            return self._virtual_time_millis

    def advance(self, days: int = 0, hours: int = 0, minutes: int = 0) -> int:
        """Advance virtual time.

        Returns:
            The new virtual time in milliseconds

        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        delta = days * MILLIS_PER_DAY + hours * MILLIS_PER_HOUR + minutes * MILLIS_PER_MINUTE
        with self._lock:
            old_time = self._virtual_time_millis
            self._virtual_time_millis += delta
            logger.debug(
                "virtual_time_advanced",
                old_time_millis=old_time,
                new_time_millis=self._virtual_time_millis,
            )
            return self._virtual_time_millis

    def set_time(self, timestamp_millis: int) -> None:
        """Pin virtual time to a timestamp (no backwards jumps).

        Raises:
            ValueError: If timestamp is before the current virtual time
        """
        with self._lock:
            if timestamp_millis < self._virtual_time_millis:
                raise ValueError(
                    f"cannot set time backwards, current: {self._virtual_time_millis}, "
                    f"requested: {timestamp_millis}"
                )
            self._virtual_time_millis = timestamp_millis
