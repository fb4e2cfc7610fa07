"""Per-identifier credential attempt limiting with timed lockout."""

import hmac
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from utils.schemas import MAX_CREDENTIAL_LENGTH

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRecord:
    count: int = 0
    window_started_at: float = 0.0
    locked_until: float = 0.0
    last_attempt_at: float = 0.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0


class RateLimiter:
    """Fixed attempt window per identifier.

    Reaching `max_attempts` failures inside the window locks the identifier
    for `lockout_ms`. Records idle for longer than `record_expiry_ms` are
    dropped by `sweep()`.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_ms: int = 300_000,
        lockout_ms: int = 300_000,
        record_expiry_ms: int = 86_400_000,
        time_func: Optional[Callable[[], float]] = None,
    ):
        self.max_attempts = max(1, max_attempts)
        self._window = window_ms / 1000
        self._lockout = lockout_ms / 1000
        self._expiry = record_expiry_ms / 1000
        self._time_func = time_func or time.time
        self._records: dict[str, RateLimitRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, identifier: str) -> Optional[RateLimitRecord]:
        return self._records.get(identifier)

    def check(self, identifier: str) -> RateLimitDecision:
        """Whether another attempt is allowed right now."""
        now = self._time_func()
        record = self._records.get(identifier)
        if record is None:
            return RateLimitDecision(True)

        if record.locked_until:
            if record.locked_until > now:
                return RateLimitDecision(False, self._retry_after_ms(record, now))
            # Lockout served
            del self._records[identifier]
            return RateLimitDecision(True)

        if now - record.window_started_at >= self._window:
            del self._records[identifier]
            return RateLimitDecision(True)

        if record.count >= self.max_attempts:
            self._lock(identifier, record, now)
            return RateLimitDecision(False, self._retry_after_ms(record, now))

        return RateLimitDecision(True)

    def record_failure(self, identifier: str) -> RateLimitDecision:
        """Count a failed attempt; returns the resulting decision."""
        now = self._time_func()
        record = self._records.get(identifier)
        if record is None or (not record.locked_until and now - record.window_started_at >= self._window):
            record = RateLimitRecord(window_started_at=now)
            self._records[identifier] = record

        record.last_attempt_at = now
        if record.locked_until > now:
            return RateLimitDecision(False, self._retry_after_ms(record, now))

        record.count += 1
        if record.count >= self.max_attempts:
            self._lock(identifier, record, now)
            return RateLimitDecision(False, self._retry_after_ms(record, now))
        return RateLimitDecision(True)

    def clear(self, identifier: str) -> None:
        self._records.pop(identifier, None)

    def sweep(self) -> int:
        """Drop records older than the absolute expiry that are not locked.

        Returns:
            Number of records removed
        """
        now = self._time_func()
        stale = [
            identifier
            for identifier, record in self._records.items()
            if now - record.last_attempt_at > self._expiry and record.locked_until <= now
        ]
        for identifier in stale:
            del self._records[identifier]
        if stale:
            logger.debug("Swept %d rate limit records", len(stale))
        return len(stale)

    def _lock(self, identifier: str, record: RateLimitRecord, now: float) -> None:
        record.locked_until = now + self._lockout
        logger.warning(
            "Too many failed attempts, locked",
            extra={"identifier": identifier, "lockout_seconds": self._lockout},
        )

    @staticmethod
    def _retry_after_ms(record: RateLimitRecord, now: float) -> int:
        return max(0, int(round((record.locked_until - now) * 1000)))


def constant_time_equals(supplied: str, expected: str, max_length: int = MAX_CREDENTIAL_LENGTH) -> bool:
    """Compare two secrets in time independent of where they differ.

    Both values are capped at `max_length` characters and padded to the same
    fixed width before comparison.
    """
    a = str(supplied or "")[:max_length].encode("utf-8")
    b = str(expected or "")[:max_length].encode("utf-8")
    width = max_length * 4
    same = hmac.compare_digest(a.ljust(width, b"\0"), b.ljust(width, b"\0"))
    return same and len(a) == len(b)
