"""
Lock screen authentication

Credentials are validated (length-capped), checked against the rate limiter
and compared in constant time, either to a plain secret or to a PBKDF2-SHA512
"salt:hash" string. Denials, including lockouts, are returned as AuthResult
values; nothing here raises for a wrong password.
"""

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError

from utils.atomic import JsonStateFile
from utils.events import EventSink
from utils.rate_limiter import RateLimiter, constant_time_equals
from utils.schemas import Credentials

PBKDF2_ITERATIONS = 100_000
PBKDF2_KEY_LENGTH = 64


def hash_secret(secret: str, salt: Optional[str] = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    """PBKDF2-SHA512 hash in "salt:hash" hex form."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha512", secret.encode("utf-8"), salt.encode("utf-8"), iterations, PBKDF2_KEY_LENGTH)
    return f"{salt}:{digest.hex()}"


def verify_secret(secret: str, stored: str, iterations: int = PBKDF2_ITERATIONS) -> bool:
    salt, _, expected = (stored or "").partition(":")
    if not salt or not expected:
        return False
    candidate = hash_secret(secret, salt, iterations).partition(":")[2]
    return constant_time_equals(candidate, expected)


@dataclass(frozen=True)
class AuthResult:
    valid: bool
    reason: str = ""
    retry_after_ms: int = 0

    @property
    def locked_out(self) -> bool:
        return self.retry_after_ms > 0


class Authenticator:
    def __init__(
        self,
        expected_user: str,
        limiter: RateLimiter,
        expected_secret: str = "",
        secret_hash: str = "",
        state_file: Optional[JsonStateFile] = None,
        persist_ttl_ms: int = 0,
        sink: Optional[EventSink] = None,
        time_func: Optional[Callable[[], float]] = None,
    ) -> None:
        self.expected_user = expected_user
        self.expected_secret = expected_secret
        self.secret_hash = secret_hash
        self.limiter = limiter
        self.state_file = state_file
        self.persist_ttl = persist_ttl_ms / 1000
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._time = time_func or time.time

    @property
    def configured(self) -> bool:
        return bool(self.expected_user and (self.expected_secret or self.secret_hash))

    async def authenticate(self, user: object, secret: object, identifier: str = "default") -> AuthResult:
        try:
            creds = Credentials(user=user, secret=secret)
        except ValidationError:
            decision = self.limiter.record_failure(identifier)
            return AuthResult(False, "Invalid input", decision.retry_after_ms)

        decision = self.limiter.check(identifier)
        if not decision.allowed:
            seconds = -(-decision.retry_after_ms // 1000)
            return AuthResult(False, f"Too many attempts. Locked for {seconds}s", decision.retry_after_ms)

        if not self.configured:
            self.sink.error("Lock credentials are not configured")
            return AuthResult(False, "Lock not configured")

        user_ok = constant_time_equals(creds.user, self.expected_user)
        if self.secret_hash:
            secret_ok = verify_secret(creds.secret, self.secret_hash)
        else:
            secret_ok = constant_time_equals(creds.secret, self.expected_secret)

        if user_ok and secret_ok:
            self.limiter.clear(identifier)
            await self._save_unlock()
            self.sink.info("Unlocked", identifier=identifier)
            return AuthResult(True)

        decision = self.limiter.record_failure(identifier)
        self.sink.warning("Failed unlock attempt", identifier=identifier, locked=not decision.allowed)
        return AuthResult(False, "Invalid credentials", decision.retry_after_ms)

    async def is_unlocked(self) -> bool:
        """Persisted unlock state; a TTL of 0 never expires."""
        if self.state_file is None:
            return False
        data = await self.state_file.load({})
        if not isinstance(data, dict) or not data.get("unlocked"):
            return False
        if self.persist_ttl and self._time() - float(data.get("at") or 0) > self.persist_ttl:
            await self.state_file.remove()
            return False
        return True

    async def lock(self) -> None:
        if self.state_file is not None:
            await self.state_file.remove()

    async def _save_unlock(self) -> None:
        if self.state_file is not None:
            await self.state_file.save({"unlocked": True, "at": self._time()})
