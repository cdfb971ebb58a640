"""
auth/csrf.py -- Double-submit CSRF token store.

One active token per principal key (the authenticated principal id, or the
client IP before login). Re-issuing overwrites; tokens never accumulate.
A token is valid for TOKEN_TTL_SECONDS after issuance. Successful validation
does not rotate the token, so several tabs sharing a key keep working until
the next explicit issue (page reload).

Thread safety: one lock around the dict. issue() and validate() are the
read-modify-write operations; sweep() takes the same lock.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import threading

from auth.models import CSRFTokenRecord
from core.clock import Clock, SystemClock

logger = logging.getLogger("certguard.csrf")

TOKEN_TTL_SECONDS = 60 * 60

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def requires_csrf(method: str) -> bool:
    """Only state-changing methods are checked."""
    return method.upper() not in SAFE_METHODS


class CSRFTokenStore:
    def __init__(self, clock: Clock | None = None, ttl_seconds: int = TOKEN_TTL_SECONDS) -> None:
        self._clock = clock or SystemClock()
        self._ttl = ttl_seconds
        self._tokens: dict[str, CSRFTokenRecord] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def issue(self, principal_key: str) -> str:
        """Generate a 32-byte hex token for principal_key, replacing any existing one."""
        token = secrets.token_hex(32)
        record = CSRFTokenRecord(principal_key=principal_key, token=token, created_at=self._clock.now())
        with self._lock:
            self._tokens[principal_key] = record
        return token

    def validate(self, principal_key: str, presented: str | None) -> bool:
        """Return True iff presented equals the live token for principal_key.

        An expired record is deleted as a side effect.
        """
        if not presented:
            return False
        with self._lock:
            record = self._tokens.get(principal_key)
            if record is None:
                return False
            if self._expired(record):
                del self._tokens[principal_key]
                return False
            stored = record.token
        return hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))

    def revoke(self, principal_key: str) -> None:
        with self._lock:
            self._tokens.pop(principal_key, None)

    def sweep(self) -> int:
        """Drop every expired token. Returns the number removed."""
        with self._lock:
            stale = [key for key, record in self._tokens.items() if self._expired(record)]
            for key in stale:
                del self._tokens[key]
        if stale:
            logger.info("Cleaned up %d expired CSRF tokens", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def _expired(self, record: CSRFTokenRecord) -> bool:
        return (self._clock.now() - record.created_at).total_seconds() > self._ttl
