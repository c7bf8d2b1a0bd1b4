"""
Process-wide cache of ServiceM8 badge lists.

Entries are keyed by a SHA-256 digest of the API key so raw credentials are
never held as dictionary keys or written to logs. Concurrent refreshes are
last-writer-wins.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

DEFAULT_TTL = 3600.0


def credential_fingerprint(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    badges: List[Dict[str, Any]]
    expires_at: float


class BadgeCache:
    """Thread-safe TTL cache of badge lists, one entry per credential."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._observed: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, credential: str) -> Optional[List[Dict[str, Any]]]:
        """Return a copy of the cached badges, or None when absent or expired."""
        key = credential_fingerprint(credential)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return list(entry.badges)

    def set(self, credential: str, badges: List[Dict[str, Any]], ttl: Optional[float] = None) -> None:
        ttl = self.ttl if ttl is None else ttl
        key = credential_fingerprint(credential)
        with self._lock:
            self._entries[key] = CacheEntry(list(badges), self._clock() + ttl)
        logging.debug("Cached %d badges for key %s... (ttl %.0fs)", len(badges), key[:8], ttl)

    def invalidate(self, credential: str) -> bool:
        with self._lock:
            return self._entries.pop(credential_fingerprint(credential), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._observed.clear()

    def observe_credential(self, scope: str, credential: str) -> bool:
        """
        Record the credential in use for a scope.

        When the scope's credential changed since the last call, the entry
        cached under the previous credential is dropped. Returns True in that
        case.
        """
        key = credential_fingerprint(credential)
        with self._lock:
            previous = self._observed.get(scope)
            self._observed[scope] = key
            if previous is None or previous == key:
                return False
            self._entries.pop(previous, None)
        logging.info("API key changed for %s; cleared cached badges for key %s...", scope, previous[:8])
        return True

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.expires_at > now)


BADGE_CACHE = BadgeCache()
