"""
cache/store.py -- In-process TTL cache for admin-editable system settings.

Session lifetime and idle timeout are consulted on every login and every
session resolution. Reading the single settings row each time is wasteful,
so the value is cached for a configurable TTL (default 5 minutes).

One SettingsCache is created in the application lifespan and handed to the
components that need it; nothing reads a module-level cache. The clock is
injectable so tests can advance time without sleeping.

Usage:
    cache = SettingsCache(store.get_system_settings, ttl=300)
    timeout = cache.get()["session_timeout_minutes"]
    store.update_system_settings(idle_timeout_minutes=10)
    cache.invalidate()                  # next get() reloads
"""

import threading
import time
from collections.abc import Callable
from typing import Optional

_DEFAULT_TTL = 300  # 5 minutes in seconds


class SettingsCache:
    def __init__(
        self,
        loader: Callable[[], dict],
        ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._loader = loader
        self._clock = clock
        self._value: Optional[dict] = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> dict:
        """Return cached settings, reloading when the entry is older than the TTL."""
        with self._lock:
            if self._value is None or self._clock() - self._loaded_at >= self.ttl:
                self._value = self._loader()
                self._loaded_at = self._clock()
            return dict(self._value)

    def invalidate(self) -> None:
        """Drop the cached value so the next get() reads through to the loader."""
        with self._lock:
            self._value = None
