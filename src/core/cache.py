"""Process-local caches for experiment and flag definitions.

Caches hold immutable pydantic snapshots, never ORM instances, so entries can
be shared safely between requests. They are eventually consistent across
instances: entries expire after their TTL and are dropped immediately on local
writes or on invalidation messages from other instances.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Generic, TypeVar

from src.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

InvalidationListener = Callable[[Any], None]


class TTLCache(Generic[K, V]):
    """Keyed cache with a fixed TTL and explicit invalidation hooks.

    ``replace_all`` swaps in a fully built mapping in a single assignment, so
    readers see either the old contents or the new ones, never a mix.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}
        self._refreshed_at: float | None = None
        self._listeners: list[InvalidationListener] = []

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def values(self) -> list[V]:
        """All unexpired values."""
        now = self._clock()
        return [value for value, expires_at in self._entries.values() if now < expires_at]

    def replace_all(self, items: Iterable[tuple[K, V]]) -> None:
        """Atomically replace the whole cache with ``items``."""
        now = self._clock()
        expires_at = now + self.ttl_seconds
        fresh = {key: (value, expires_at) for key, value in items}
        self._entries = fresh
        self._refreshed_at = now
        logger.debug("Cache %s refreshed with %d entries", self.name, len(fresh))

    def needs_refresh(self) -> bool:
        """True when no full refresh happened within the TTL."""
        if self._refreshed_at is None:
            return True
        return self._clock() - self._refreshed_at >= self.ttl_seconds

    def invalidate(self, key: K) -> None:
        """Drop a single entry and notify listeners with its key."""
        self._entries.pop(key, None)
        self._notify(key)

    def clear(self) -> None:
        """Drop every entry, force the next full refresh and notify with ``None``."""
        self._entries = {}
        self._refreshed_at = None
        self._notify(None)

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    def _notify(self, key: K | None) -> None:
        for listener in self._listeners:
            listener(key)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self.values())


class SessionEvaluationCache(Generic[V]):
    """Per-session memo of flag evaluations, bounded by session count.

    The oldest session is evicted first once ``max_sessions`` is exceeded.
    """

    def __init__(self, max_sessions: int = 1000) -> None:
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, dict[str, V]] = OrderedDict()

    @staticmethod
    def session_key(user_id: str, session_id: str) -> str:
        return f"{user_id}_{session_id}"

    def get(self, session_key: str, flag_key: str) -> V | None:
        flags = self._sessions.get(session_key)
        if flags is None:
            return None
        return flags.get(flag_key)

    def put(self, session_key: str, flag_key: str, result: V) -> None:
        flags = self._sessions.get(session_key)
        if flags is None:
            flags = self._sessions[session_key] = {}
        flags[flag_key] = result
        while len(self._sessions) > self.max_sessions:
            self._sessions.popitem(last=False)

    def clear(self, _key: Any = None) -> None:
        """Drop every session. Signature matches ``InvalidationListener``."""
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass
class RegistryCaches:
    """The caches one service instance owns."""

    experiments: TTLCache[Any, Any]
    flags: TTLCache[str, Any]
    evaluations: SessionEvaluationCache[Any] = field(default_factory=SessionEvaluationCache)

    def __post_init__(self) -> None:
        # Any flag or experiment change may alter any user's evaluation
        self.flags.add_invalidation_listener(self.evaluations.clear)
        self.experiments.add_invalidation_listener(self.evaluations.clear)


def build_registry_caches(
    settings: Settings,
    clock: Callable[[], float] = time.monotonic,
) -> RegistryCaches:
    return RegistryCaches(
        experiments=TTLCache(
            settings.experiment_cache_ttl_seconds, name="experiments", clock=clock
        ),
        flags=TTLCache(settings.flag_cache_ttl_seconds, name="flags", clock=clock),
        evaluations=SessionEvaluationCache(settings.user_flag_cache_max_sessions),
    )


@lru_cache
def get_registry_caches() -> RegistryCaches:
    """Caches shared by every request served by this process."""
    return build_registry_caches(get_settings())
