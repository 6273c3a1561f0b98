"""Cross-instance registry cache invalidation over Redis pub/sub."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from enum import StrEnum

from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.core.cache import RegistryCaches
from src.core.config import Settings

logger = logging.getLogger(__name__)


class CacheKind(StrEnum):
    """Which registry cache a message targets."""

    EXPERIMENT = "experiment"
    FLAG = "flag"


class CacheInvalidationBus:
    """Broadcasts registry writes and applies writes made by other instances.

    Publishing is best effort: a Redis outage degrades other instances to
    TTL expiry and never fails the write that triggered it.
    """

    def __init__(
        self,
        caches: RegistryCaches,
        redis_client: Redis,
        channel: str = "experimentation:invalidate",
    ) -> None:
        self._caches = caches
        self._redis = redis_client
        self.channel = channel
        self.instance_id = uuid.uuid4().hex

    async def publish(self, kind: CacheKind, key: str) -> None:
        message = json.dumps({"kind": str(kind), "key": key, "origin": self.instance_id})
        try:
            await self._redis.publish(self.channel, message)
        except Exception:
            logger.warning(
                "Failed to broadcast cache invalidation",
                exc_info=True,
                extra={"kind": str(kind), "key": key},
            )

    def apply_message(self, raw: bytes | str) -> None:
        """Invalidate the local entry named by a pub/sub payload."""
        try:
            payload = json.loads(raw)
            kind = CacheKind(payload["kind"])
            key = payload["key"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed invalidation message: %r", raw)
            return

        if payload.get("origin") == self.instance_id:
            return

        if kind is CacheKind.EXPERIMENT:
            try:
                self._caches.experiments.invalidate(uuid.UUID(key))
            except ValueError:
                logger.warning("Ignoring invalidation for bad experiment id %r", key)
        else:
            self._caches.flags.invalidate(key)
        logger.debug("Applied remote invalidation", extra={"kind": str(kind), "key": key})

    async def listen(self, retry_delay: float = 1.0) -> None:
        """Apply invalidations until cancelled.

        A Redis failure drops the subscription; the loop backs off for
        ``retry_delay`` seconds and subscribes again. Writes missed meanwhile
        expire with the cache TTL.
        """
        while True:
            pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info("Listening for cache invalidations", extra={"channel": self.channel})
                while True:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                    if message is not None and message.get("type") == "message":
                        self.apply_message(message["data"])
            except (RedisError, OSError):
                logger.warning(
                    "Cache invalidation subscription failed, retrying in %.1fs",
                    retry_delay,
                    exc_info=True,
                    extra={"channel": self.channel},
                )
            finally:
                with contextlib.suppress(RedisError, OSError):
                    await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
            await asyncio.sleep(retry_delay)

    async def close(self) -> None:
        await self._redis.aclose()


_bus: CacheInvalidationBus | None = None


def init_invalidation_bus(
    settings: Settings, caches: RegistryCaches
) -> CacheInvalidationBus | None:
    """Create the process-wide bus when Redis is configured."""
    global _bus
    if settings.redis_url is None:
        _bus = None
        return None
    _bus = CacheInvalidationBus(
        caches,
        Redis.from_url(str(settings.redis_url)),
        channel=settings.cache_invalidation_channel,
    )
    return _bus


def get_invalidation_bus() -> CacheInvalidationBus | None:
    return _bus


async def close_invalidation_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None
