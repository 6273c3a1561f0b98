"""Tests for cross-instance cache invalidation."""

import asyncio
import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.core.cache import RegistryCaches
from src.core.config import Settings
from src.services import cache_invalidation
from src.services.cache_invalidation import CacheInvalidationBus, CacheKind
from tests.factories import make_experiment, make_flag


@pytest.fixture
def redis_client() -> MagicMock:
    client = MagicMock()
    client.publish = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def bus(caches: RegistryCaches, redis_client: MagicMock) -> CacheInvalidationBus:
    return CacheInvalidationBus(caches, redis_client, channel="test:invalidate")


def _message(kind: str, key: str, origin: str = "other-instance") -> str:
    return json.dumps({"kind": kind, "key": key, "origin": origin})


class TestPublish:
    """Tests for broadcasting writes."""

    async def test_publishes_json_payload(
        self, bus: CacheInvalidationBus, redis_client: MagicMock
    ) -> None:
        await bus.publish(CacheKind.FLAG, "new_checkout")

        channel, payload = redis_client.publish.call_args[0]
        assert channel == "test:invalidate"
        assert json.loads(payload) == {
            "kind": "flag",
            "key": "new_checkout",
            "origin": bus.instance_id,
        }

    async def test_redis_failure_is_swallowed(
        self, bus: CacheInvalidationBus, redis_client: MagicMock
    ) -> None:
        redis_client.publish.side_effect = ConnectionError("redis down")

        await bus.publish(CacheKind.EXPERIMENT, str(uuid.uuid4()))


class TestApplyMessage:
    """Tests for applying writes made elsewhere."""

    def test_invalidates_experiment(
        self, bus: CacheInvalidationBus, caches: RegistryCaches
    ) -> None:
        experiment = make_experiment()
        caches.experiments.set(experiment.id, experiment)

        bus.apply_message(_message("experiment", str(experiment.id)))

        assert caches.experiments.get(experiment.id) is None

    def test_invalidates_flag_and_evaluations(
        self, bus: CacheInvalidationBus, caches: RegistryCaches
    ) -> None:
        caches.flags.set("new_checkout", make_flag())
        caches.evaluations.put("user_42_sess-1", "new_checkout", object())

        bus.apply_message(_message("flag", "new_checkout").encode())

        assert caches.flags.get("new_checkout") is None
        assert len(caches.evaluations) == 0

    def test_ignores_own_messages(
        self, bus: CacheInvalidationBus, caches: RegistryCaches
    ) -> None:
        caches.flags.set("new_checkout", make_flag())

        bus.apply_message(_message("flag", "new_checkout", origin=bus.instance_id))

        assert caches.flags.get("new_checkout") is not None

    @pytest.mark.parametrize(
        "raw",
        ["not json", json.dumps({"kind": "bogus", "key": "x"}), json.dumps({"key": "x"}), "[]"],
    )
    def test_ignores_malformed_messages(self, bus: CacheInvalidationBus, raw: str) -> None:
        bus.apply_message(raw)

    def test_ignores_bad_experiment_id(
        self, bus: CacheInvalidationBus, caches: RegistryCaches
    ) -> None:
        experiment = make_experiment()
        caches.experiments.set(experiment.id, experiment)

        bus.apply_message(_message("experiment", "not-a-uuid"))

        assert caches.experiments.get(experiment.id) is not None


class TestListen:
    """Tests for the subscription loop."""

    @pytest.fixture
    def pubsub(self, redis_client: MagicMock) -> MagicMock:
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock()
        redis_client.pubsub.return_value = pubsub
        return pubsub

    async def test_applies_messages_until_cancelled(
        self, bus: CacheInvalidationBus, caches: RegistryCaches, pubsub: MagicMock
    ) -> None:
        caches.flags.set("new_checkout", make_flag())
        pubsub.get_message.side_effect = [
            None,
            {"type": "message", "data": _message("flag", "new_checkout").encode()},
            asyncio.CancelledError(),
        ]

        with pytest.raises(asyncio.CancelledError):
            await bus.listen()

        pubsub.subscribe.assert_awaited_once_with("test:invalidate")
        pubsub.unsubscribe.assert_awaited_once_with("test:invalidate")
        pubsub.aclose.assert_awaited_once()
        assert caches.flags.get("new_checkout") is None

    async def test_resubscribes_after_redis_error(
        self, bus: CacheInvalidationBus, caches: RegistryCaches, pubsub: MagicMock
    ) -> None:
        caches.flags.set("new_checkout", make_flag())
        pubsub.unsubscribe.side_effect = [RedisConnectionError("connection reset"), None]
        pubsub.get_message.side_effect = [
            RedisConnectionError("connection reset"),
            {"type": "message", "data": _message("flag", "new_checkout").encode()},
            asyncio.CancelledError(),
        ]

        with pytest.raises(asyncio.CancelledError):
            await bus.listen(retry_delay=0)

        assert pubsub.subscribe.await_count == 2
        assert pubsub.aclose.await_count == 2
        assert caches.flags.get("new_checkout") is None


class TestModuleBus:
    """Tests for the process-wide bus."""

    async def test_no_bus_without_redis(self, caches: RegistryCaches) -> None:
        settings = Settings(_env_file=None, database_url="postgresql+asyncpg://u:p@h:5432/d")

        assert cache_invalidation.init_invalidation_bus(settings, caches) is None
        assert cache_invalidation.get_invalidation_bus() is None

    async def test_bus_with_redis(self, caches: RegistryCaches) -> None:
        settings = Settings(
            _env_file=None,
            database_url="postgresql+asyncpg://u:p@h:5432/d",
            redis_url="redis://localhost:6379/0",
        )

        bus = cache_invalidation.init_invalidation_bus(settings, caches)

        assert bus is not None
        assert cache_invalidation.get_invalidation_bus() is bus
        assert bus.channel == settings.cache_invalidation_channel

        await cache_invalidation.close_invalidation_bus()
        assert cache_invalidation.get_invalidation_bus() is None
