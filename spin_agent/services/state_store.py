"""Thin async wrapper over Redis exposing the atomic primitives the engine relies on.

Every key is namespaced under ``key_prefix``. Any Redis failure surfaces as
``StoreUnavailableError`` so callers can refuse to proceed instead of
silently skipping deduplication or locking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Mapping, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from spin_agent.logging_config import get_logger
from spin_agent.services.errors import StoreUnavailableError

logger = get_logger("state_store")


@dataclass(frozen=True)
class SessionKeys:
    session_id: str

    def _key(self, name: str) -> str:
        return f"sess:{self.session_id}:{name}"

    @property
    def lock(self) -> str:
        return self._key("lock")

    @property
    def batch_until(self) -> str:
        return self._key("batch_until")

    @property
    def pending_msgs(self) -> str:
        return self._key("pending_msgs")

    @property
    def stage(self) -> str:
        return self._key("stage")

    @property
    def asked(self) -> str:
        return self._key("asked")

    @property
    def answered(self) -> str:
        return self._key("answered")

    @property
    def facts(self) -> str:
        return self._key("facts")

    @property
    def last_user_ts(self) -> str:
        return self._key("last_user_ts")

    @property
    def score(self) -> str:
        return self._key("score")

    @property
    def summary(self) -> str:
        return self._key("summary")

    @property
    def stage_changed_at(self) -> str:
        return self._key("stage_changed_at")

    def all(self) -> list[str]:
        return [
            self.lock,
            self.batch_until,
            self.pending_msgs,
            self.stage,
            self.asked,
            self.answered,
            self.facts,
            self.last_user_ts,
            self.score,
            self.summary,
            self.stage_changed_at,
        ]


def dedupe_key(provider_message_id: str) -> str:
    return f"dedupe:{provider_message_id}"


class StateStore:
    def __init__(self, redis_client: Any, key_prefix: str = "spin"):
        self._redis = redis_client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(
        cls,
        url: str,
        socket_timeout_seconds: float = 0.5,
        key_prefix: str = "spin",
    ) -> "StateStore":
        client = redis_async.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
        )
        return cls(client, key_prefix=key_prefix)

    def _k(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def _run(self, operation: str, awaitable: Awaitable) -> Any:
        try:
            return await awaitable
        except (RedisError, OSError) as exc:
            logger.warning(
                "State store operation failed",
                extra={"context": {"operation": operation, "error": str(exc)}},
            )
            raise StoreUnavailableError(f"state store {operation} failed: {exc}") from exc

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Atomic SET NX PX. True when this call created the key."""
        result = await self._run("set_if_absent", self._redis.set(self._k(key), value, px=ttl_ms, nx=True))
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self._redis.get(self._k(key)))

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        await self._run("set", self._redis.set(self._k(key), value, px=ttl_ms))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run("delete", self._redis.delete(*[self._k(key) for key in keys]))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        # Not atomic: a value replaced between GET and DEL is deleted anyway.
        current = await self.get(key)
        if current != value:
            return False
        await self.delete(key)
        return True

    async def push(self, key: str, *values: str) -> int:
        return await self._run("push", self._redis.rpush(self._k(key), *values))

    async def push_front(self, key: str, *values: str) -> int:
        """Prepend ``values`` keeping their relative order at the head."""
        return await self._run("push_front", self._redis.lpush(self._k(key), *reversed(values)))

    async def drain(self, key: str) -> list[str]:
        """Read and delete a list in one MULTI/EXEC transaction."""

        async def _drain() -> list[str]:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrange(self._k(key), 0, -1)
                pipe.delete(self._k(key))
                values, _ = await pipe.execute()
            return list(values or [])

        return await self._run("drain", _drain())

    async def length(self, key: str) -> int:
        return await self._run("length", self._redis.llen(self._k(key)))

    async def add_to_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._run("add_to_set", self._redis.sadd(self._k(key), *members))

    async def members(self, key: str) -> set[str]:
        return set(await self._run("members", self._redis.smembers(self._k(key))))

    async def hash_set(self, key: str, mapping: Mapping[str, str]) -> None:
        if not mapping:
            return
        await self._run("hash_set", self._redis.hset(self._k(key), mapping=dict(mapping)))

    async def hash_get_all(self, key: str) -> dict[str, str]:
        return dict(await self._run("hash_get_all", self._redis.hgetall(self._k(key))))

    async def exists(self, *keys: str) -> int:
        return await self._run("exists", self._redis.exists(*[self._k(key) for key in keys]))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as exc:
            logger.warning("State store ping failed", extra={"context": {"error": str(exc)}})
            return False

    async def close(self) -> None:
        await self._redis.aclose()
