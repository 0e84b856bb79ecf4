"""Outbound side-effect dispatch.

The engine never delivers email, tasks, notifications or webhooks itself.
It builds a DispatchRequest and hands it to a SideEffectDispatcher; the
contract is "dispatch requested at least once", not "delivered".

Stream key pattern for the Redis backend: t:{tenant_id}:events:dispatch
"""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from src.stageflow.automation.schemas import DispatchRequest
from src.stageflow.core.errors import DispatchError

logger = structlog.get_logger(__name__)

DISPATCH_STREAM = "dispatch"


class SideEffectDispatcher(Protocol):
    """Anything that accepts dispatch requests.

    Implementations raise DispatchError when a request cannot be accepted.
    """

    async def dispatch(self, request: DispatchRequest) -> None: ...


class InMemoryDispatcher:
    """Records dispatch requests in memory.

    Used in development and tests; ``requests`` keeps every accepted
    request in order.
    """

    def __init__(self) -> None:
        self.requests: list[DispatchRequest] = []

    async def dispatch(self, request: DispatchRequest) -> None:
        self.requests.append(request)
        logger.debug(
            "dispatch.recorded",
            request_type=request.type.value,
            target=request.target,
            rule_id=request.rule_id,
        )

    def clear(self) -> None:
        self.requests.clear()


class RedisStreamDispatcher:
    """Appends dispatch requests to a tenant-scoped Redis stream.

    Args:
        redis: Raw async Redis client.
        maxlen: Approximate stream length cap.
    """

    def __init__(self, redis: aioredis.Redis, maxlen: int = 1000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    @staticmethod
    def stream_key(tenant_id: str) -> str:
        return f"t:{tenant_id}:events:{DISPATCH_STREAM}"

    async def dispatch(self, request: DispatchRequest) -> None:
        stream_key = self.stream_key(request.tenant_id)
        try:
            message_id = await self._redis.xadd(
                stream_key,
                request.to_stream_dict(),
                maxlen=self._maxlen,
                approximate=True,
            )
        except RedisError as exc:
            raise DispatchError(request.type.value, str(exc)) from exc

        logger.debug(
            "dispatch.published",
            stream=stream_key,
            request_type=request.type.value,
            request_id=request.id,
            message_id=message_id,
        )
