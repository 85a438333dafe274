"""
Message Broker

The dispatcher delivers envelopes through any object with an async
``publish(envelope)``. RedisStreamBroker appends each envelope to a
Redis stream named after the aggregate type.
"""

import logging
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..errors import PublishFailure
from ..observability import trace_headers
from .models import EventEnvelope

logger = logging.getLogger(__name__)


class Broker(Protocol):
    """Anything that can deliver an envelope or raise PublishFailure."""

    async def publish(self, envelope: EventEnvelope) -> None:
        ...


class RedisStreamBroker:
    """
    Publishes envelopes with XADD.

    Usage:
        broker = RedisStreamBroker.from_url("redis://localhost:6379/0")
        await broker.publish(envelope)   # -> stream "stockkeeper.stock_reservation"
        await broker.close()
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        stream_prefix: str = "stockkeeper",
        max_stream_length: Optional[int] = 100_000
    ):
        self._redis = redis
        self.stream_prefix = stream_prefix
        self.max_stream_length = max_stream_length

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStreamBroker":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    def stream_for(self, envelope: EventEnvelope) -> str:
        return f"{self.stream_prefix}.{envelope.aggregate_type}"

    async def publish(self, envelope: EventEnvelope) -> None:
        """
        Append the envelope to its stream.

        Raises:
            PublishFailure: Redis rejected the write or was unreachable
            SerializationError: The envelope payload cannot be encoded
        """
        stream = self.stream_for(envelope)
        fields = envelope.to_message()
        fields.update(trace_headers())
        try:
            message_id = await self._redis.xadd(
                stream,
                fields,
                maxlen=self.max_stream_length,
                approximate=True
            )
        except (RedisError, OSError) as e:
            raise PublishFailure(f"XADD to {stream} failed: {e}") from e

        logger.debug(f"Published event {envelope.event_id} to {stream} as {message_id}")

    async def close(self):
        await self._redis.aclose()
