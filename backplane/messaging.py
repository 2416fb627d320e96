"""
Redis-based message broker for inter-agent communication.

Publishes envelopes on the message channel, keeps a copy of each envelope
for later lookup, and dispatches received envelopes to local handlers.
"""

import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from .channel import ChannelSubscriber, HandlerTasks
from .config import BackplaneConfig
from .errors import MalformedMessageError, transport_errors
from .models import MessageEnvelope

logger = logging.getLogger(__name__)

MessageHandler = Callable[[MessageEnvelope], Awaitable[None]]


class MessageBroker:
    """
    Envelope transport over Redis pub/sub.

    Key structure:
        {prefix}message:{id}    STRING envelope JSON, expires after message_ttl

    Every received envelope goes to every subscribed handler; handlers filter
    on ``routing.target`` themselves.
    """

    def __init__(self, client: redis.Redis, config: BackplaneConfig):
        self.client = client
        self.config = config
        self.channel = config.message_channel
        self._handlers: dict[str, MessageHandler] = {}
        self._dispatch = HandlerTasks("message")
        self._subscriber = ChannelSubscriber(client, self.channel, self._on_message)

    async def initialize(self) -> None:
        """Start listening on the message channel."""
        await self._subscriber.start()

    async def close(self) -> None:
        """Stop listening and drop every handler."""
        await self._subscriber.stop()
        await self._dispatch.cancel()
        self._handlers.clear()

    # ==================== Publishing ====================

    async def publish(self, envelope: MessageEnvelope) -> None:
        """
        Store an envelope and publish it on the message channel.

        Args:
            envelope: Envelope to send

        Raises:
            TransportError: If the write or the publish fails
        """
        payload = envelope.to_json()
        with transport_errors(f"publish message {envelope.id}"):
            await self.client.set(
                self.config.message_key(envelope.id),
                payload,
                ex=self.config.message_ttl,
            )
            await self.client.publish(self.channel, payload)

        logger.debug(
            "Published message %s from %s to %s",
            envelope.id,
            envelope.routing.source,
            envelope.routing.target,
        )

    # ==================== Subscriptions ====================

    def subscribe(self, agent_id: str, handler: MessageHandler) -> None:
        """Register the handler for an agent, replacing any previous one."""
        self._handlers[agent_id] = handler

    def unsubscribe(self, agent_id: str) -> None:
        self._handlers.pop(agent_id, None)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def _on_message(self, data: str) -> None:
        envelope = MessageEnvelope.from_json(data)
        for handler in list(self._handlers.values()):
            self._dispatch.run(handler, envelope)

    async def drain(self) -> None:
        """Wait for handlers still processing received envelopes."""
        await self._dispatch.join()

    # ==================== Lookup ====================

    async def get_message(self, message_id: str) -> Optional[MessageEnvelope]:
        """
        Get a stored envelope by id.

        Returns:
            MessageEnvelope or None if unknown or expired
        """
        with transport_errors(f"get message {message_id}"):
            data = await self.client.get(self.config.message_key(message_id))
        if data:
            return MessageEnvelope.from_json(data)
        return None

    async def get_recent_messages(self, limit: int = 10) -> list[MessageEnvelope]:
        """
        Get up to ``limit`` stored envelopes.

        Order follows Redis key enumeration, not delivery order.
        """
        if limit <= 0:
            return []

        keys = []
        with transport_errors("list messages"):
            async for key in self.client.scan_iter(match=self.config.key_pattern("message")):
                keys.append(key)
                if len(keys) >= limit:
                    break
            values = await self.client.mget(keys) if keys else []

        envelopes = []
        for key, value in zip(keys, values):
            if not value:
                continue  # expired between SCAN and MGET
            try:
                envelopes.append(MessageEnvelope.from_json(value))
            except MalformedMessageError as e:
                logger.warning("Skipping unreadable message %s: %s", key, e)
        return envelopes
