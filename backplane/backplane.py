"""
Backplane facade wiring the broker, discovery and context services to one
Redis connection.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import BackplaneConfig
from .context import ContextManager, Pruner
from .errors import BackplaneError, NotConnectedError, transport_errors
from .messaging import MessageBroker
from .models import AgentInfo, AgentMessage, ContextSyncEvent, MessageEnvelope
from .registry import DiscoveryService

logger = logging.getLogger(__name__)

AgentFilter = Callable[[AgentInfo], bool]


class Backplane:
    """
    Communication backplane for one agent process.

    Usage:
        async with Backplane(BackplaneConfig.from_env()) as backplane:
            await backplane.discovery.register_agent(info)
            await backplane.send_message(message, target="reviewer-1")

    The backplane owns one Redis client. Pass ``client`` to share an existing
    one; an injected client is left open on disconnect.
    """

    def __init__(
        self,
        config: Optional[BackplaneConfig] = None,
        client: Optional[redis.Redis] = None,
        pruner: Optional[Pruner] = None,
    ):
        self.config = config or BackplaneConfig()
        self._owns_client = client is None
        self.client = client if client is not None else self.config.create_client()
        self._connected = False

        self.broker = MessageBroker(self.client, self.config)
        self.discovery = DiscoveryService(self.client, self.config)
        self.context = ContextManager(self.client, self.config, pruner=pruner)

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def __aenter__(self) -> "Backplane":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    # ==================== Lifecycle ====================

    async def connect(self) -> None:
        """
        Connect to Redis and start every service.

        On failure everything started so far is torn down before the error
        is re-raised, so connect() can be retried.

        Raises:
            BackplaneError: If already connected
            TransportError: If Redis is unreachable
        """
        if self._connected:
            raise BackplaneError("Backplane already connected")

        try:
            with transport_errors("connect"):
                await self.client.ping()
            await self.discovery.initialize()
            await self.broker.initialize()
            await self.context.initialize()
        except BaseException:
            await self._teardown()
            raise

        self._connected = True
        logger.info("Backplane connected (prefix %s)", self.config.prefix)

    async def disconnect(self) -> None:
        """Stop every service and release the connection."""
        if not self._connected:
            return
        await self._teardown()
        logger.info("Backplane disconnected")

    async def cleanup(self) -> None:
        """
        Stop timers, unsubscribe and release the connection.

        Safe to call repeatedly and after a failed connect().
        """
        await self._teardown()

    async def ping(self) -> bool:
        """Check the Redis connection."""
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def _teardown(self) -> None:
        self._connected = False
        try:
            await self.discovery.cleanup()
            await self.broker.close()
            await self.context.close()
        finally:
            if self._owns_client:
                try:
                    await self.client.aclose()
                except RedisError as e:
                    logger.warning("Closing Redis client failed: %s", e)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise NotConnectedError()

    # ==================== Messaging ====================

    async def send_message(
        self,
        message: AgentMessage,
        target: str,
        *,
        channel: Optional[str] = None,
        context_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> MessageEnvelope:
        """
        Send a message to one agent.

        Args:
            message: Message to send; its sender becomes the routing source
            target: Recipient agent ID
            channel: Logical channel recorded in the routing block
            context_id: Context the message refers to
            correlation_id: ID tying a response to its request
            ttl: Advisory lifetime in seconds, enforced by recipients

        Returns:
            The published envelope
        """
        self._ensure_connected()

        envelope = MessageEnvelope.wrap(
            message,
            target,
            channel=channel,
            context_id=context_id,
            correlation_id=correlation_id,
            ttl=ttl,
        )
        await self.broker.publish(envelope)
        return envelope

    async def broadcast_message(
        self,
        message: AgentMessage,
        filter: Optional[AgentFilter] = None,
    ) -> list[MessageEnvelope]:
        """
        Send a message to every active agent accepted by ``filter``.

        Each recipient gets its own envelope.

        Returns:
            The published envelopes
        """
        self._ensure_connected()

        agents = await self.discovery.find_agents(status="active")
        targets = [agent for agent in agents if filter is None or filter(agent)]

        envelopes = [MessageEnvelope.wrap(message, agent.id) for agent in targets]
        await asyncio.gather(*(self.broker.publish(envelope) for envelope in envelopes))

        logger.debug("Broadcast %s to %d agent(s)", message.type, len(envelopes))
        return envelopes

    # ==================== Context ====================

    async def share_context(self, context_id: str, target_agent_id: str) -> str:
        """
        Hand a copy of a context to another agent.

        Creates a branch for the target and syncs the current context into
        it, announcing the branch on the context channel.

        Returns:
            The branch id
        """
        self._ensure_connected()

        branch_id = await self.context.create_context_branch(context_id, target_agent_id)
        nodes = await self.context.get_shared_context(context_id)

        await self.context.sync_context(
            ContextSyncEvent(
                type="update",
                agent_id=target_agent_id,
                context_id=branch_id,
                nodes=nodes,
            )
        )
        return branch_id

    # ==================== Discovery ====================

    async def find_collaborators(
        self,
        role: Optional[str] = None,
        capabilities: Optional[Iterable[str]] = None,
    ) -> list[AgentInfo]:
        """Find active agents with the given role and capabilities."""
        self._ensure_connected()
        return await self.discovery.find_agents(
            role=role, capabilities=capabilities, status="active"
        )
