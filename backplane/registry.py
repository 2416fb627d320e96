"""
Agent registry for tracking live agents in the network.

Provides registration, discovery queries, heartbeats and eviction of agents
whose heartbeat has gone stale.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional, get_args

import redis.asyncio as redis
from redis.exceptions import WatchError

from .channel import ChannelSubscriber, HandlerTasks, cancel_task, wait_stopped
from .config import BackplaneConfig
from .errors import MalformedMessageError, NotFoundError, TransportError, transport_errors
from .models import (
    AgentInfo,
    AgentRegistration,
    AgentStatus,
    DiscoveryEvent,
    DiscoveryEventType,
    utcnow,
)

logger = logging.getLogger(__name__)

AgentWatcher = Callable[[DiscoveryEvent], Any]


class DiscoveryService:
    """
    Redis-based discovery for agents.

    Key structure:
        {prefix}agent:{agent_id}    STRING registration JSON, TTL agent_ttl

    Each registered agent gets a heartbeat task refreshing its record; a
    single sweep task evicts records whose heartbeat is older than
    ``stale_after``. Add/update/remove events go out on the discovery channel.
    """

    def __init__(self, client: redis.Redis, config: BackplaneConfig):
        self.client = client
        self.config = config
        self.channel = config.discovery_channel
        self._watchers: list[AgentWatcher] = []
        self._notify = HandlerTasks("discovery")
        self._subscriber = ChannelSubscriber(client, self.channel, self._on_event)
        self._heartbeats: dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def initialize(self) -> None:
        """Subscribe to discovery events and start the sweep loop."""
        self._stopping.clear()
        await self._subscriber.start()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="discovery:sweep")

    async def cleanup(self) -> None:
        """Stop every timer, close the subscription and drop watchers."""
        self._stopping.set()
        for agent_id in list(self._heartbeats):
            await self._stop_heartbeat(agent_id)

        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            await cancel_task(sweeper)

        await self._subscriber.stop()
        await self._notify.cancel()
        self._watchers.clear()

    # ==================== Registration ====================

    async def register_agent(self, info: AgentInfo) -> None:
        """
        Register an agent with the network.

        An existing record with the same id is overwritten, and the agent's
        heartbeat is restarted.

        Args:
            info: Agent description
        """
        registration = AgentRegistration.from_info(info)

        with transport_errors(f"register agent {info.id}"):
            await self.client.set(
                self.config.agent_key(info.id),
                registration.to_json(),
                ex=self.config.agent_ttl,
            )
            await self._publish("add", registration.to_agent_info())

        await self._start_heartbeat(info.id)
        logger.info("Registered agent %s as %s", info.id, info.role)

    async def unregister_agent(self, agent_id: str) -> bool:
        """
        Remove an agent from the registry.

        Args:
            agent_id: Agent identifier to remove

        Returns:
            True if a record was removed, False if none existed
        """
        key = self.config.agent_key(agent_id)

        try:
            with transport_errors(f"unregister agent {agent_id}"):
                data = await self.client.get(key)
                removed = await self.client.delete(key) if data else 0
                # Only the caller whose DEL removed the key announces the removal
                if removed:
                    await self._publish("remove", self._decode_info(agent_id, data))
        finally:
            await self._stop_heartbeat(agent_id)

        if removed:
            logger.info("Unregistered agent %s", agent_id)
        return bool(removed)

    async def update_agent_status(self, agent_id: str, status: AgentStatus) -> AgentInfo:
        """
        Update an agent's status.

        Args:
            agent_id: Agent identifier
            status: New status (active, idle, busy, offline)

        Returns:
            The updated AgentInfo

        Raises:
            NotFoundError: If the agent is not registered
        """
        if status not in get_args(AgentStatus):
            raise ValueError(f"Unknown agent status: {status!r}")

        def change(registration: AgentRegistration) -> None:
            registration.status = status
            registration.last_heartbeat = registration.last_seen = utcnow()

        with transport_errors(f"update agent {agent_id}"):
            registration = await self._modify(agent_id, change)
            if registration is None:
                raise NotFoundError(f"Agent {agent_id} not found")

            info = registration.to_agent_info()
            await self._publish("update", info)

        logger.debug("Agent %s is now %s", agent_id, status)
        return info

    # ==================== Discovery ====================

    async def get_agent(self, agent_id: str) -> Optional[AgentInfo]:
        """
        Get information about a specific agent.

        Returns:
            AgentInfo or None if not found
        """
        with transport_errors(f"get agent {agent_id}"):
            data = await self.client.get(self.config.agent_key(agent_id))
        if data:
            return AgentRegistration.from_json(data).to_agent_info()
        return None

    async def find_agents(
        self,
        role: Optional[str] = None,
        capabilities: Optional[Iterable[str]] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[AgentInfo]:
        """
        Find registered agents.

        Args:
            role: Exact role match
            capabilities: Every listed capability must be present
            status: Exact status match

        Returns:
            All matching agents
        """
        required = set(capabilities) if capabilities else set()

        agents = []
        for registration in await self._load_registrations():
            if role is not None and registration.role != role:
                continue
            if not required.issubset(registration.capabilities):
                continue
            if status is not None and registration.status != status:
                continue
            agents.append(registration.to_agent_info())

        return agents

    def watch_agents(self, handler: AgentWatcher) -> None:
        """Call ``handler`` with every discovery event seen on the channel."""
        self._watchers.append(handler)

    def unwatch_agents(self, handler: AgentWatcher) -> None:
        if handler in self._watchers:
            self._watchers.remove(handler)

    # ==================== Health Monitoring ====================

    async def heartbeat(self, agent_id: str) -> bool:
        """
        Refresh an agent's heartbeat and record TTL.

        Returns:
            True if the record exists and was refreshed
        """
        def touch(registration: AgentRegistration) -> None:
            registration.last_heartbeat = registration.last_seen = utcnow()

        with transport_errors(f"heartbeat for {agent_id}"):
            registration = await self._modify(agent_id, touch)
        return registration is not None

    async def sweep(self) -> list[str]:
        """
        Evict agents whose last heartbeat is older than ``stale_after``.

        Returns:
            List of evicted agent IDs
        """
        cutoff = utcnow() - timedelta(seconds=self.config.stale_after)
        evicted = []

        for registration in await self._load_registrations():
            if registration.last_heartbeat >= cutoff:
                continue
            if await self.unregister_agent(registration.id):
                logger.info(
                    "Evicted agent %s, last heartbeat %s",
                    registration.id,
                    registration.last_heartbeat.isoformat(),
                )
                evicted.append(registration.id)

        return evicted

    @property
    def heartbeating(self) -> set[str]:
        """IDs of agents this instance is sending heartbeats for."""
        return set(self._heartbeats)

    async def _start_heartbeat(self, agent_id: str) -> None:
        await self._stop_heartbeat(agent_id)
        self._heartbeats[agent_id] = asyncio.create_task(
            self._heartbeat_loop(agent_id), name=f"discovery:heartbeat:{agent_id}"
        )

    async def _stop_heartbeat(self, agent_id: str) -> None:
        task = self._heartbeats.pop(agent_id, None)
        if task is not None and task is not asyncio.current_task():
            await cancel_task(task)

    async def _heartbeat_loop(self, agent_id: str) -> None:
        while not await wait_stopped(self._stopping, self.config.heartbeat_interval):
            try:
                alive = await self.heartbeat(agent_id)
            except (TransportError, MalformedMessageError) as e:
                logger.error("Heartbeat for %s failed: %s", agent_id, e)
                continue

            if not alive:
                logger.info("Record for %s is gone, stopping heartbeat", agent_id)
                if self._heartbeats.get(agent_id) is asyncio.current_task():
                    del self._heartbeats[agent_id]
                return

    async def _sweep_loop(self) -> None:
        while not await wait_stopped(self._stopping, self.config.sweep_interval):
            try:
                await self.sweep()
            except TransportError as e:
                logger.error("Sweep failed: %s", e)

    # ==================== Internals ====================

    async def _load_registrations(self) -> list[AgentRegistration]:
        with transport_errors("list agents"):
            keys = [
                key
                async for key in self.client.scan_iter(match=self.config.key_pattern("agent"))
            ]
            values = await self.client.mget(keys) if keys else []

        registrations = []
        for key, value in zip(keys, values):
            if not value:
                continue  # expired between SCAN and MGET
            try:
                registrations.append(AgentRegistration.from_json(value))
            except MalformedMessageError as e:
                logger.warning("Skipping unreadable agent record %s: %s", key, e)
        return registrations

    async def _modify(
        self, agent_id: str, change: Callable[[AgentRegistration], None]
    ) -> Optional[AgentRegistration]:
        """
        Read-modify-write an agent record under WATCH.

        Concurrent writers (a status update racing a heartbeat) retry instead
        of overwriting each other. A record deleted meanwhile is not recreated.

        Returns:
            The stored registration, or None if the record does not exist
        """
        key = self.config.agent_key(agent_id)

        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        return None

                    registration = AgentRegistration.from_json(data)
                    change(registration)

                    pipe.multi()
                    pipe.set(key, registration.to_json(), ex=self.config.agent_ttl)
                    await pipe.execute()
                    return registration
                except WatchError:
                    continue

    def _decode_info(self, agent_id: str, data: str) -> AgentInfo:
        try:
            return AgentRegistration.from_json(data).to_agent_info()
        except MalformedMessageError as e:
            logger.warning("Agent record for %s was unreadable: %s", agent_id, e)
            return AgentInfo(id=agent_id, role="unknown", status="offline")

    async def _publish(self, event_type: DiscoveryEventType, agent: AgentInfo) -> None:
        event = DiscoveryEvent(type=event_type, agent=agent)
        await self.client.publish(self.channel, event.to_json())

    async def _on_event(self, data: str) -> None:
        event = DiscoveryEvent.from_json(data)
        for watcher in list(self._watchers):
            self._notify.run(watcher, event)
