"""
Shared context storage with branch and merge support.

A context is a list of opaque entries stored under a context id. Changes are
published on the context channel so every process sees them; a branch is a
point-in-time copy of a context handed to one target agent, merged back
into the target's context when the target is done with it.
"""

import inspect
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional, Union

import redis.asyncio as redis
from pydantic import TypeAdapter, ValidationError

from .channel import ChannelSubscriber, HandlerTasks
from .config import BackplaneConfig, glob_escape
from .errors import MalformedMessageError, NotFoundError, transport_errors
from .models import ContextBranch, ContextSyncEvent, utcnow

logger = logging.getLogger(__name__)

ContextNodes = list[dict[str, Any]]
Pruner = Callable[[ContextNodes], Union[ContextNodes, Awaitable[ContextNodes]]]
ContextWatcher = Callable[[ContextSyncEvent], Any]

_nodes_adapter = TypeAdapter(ContextNodes)

# Payloads this instance published and has not yet seen come back
ECHO_HISTORY = 256


def keep_all(nodes: ContextNodes) -> ContextNodes:
    """Default pruner: leaves the context unchanged."""
    return nodes


class ContextManager:
    """
    Redis-based shared context manager.

    Key structure:
        {prefix}context:{context_id}    STRING nodes JSON, TTL context_ttl
        {prefix}branch:{branch_id}      STRING branch JSON, TTL context_ttl

    Branch ids have the form ``{source_id}-{target_id}-{epoch_ms}``.
    """

    def __init__(
        self,
        client: redis.Redis,
        config: BackplaneConfig,
        pruner: Optional[Pruner] = None,
    ):
        self.client = client
        self.config = config
        self.channel = config.context_channel
        self.pruner: Pruner = pruner or keep_all
        self._watchers: list[ContextWatcher] = []
        self._notify = HandlerTasks("context")
        self._subscriber = ChannelSubscriber(client, self.channel, self._on_event)
        self._echoes: deque[str] = deque(maxlen=ECHO_HISTORY)

    async def initialize(self) -> None:
        """Start listening for sync events."""
        await self._subscriber.start()

    async def close(self) -> None:
        await self._subscriber.stop()
        await self._notify.cancel()
        self._watchers.clear()
        self._echoes.clear()

    def set_pruner(self, pruner: Optional[Pruner]) -> None:
        """Set the transform applied by ``prune`` events."""
        self.pruner = pruner or keep_all

    def watch_context(self, handler: ContextWatcher) -> None:
        """Call ``handler`` with every sync event seen on the channel."""
        self._watchers.append(handler)

    def unwatch_context(self, handler: ContextWatcher) -> None:
        if handler in self._watchers:
            self._watchers.remove(handler)

    # ==================== Sync ====================

    async def sync_context(self, event: ContextSyncEvent) -> None:
        """
        Apply a sync event and publish it to other processes.

        update: replace the stored nodes, and the nodes of the branch with
            that id if there is one
        delete: remove the context and every branch whose id contains it
        prune: run the pruner over the stored nodes and sync the result as
            an update

        Raises:
            TransportError: If Redis fails
        """
        if event.type == "update":
            await self._update(event)
        elif event.type == "delete":
            await self._delete(event.context_id)
            await self._publish(event)
        elif event.type == "prune":
            await self._prune(event)

    async def get_shared_context(self, context_id: str) -> ContextNodes:
        """
        Get the nodes stored for a context or branch id.

        Returns:
            The stored nodes, or an empty list if there are none
        """
        with transport_errors(f"get context {context_id}"):
            data = await self.client.get(self.config.context_key(context_id))
            if data is None:
                branch_data = await self.client.get(self.config.branch_key(context_id))
                if branch_data is not None:
                    return ContextBranch.from_json(branch_data).nodes

        if data is None:
            return []
        return _decode_nodes(data)

    # ==================== Branches ====================

    async def create_context_branch(self, source_id: str, target_id: str) -> str:
        """
        Snapshot a context into a new branch for a target agent.

        Later changes to the source context do not reach the branch.

        Returns:
            The branch id
        """
        nodes = await self.get_shared_context(source_id)
        stamp = int(time.time() * 1000)

        with transport_errors(f"create branch {source_id}->{target_id}"):
            while True:
                branch_id = f"{source_id}-{target_id}-{stamp}"
                branch = ContextBranch(
                    id=branch_id, source_id=source_id, target_id=target_id, nodes=nodes
                )
                created = await self.client.set(
                    self.config.branch_key(branch_id),
                    branch.to_json(),
                    ex=self.config.context_ttl,
                    nx=True,
                )
                if created:
                    break
                # Same pair within the same millisecond
                stamp += 1

        logger.debug("Created branch %s with %d nodes", branch_id, len(nodes))
        return branch_id

    async def get_branch(self, branch_id: str) -> Optional[ContextBranch]:
        with transport_errors(f"get branch {branch_id}"):
            data = await self.client.get(self.config.branch_key(branch_id))
        if data:
            return ContextBranch.from_json(data)
        return None

    async def merge_context_branch(self, source_id: str, target_id: str) -> ContextBranch:
        """
        Fold the newest branch for (source, target) into the target's context.

        The branch nodes replace the target context, tagged with
        ``mergedFrom`` and ``branchId`` metadata. The branch is deleted along
        with any context stored under its id.

        Returns:
            The merged branch

        Raises:
            NotFoundError: If no branch exists for the pair
        """
        branch, branch_key = await self._latest_branch(source_id, target_id)

        await self.sync_context(
            ContextSyncEvent(
                type="update",
                agent_id=target_id,
                context_id=target_id,
                nodes=branch.nodes,
                metadata={"mergedFrom": source_id, "branchId": branch.id},
            )
        )

        with transport_errors(f"delete branch {branch.id}"):
            await self.client.delete(branch_key, self.config.context_key(branch.id))

        logger.info("Merged branch %s into %s", branch.id, target_id)
        return branch

    async def _latest_branch(self, source_id: str, target_id: str) -> tuple[ContextBranch, str]:
        match = f"{glob_escape(source_id)}-{glob_escape(target_id)}-*"

        with transport_errors(f"find branch {source_id}->{target_id}"):
            keys = sorted(
                [
                    key
                    async for key in self.client.scan_iter(
                        match=self.config.key_pattern("branch", match)
                    )
                ]
            )

            # Newest first; the pattern can also match pairs whose ids contain "-"
            for key in reversed(keys):
                data = await self.client.get(key)
                if not data:
                    continue
                branch = ContextBranch.from_json(data)
                if branch.source_id == source_id and branch.target_id == target_id:
                    return branch, key

        raise NotFoundError(f"No branch found for source {source_id} and target {target_id}")

    # ==================== Internals ====================

    async def _update(self, event: ContextSyncEvent) -> None:
        nodes_json = _nodes_adapter.dump_json(event.nodes).decode()
        branch_key = self.config.branch_key(event.context_id)

        with transport_errors(f"sync context {event.context_id}"):
            await self.client.set(
                self.config.context_key(event.context_id),
                nodes_json,
                ex=self.config.context_ttl,
            )
            await self._publish(event)

            branch_data = await self.client.get(branch_key)
            if branch_data:
                branch = ContextBranch.from_json(branch_data)
                branch.nodes = _decode_nodes(nodes_json)
                branch.last_sync = utcnow()
                await self.client.set(branch_key, branch.to_json(), xx=True, keepttl=True)

        logger.debug("Synced context %s (%d nodes)", event.context_id, len(event.nodes))

    async def _delete(self, context_id: str) -> None:
        match = f"*{glob_escape(context_id)}*"
        branch_prefix = self.config.branch_key("")

        with transport_errors(f"delete context {context_id}"):
            keys = [self.config.context_key(context_id)]
            branches = 0
            async for key in self.client.scan_iter(
                match=self.config.key_pattern("branch", match)
            ):
                # Branches can also hold a context under their own id
                keys.append(key)
                keys.append(self.config.context_key(key[len(branch_prefix):]))
                branches += 1
            await self.client.delete(*keys)

        logger.debug("Deleted context %s and %d branch(es)", context_id, branches)

    async def _prune(self, event: ContextSyncEvent) -> None:
        nodes = await self.get_shared_context(event.context_id)
        pruned = self.pruner(nodes)
        if inspect.isawaitable(pruned):
            pruned = await pruned

        await self._update(event.model_copy(update={"type": "update", "nodes": pruned}))

    async def _publish(self, event: ContextSyncEvent) -> None:
        payload = event.to_json()
        self._echoes.append(payload)
        with transport_errors(f"publish sync event for {event.context_id}"):
            await self.client.publish(self.channel, payload)

    async def _on_event(self, data: str) -> None:
        event = ContextSyncEvent.from_json(data)

        if data in self._echoes:
            # Already applied when this instance published it
            self._echoes.remove(data)
        elif event.type == "delete":
            await self._delete(event.context_id)
        elif event.type == "prune":
            await self._prune(event)

        for watcher in list(self._watchers):
            self._notify.run(watcher, event)


def _decode_nodes(data: str) -> ContextNodes:
    try:
        return _nodes_adapter.validate_json(data)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid context nodes: {e.error_count()} error(s)") from e
