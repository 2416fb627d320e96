"""
Pub/sub plumbing shared by the backplane services.

Each service that listens on a channel owns a ChannelSubscriber, which holds
its own pub/sub connection (a live subscription cannot issue ordinary
commands) and a listener task. Callbacks invoked from a listener run through
HandlerTasks so that one slow or failing callback never holds up the others.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import MalformedMessageError, transport_errors

logger = logging.getLogger(__name__)

POLL_TIMEOUT = 1.0
RETRY_DELAY = 1.0
CANCEL_RETRY = 0.1


async def cancel_task(task: asyncio.Task) -> None:
    """
    Cancel a background task and wait for it to finish.

    The cancellation is repeated until the task is done: a library call can
    absorb a CancelledError and return normally, leaving the task running.
    """
    while not task.done():
        task.cancel()
        await asyncio.wait({task}, timeout=CANCEL_RETRY)

    if not task.cancelled() and task.exception() is not None:
        logger.error(
            "Task %s failed before cancellation", task.get_name(), exc_info=task.exception()
        )


async def wait_stopped(stop: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds; True if ``stop`` was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


class HandlerTasks:
    """Invoke callbacks without awaiting them inline, logging their failures."""

    def __init__(self, kind: str):
        self.kind = kind
        self._tasks: set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def run(self, handler: Callable[..., Any], *args: Any) -> None:
        """Call a sync or async handler; coroutines continue in their own task."""
        try:
            result = handler(*args)
        except Exception:
            logger.exception("%s handler %r failed", self.kind, handler)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("%s handler failed", self.kind, exc_info=error)

    async def join(self) -> None:
        """Wait for the handlers currently in flight."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class ChannelSubscriber:
    """Dedicated subscription to one channel, feeding payloads to a callback."""

    def __init__(
        self,
        client: redis.Redis,
        channel: str,
        on_message: Callable[[str], Awaitable[None]],
    ):
        self.client = client
        self.channel = channel
        self.on_message = on_message
        self._pubsub: Optional[redis.client.PubSub] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Subscribe on a fresh connection and start the listener task."""
        if self._pubsub is not None:
            return
        self._stopping.clear()
        self._pubsub = self.client.pubsub()
        with transport_errors(f"subscribe to {self.channel}"):
            await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(
            self._listen(), name=f"listener:{self.channel}"
        )
        logger.debug("Subscribed to %s", self.channel)

    async def stop(self) -> None:
        """Cancel the listener and close the subscription connection."""
        self._stopping.set()
        task, self._task = self._task, None
        if task is not None:
            await cancel_task(task)

        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(self.channel)
            except RedisError as e:
                logger.warning("Unsubscribe from %s failed: %s", self.channel, e)
            finally:
                await pubsub.aclose()
            logger.debug("Unsubscribed from %s", self.channel)

    async def _listen(self) -> None:
        while not self._stopping.is_set():
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=POLL_TIMEOUT
                )
            except RedisError as e:
                logger.error("Subscription to %s failed: %s", self.channel, e)
                await wait_stopped(self._stopping, RETRY_DELAY)
                continue

            if message is None or message.get("type") != "message":
                continue

            try:
                await self.on_message(message["data"])
            except MalformedMessageError as e:
                logger.warning("Dropping malformed payload on %s: %s", self.channel, e)
            except Exception:
                logger.exception("Error processing payload on %s", self.channel)
