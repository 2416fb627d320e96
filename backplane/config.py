"""
Backplane configuration.

Holds the Redis connection settings, the key prefix that isolates one
deployment from another, the pub/sub channel names and the liveness timers.
"""

import os
import re
from typing import Optional

import redis.asyncio as redis
from pydantic import BaseModel, Field

DEFAULT_PREFIX = "agent-framework:"


def glob_escape(value: str) -> str:
    """Escape Redis glob metacharacters so ``value`` matches literally."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", value)


class PubSubConfig(BaseModel):
    """Channel names. Unset channels are derived from the key prefix."""

    message_channel: Optional[str] = None
    context_channel: Optional[str] = None
    discovery_channel: Optional[str] = None


class BackplaneConfig(BaseModel):
    """Configuration for a Backplane instance."""

    host: str = "localhost"
    port: int = 6379
    url: Optional[str] = None  # takes precedence over host/port
    secure: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    prefix: str = DEFAULT_PREFIX
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)

    # Liveness and retention, in seconds
    heartbeat_interval: float = 30
    sweep_interval: float = 60
    stale_after: float = 120
    agent_ttl: int = 86400
    message_ttl: int = 86400
    context_ttl: int = 86400 * 7

    socket_timeout: float = 5

    @classmethod
    def from_env(cls, **overrides) -> "BackplaneConfig":
        """
        Build a config from environment variables.

        Reads REDIS_URL, BACKPLANE_HOST, BACKPLANE_PORT, BACKPLANE_PREFIX,
        BACKPLANE_USERNAME and BACKPLANE_PASSWORD. Keyword overrides win.
        """
        values = {
            "url": os.environ.get("REDIS_URL"),
            "host": os.environ.get("BACKPLANE_HOST", "localhost"),
            "port": int(os.environ.get("BACKPLANE_PORT", "6379")),
            "prefix": os.environ.get("BACKPLANE_PREFIX", DEFAULT_PREFIX),
            "username": os.environ.get("BACKPLANE_USERNAME"),
            "password": os.environ.get("BACKPLANE_PASSWORD"),
        }
        values.update(overrides)
        return cls(**values)

    # ==================== Channels ====================

    @property
    def message_channel(self) -> str:
        return self.pubsub.message_channel or f"{self.prefix}messages"

    @property
    def context_channel(self) -> str:
        return self.pubsub.context_channel or f"{self.prefix}context"

    @property
    def discovery_channel(self) -> str:
        return self.pubsub.discovery_channel or f"{self.prefix}discovery"

    # ==================== Key Layout ====================

    def agent_key(self, agent_id: str) -> str:
        return f"{self.prefix}agent:{agent_id}"

    def message_key(self, message_id: str) -> str:
        return f"{self.prefix}message:{message_id}"

    def context_key(self, context_id: str) -> str:
        return f"{self.prefix}context:{context_id}"

    def branch_key(self, branch_id: str) -> str:
        return f"{self.prefix}branch:{branch_id}"

    def key_pattern(self, namespace: str, match: str = "*") -> str:
        """SCAN pattern over one namespace; ``match`` is used verbatim."""
        return f"{glob_escape(self.prefix)}{namespace}:{match}"

    # ==================== Client ====================

    def create_client(self) -> redis.Redis:
        """Create the Redis client for this configuration."""
        options = dict(
            username=self.username,
            password=self.password,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        if self.url:
            return redis.from_url(self.url, **options)
        return redis.Redis(host=self.host, port=self.port, ssl=self.secure, **options)
