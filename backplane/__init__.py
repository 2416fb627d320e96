# Agent Backplane - Library Module
"""
Communication backplane for independent agent processes.

Modules:
    - messaging: Redis pub/sub message broker
    - registry: Agent registration, heartbeats and discovery
    - context: Shared context with branch/merge
    - backplane: Facade wiring the services to one connection
"""

from .backplane import Backplane
from .config import BackplaneConfig, PubSubConfig
from .context import ContextManager
from .errors import (
    BackplaneError,
    MalformedMessageError,
    NotConnectedError,
    NotFoundError,
    TransportError,
)
from .messaging import MessageBroker
from .models import (
    AgentInfo,
    AgentMessage,
    ContextBranch,
    ContextSyncEvent,
    DiscoveryEvent,
    MessageEnvelope,
    MessageMetadata,
)
from .registry import DiscoveryService

__version__ = "0.1.0"

__all__ = [
    "AgentInfo",
    "AgentMessage",
    "Backplane",
    "BackplaneConfig",
    "BackplaneError",
    "ContextBranch",
    "ContextManager",
    "ContextSyncEvent",
    "DiscoveryEvent",
    "DiscoveryService",
    "MalformedMessageError",
    "MessageBroker",
    "MessageEnvelope",
    "MessageMetadata",
    "NotConnectedError",
    "NotFoundError",
    "PubSubConfig",
    "TransportError",
]
