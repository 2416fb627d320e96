"""
Wire models shared by the backplane services.

Every model serializes with camelCase keys so that peers written in other
languages can share the same channels; snake_case names are accepted on
input as well.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import MalformedMessageError

AgentStatus = Literal["active", "idle", "busy", "offline"]
DiscoveryEventType = Literal["add", "update", "remove"]
MessageType = Literal["request", "response", "update", "error"]
SyncEventType = Literal["update", "delete", "prune"]

ModelT = TypeVar("ModelT", bound="WireModel")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps from peers as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Base for everything written to Redis or a channel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls: Type[ModelT], data: str) -> ModelT:
        """Decode a payload, raising MalformedMessageError on bad input."""
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise MalformedMessageError(
                f"Invalid {cls.__name__} payload: {e.error_count()} error(s)"
            ) from e

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls: Type[ModelT], data: dict) -> ModelT:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedMessageError(
                f"Invalid {cls.__name__} payload: {e.error_count()} error(s)"
            ) from e


# ==================== Discovery ====================


class AgentInfo(WireModel):
    """Information about a registered agent."""

    id: str
    role: str
    capabilities: set[str] = Field(default_factory=set)
    status: AgentStatus = "active"
    last_seen: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("last_seen")
    @classmethod
    def normalize_last_seen(cls, value: datetime) -> datetime:
        return as_utc(value)


class AgentRegistration(AgentInfo):
    """Stored form of an agent record, with liveness bookkeeping."""

    registered_at: datetime = Field(default_factory=utcnow)
    last_heartbeat: datetime = Field(default_factory=utcnow)

    @field_validator("registered_at", "last_heartbeat")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_info(cls, info: AgentInfo) -> "AgentRegistration":
        now = utcnow()
        return cls(
            **info.model_dump(include=set(AgentInfo.model_fields) - {"last_seen"}),
            last_seen=now,
            registered_at=now,
            last_heartbeat=now,
        )

    def to_agent_info(self) -> AgentInfo:
        return AgentInfo(**self.model_dump(exclude={"registered_at", "last_heartbeat"}))


class DiscoveryEvent(WireModel):
    """Event published on the discovery channel."""

    type: DiscoveryEventType
    agent: AgentInfo


# ==================== Messaging ====================


class MessageMetadata(WireModel):
    sender: str
    priority: int = 0
    requires_response: bool = False
    deadline: Optional[datetime] = None


class AgentMessage(WireModel):
    """
    Message exchanged between agents.

    The content is opaque to the backplane; only the envelope is inspected.
    """

    type: MessageType
    content: Any = None
    metadata: MessageMetadata


class Routing(WireModel):
    source: str
    target: str
    channel: Optional[str] = None
    priority: int = 0


class EnvelopeMetadata(WireModel):
    context_id: Optional[str] = None
    correlation_id: Optional[str] = None
    ttl: Optional[int] = None  # advisory, seconds
    retries: Optional[int] = None


class MessageEnvelope(WireModel):
    """Unit of transport for one message to one recipient."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=utcnow)
    message: AgentMessage
    routing: Routing
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)

    @classmethod
    def wrap(
        cls,
        message: AgentMessage,
        target: str,
        channel: Optional[str] = None,
        **metadata: Any,
    ) -> "MessageEnvelope":
        """Build a fresh envelope addressed to ``target``."""
        return cls(
            message=message,
            routing=Routing(
                source=message.metadata.sender,
                target=target,
                channel=channel,
                priority=message.metadata.priority,
            ),
            metadata=EnvelopeMetadata(**metadata),
        )


# ==================== Context ====================


class ContextSyncEvent(WireModel):
    """Change to a shared context, published on the context channel."""

    type: SyncEventType
    agent_id: str
    context_id: str
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContextBranch(WireModel):
    """Point-in-time copy of a context handed to one target agent."""

    id: str
    source_id: str
    target_id: str
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_sync: datetime = Field(default_factory=utcnow)
