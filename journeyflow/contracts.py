"""Core records and job contracts for the journey engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_BACKOFF_MS, DEFAULT_MAX_ATTEMPTS

JourneyStatus = Literal["draft", "active", "paused", "archived"]
TriggerType = Literal["inbound_message", "tag_change", "stage_change", "time"]
NodeType = Literal["send_message", "delay", "condition", "tag_update", "webhook"]
RunStatus = Literal["running", "completed", "failed"]
StepStatus = Literal["pending", "running", "completed", "failed"]

OPEN_STEP_STATUSES = ("pending", "running")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class JourneyStepError(Exception):
    """Raised by a node behavior when the step cannot run as configured."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


# ----------------------------------------------------------------------
# Authoring records


class Journey(BaseModel):
    """Tenant-owned workflow definition."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    status: JourneyStatus = "draft"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JourneyTrigger(BaseModel):
    """Event condition that starts runs of a journey."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    journey_id: str
    type: TriggerType
    enabled: bool = True
    config: Optional[Dict[str, Any]] = None
    last_fired_at: Optional[datetime] = None


class JourneyNode(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    journey_id: str
    type: NodeType
    label: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    position: Optional[Dict[str, Any]] = None


class JourneyEdge(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    journey_id: str
    from_node_id: str
    to_node_id: str
    label: Optional[str] = None


# ----------------------------------------------------------------------
# Execution records


class TriggerSnapshot(BaseModel):
    """Trigger context captured when a run starts.

    Serialized with camelCase keys, the shape stored on the run.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    text: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    stage: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class JourneyRun(BaseModel):
    """One execution instance of a journey."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    journey_id: str
    lead_id: Optional[str] = None
    contact_id: Optional[str] = None
    channel_id: Optional[str] = None
    trigger_type: TriggerType
    trigger_payload: TriggerSnapshot = Field(default_factory=TriggerSnapshot)
    status: RunStatus = "running"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class JourneyRunStep(BaseModel):
    """One node visit within a run; the unit of queued work."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    run_id: str
    node_id: str
    status: StepStatus = "pending"
    attempt: int = 0
    scheduled_for: Optional[datetime] = None
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Queue jobs


class TriggerJob(BaseModel):
    """Business event to match against a tenant's journey triggers."""

    type: Literal["trigger"] = "trigger"
    trigger_type: TriggerType
    organization_id: str
    trigger_id: Optional[str] = None
    lead_id: Optional[str] = None
    contact_id: Optional[str] = None
    channel_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    text: Optional[str] = None
    tags: Optional[List[str]] = None
    stage: Optional[str] = None


class StepJob(BaseModel):
    type: Literal["step"] = "step"
    run_step_id: str


class OutboundJob(BaseModel):
    type: Literal["outbound"] = "outbound"
    message_id: str


JobData = Annotated[Union[TriggerJob, StepJob, OutboundJob], Field(discriminator="type")]


class JobEnvelope(BaseModel):
    """Envelope exchanged over the transport."""

    job_id: str = Field(default_factory=new_id)
    name: str
    data: JobData
    attempt: int = 1
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_ms: int = DEFAULT_BACKOFF_MS
    enqueued_at: datetime = Field(default_factory=utcnow)
    available_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize envelope to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobEnvelope":
        """Deserialize envelope from JSON."""
        return cls.model_validate_json(data)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def bump_attempt(self) -> "JobEnvelope":
        """Return a copy of this envelope for the next delivery attempt."""
        return self.model_copy(update={"job_id": new_id(), "attempt": self.attempt + 1})

    def schedule(self, now: datetime, delay_ms: int = 0) -> "JobEnvelope":
        return self.model_copy(
            update={"available_at": now + timedelta(milliseconds=max(0, delay_ms))}
        )
