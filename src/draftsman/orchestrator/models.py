"""Domain models for job orchestration state, queue messages and views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.EXPIRED},
)


class JobMode(str, Enum):
    INVESTIGATE = "investigate"
    FIX = "fix"


class QuestionStatus(str, Enum):
    OPEN = "open"
    ANSWERED = "answered"
    EXPIRED = "expired"
    CANCELED = "canceled"


class QueueLane(str, Enum):
    """Logical queue lanes with independent concurrency and retry policy."""

    ORCHESTRATION = "orchestration"
    NOTIFICATIONS = "notifications"


class MessageStatus(str, Enum):
    PENDING = "pending"
    LEASED = "leased"
    DONE = "done"
    DEAD = "dead"


class OrchestrationAction(str, Enum):
    START = "start"
    RESUME = "resume"
    EXPIRE_WAITING_INPUT = "expire_waiting_input"
    CANCEL = "cancel"


class NotificationKind(str, Enum):
    QUESTION = "question"
    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRED = "expired"
    CANCELED = "canceled"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy and operators."""

    RUNNER_TRANSIENT = "runner_transient"
    RUNNER_NON_RETRYABLE = "runner_non_retryable"
    RUNNER_TIMEOUT = "runner_timeout"
    RUNNER_CRASHED = "runner_crashed"
    INFRA_TRANSIENT = "infra_transient"
    DEAD_LETTER = "dead_letter"


@dataclass(slots=True)
class JobCreate:
    """Initial job fields produced by an event builder."""

    source: str
    external_event_id: str
    mode: JobMode
    repo: str
    workspace_ref: str | None = None
    ticket_ref: str | None = None
    secondary_channels: tuple[str, ...] = ()

    def channel_targets(self) -> list[str]:
        """Originating channel first, then de-duplicated secondary channels."""

        targets = [self.source]
        for channel in self.secondary_channels:
            if channel and channel not in targets:
                targets.append(channel)
        return targets


@dataclass(slots=True)
class JobView:
    """Readable job view for workers, ingestion and CLI."""

    job_id: str
    dedup_key: str
    source: str
    external_event_id: str
    mode: JobMode
    repo: str
    workspace_ref: str | None
    ticket_ref: str | None
    status: JobStatus
    version: int
    current_checkpoint_id: str | None
    channel_targets: list[str]
    execution_attempt: int
    active_message_id: str | None
    cancel_requested_at: datetime | None
    failure_class: FailureClass | None
    error_summary: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class GateResult:
    job: JobView
    deduped: bool


@dataclass(slots=True)
class CheckpointView:
    checkpoint_id: str
    job_id: str
    payload: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class QuestionView:
    question_id: str
    job_id: str
    checkpoint_id: str
    prompt: dict[str, Any]
    status: QuestionStatus
    delivery_targets: list[str]
    asked_at: datetime
    expires_at: datetime
    closed_at: datetime | None


@dataclass(slots=True)
class AnswerView:
    answer_id: str
    question_id: str
    job_id: str
    source: str
    responder_id: str
    payload: dict[str, Any]
    source_event_id: str
    answered_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Audit trail entry."""

    event_id: int
    job_id: str
    sequence: int
    kind: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its audit stream and questions."""

    job: JobView
    events: list[JobEventView]
    questions: list[QuestionView]


@dataclass(slots=True)
class ResumeResult:
    job_id: str
    accepted: bool
    answer_id: str
    deduped: bool = False


@dataclass(slots=True)
class QueueMessageView:
    message_id: str
    lane: QueueLane
    job_id: str
    kind: str
    payload: dict[str, Any]
    status: MessageStatus
    attempt: int
    max_attempts: int
    due_at: datetime
    lease_expires_at: datetime | None
    leased_by: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def attempts_left(self) -> bool:
        return self.attempt < self.max_attempts


@dataclass(slots=True)
class OrchestrationMessage:
    """Queue payload hint; the store stays the source of truth."""

    job_id: str
    trigger: str
    action: OrchestrationAction
    resume_from_checkpoint_id: str | None = None
    question_id: str | None = None
    answer_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "job_id": self.job_id,
            "trigger": self.trigger,
            "action": self.action.value,
        }
        if self.resume_from_checkpoint_id is not None:
            payload["resumeFromCheckpointId"] = self.resume_from_checkpoint_id
        if self.question_id is not None:
            payload["question_id"] = self.question_id
        if self.answer_id is not None:
            payload["answer_id"] = self.answer_id
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> OrchestrationMessage:
        return cls(
            job_id=str(payload["job_id"]),
            trigger=str(payload.get("trigger", "")),
            action=OrchestrationAction(payload["action"]),
            resume_from_checkpoint_id=payload.get("resumeFromCheckpointId"),
            question_id=payload.get("question_id"),
            answer_id=payload.get("answer_id"),
        )


@dataclass(slots=True)
class NotificationMessage:
    job_id: str
    channel_targets: list[str]
    kind: NotificationKind
    payload: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "channel_targets": list(self.channel_targets),
            "kind": self.kind.value,
            "payload": self.payload,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> NotificationMessage:
        return cls(
            job_id=str(payload["job_id"]),
            channel_targets=[str(target) for target in payload.get("channel_targets", [])],
            kind=NotificationKind(payload["kind"]),
            payload=dict(payload.get("payload") or {}),
        )
