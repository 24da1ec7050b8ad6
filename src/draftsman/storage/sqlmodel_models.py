"""SQLModel ORM tables for job orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_status_updated", "status", "updated_at"),)

    job_id: str = Field(primary_key=True)
    dedup_key: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    source: str = Field(index=True)
    external_event_id: str
    mode: str
    repo: str = Field(index=True)
    workspace_ref: str | None = None
    ticket_ref: str | None = None
    status: str = Field(index=True)
    version: int = Field(default=1)
    current_checkpoint_id: str | None = None
    channel_targets_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    execution_attempt: int = Field(default=0)
    active_message_id: str | None = None
    last_event_sequence: int = Field(default=0)
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobCheckpoint(SQLModel, table=True):
    __tablename__ = "job_checkpoints"  # type: ignore[bad-override]

    checkpoint_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
    )
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobQuestion(SQLModel, table=True):
    __tablename__ = "job_questions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_job_questions_one_open_per_job",
            "job_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
        ),
        Index("idx_job_questions_status_expires", "status", "expires_at"),
    )

    question_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
    )
    checkpoint_id: str = Field(
        sa_column=Column(
            ForeignKey("job_checkpoints.checkpoint_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    prompt_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    delivery_targets_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    asked_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobAnswer(SQLModel, table=True):
    __tablename__ = "job_answers"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("question_id", name="uq_job_answers_question"),
        Index("idx_job_answers_question_event", "question_id", "source_event_id"),
    )

    answer_id: str = Field(primary_key=True)
    question_id: str = Field(
        sa_column=Column(
            ForeignKey("job_questions.question_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
    )
    source: str
    responder_id: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    source_event_id: str
    answered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "sequence", name="uq_job_events_job_sequence"),)

    event_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    kind: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_messages_lane_ready", "lane", "status", "due_at"),)

    message_id: str = Field(primary_key=True)
    lane: str
    job_id: str = Field(index=True)
    kind: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    due_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    leased_by: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
