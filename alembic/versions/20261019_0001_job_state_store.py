"""Job state store: jobs, checkpoints, questions, answers and the audit log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("dedup_key", sa.Text(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("external_event_id", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("repo", sa.String(), nullable=False),
        sa.Column("workspace_ref", sa.String(), nullable=True),
        sa.Column("ticket_ref", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("current_checkpoint_id", sa.String(), nullable=True),
        sa.Column("channel_targets_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("execution_attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("active_message_id", sa.String(), nullable=True),
        sa.Column(
            "last_event_sequence",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index("ix_jobs_source", "jobs", ["source"])
    op.create_index("ix_jobs_repo", "jobs", ["repo"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_failure_class", "jobs", ["failure_class"])
    op.create_index("idx_jobs_status_updated", "jobs", ["status", "updated_at"])

    op.create_table(
        "job_checkpoints",
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("checkpoint_id"),
    )
    op.create_index("ix_job_checkpoints_job_id", "job_checkpoints", ["job_id"])

    op.create_table(
        "job_questions",
        sa.Column("question_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("prompt_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("delivery_targets_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("asked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(
            ["checkpoint_id"],
            ["job_checkpoints.checkpoint_id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("question_id"),
    )
    op.create_index("ix_job_questions_job_id", "job_questions", ["job_id"])
    op.create_index(
        "idx_job_questions_status_expires",
        "job_questions",
        ["status", "expires_at"],
    )
    op.create_index(
        "uq_job_questions_one_open_per_job",
        "job_questions",
        ["job_id"],
        unique=True,
        sqlite_where=sa.text("status = 'open'"),
    )

    op.create_table(
        "job_answers",
        sa.Column("answer_id", sa.String(), nullable=False),
        sa.Column("question_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("responder_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("source_event_id", sa.String(), nullable=False),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["question_id"],
            ["job_questions.question_id"],
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("answer_id"),
        sa.UniqueConstraint("question_id", name="uq_job_answers_question"),
    )
    op.create_index("ix_job_answers_job_id", "job_answers", ["job_id"])
    op.create_index(
        "idx_job_answers_question_event",
        "job_answers",
        ["question_id", "source_event_id"],
    )

    op.create_table(
        "job_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("event_id"),
        sa.UniqueConstraint("job_id", "sequence", name="uq_job_events_job_sequence"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])
    op.create_index("ix_job_events_kind", "job_events", ["kind"])


def downgrade() -> None:
    op.drop_table("job_events")
    op.drop_table("job_answers")
    op.drop_table("job_questions")
    op.drop_table("job_checkpoints")
    op.drop_table("jobs")
