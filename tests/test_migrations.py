from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError

from draftsman.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Job State Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    try:
        repository.init_schema()
        repository.init_schema()

        with repository.engine.connect() as connection:
            versions = connection.execute(text("SELECT version_num FROM alembic_version")).all()
        assert [row[0] for row in versions] == ["20261019_0002"]

        tables = set(inspect(repository.engine).get_table_names())
        assert {
            "jobs",
            "job_checkpoints",
            "job_questions",
            "job_answers",
            "job_events",
            "queue_messages",
        } <= tables
    finally:
        repository.close()


def test_sqlite_runs_in_wal_mode(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "wal.db")
    try:
        repository.init_schema()
        with repository.engine.connect() as connection:
            mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
        assert str(mode).lower() == "wal"
    finally:
        repository.close()


def test_jobs_with_history_cannot_be_deleted(repository, submit_job) -> None:
    job = submit_job("keep").job

    with pytest.raises(IntegrityError), repository.engine.begin() as connection:
        connection.execute(text("DELETE FROM jobs WHERE job_id = :job_id"), {"job_id": job.job_id})

    assert repository.require_job(job.job_id).status == job.status
    assert len(repository.audit.history(job.job_id)) == 1
