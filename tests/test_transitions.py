from __future__ import annotations

import allure
import pytest

from draftsman.orchestrator.errors import IllegalTransitionError
from draftsman.orchestrator.models import TERMINAL_STATUSES, JobStatus
from draftsman.orchestrator.transitions import LEGAL_TRANSITIONS, ensure_legal, is_legal, path_to

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("State Machine"),
]

EXPECTED_EDGES = {
    (JobStatus.QUEUED, JobStatus.RUNNING),
    (JobStatus.QUEUED, JobStatus.CANCELED),
    (JobStatus.RUNNING, JobStatus.WAITING_FOR_INPUT),
    (JobStatus.RUNNING, JobStatus.COMPLETED),
    (JobStatus.RUNNING, JobStatus.FAILED),
    (JobStatus.RUNNING, JobStatus.CANCELED),
    (JobStatus.WAITING_FOR_INPUT, JobStatus.RESUMED),
    (JobStatus.WAITING_FOR_INPUT, JobStatus.CANCELED),
    (JobStatus.WAITING_FOR_INPUT, JobStatus.EXPIRED),
    (JobStatus.RESUMED, JobStatus.RUNNING),
}


def test_edge_table_matches_the_lifecycle() -> None:
    edges = {
        (status_from, status_to)
        for status_from, targets in LEGAL_TRANSITIONS.items()
        for status_to in targets
    }
    assert edges == EXPECTED_EDGES
    assert set(LEGAL_TRANSITIONS) == set(JobStatus)


@pytest.mark.parametrize("status_from", list(JobStatus))
@pytest.mark.parametrize("status_to", list(JobStatus))
def test_is_legal_agrees_with_ensure_legal(status_from: JobStatus, status_to: JobStatus) -> None:
    if (status_from, status_to) in EXPECTED_EDGES:
        assert is_legal(status_from, status_to)
        ensure_legal(status_from, status_to)
    else:
        assert not is_legal(status_from, status_to)
        with pytest.raises(IllegalTransitionError):
            ensure_legal(status_from, status_to)


def test_terminal_states_have_no_outgoing_edges() -> None:
    for status in TERMINAL_STATUSES:
        assert LEGAL_TRANSITIONS[status] == frozenset()


def test_path_to_walks_through_running_for_forced_failure() -> None:
    assert path_to(JobStatus.QUEUED, JobStatus.FAILED) == [JobStatus.RUNNING, JobStatus.FAILED]
    assert path_to(JobStatus.RESUMED, JobStatus.CANCELED) == [
        JobStatus.RUNNING,
        JobStatus.CANCELED,
    ]
    assert path_to(JobStatus.WAITING_FOR_INPUT, JobStatus.EXPIRED) == [JobStatus.EXPIRED]


def test_path_to_rejects_unreachable_targets() -> None:
    with pytest.raises(IllegalTransitionError):
        path_to(JobStatus.COMPLETED, JobStatus.RUNNING)
    with pytest.raises(IllegalTransitionError):
        path_to(JobStatus.RESUMED, JobStatus.QUEUED)
