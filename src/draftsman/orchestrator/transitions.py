"""Legal job state-machine edges."""

from __future__ import annotations

from draftsman.orchestrator.errors import IllegalTransitionError
from draftsman.orchestrator.models import JobStatus

LEGAL_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.WAITING_FOR_INPUT,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELED,
        },
    ),
    JobStatus.WAITING_FOR_INPUT: frozenset(
        {JobStatus.RESUMED, JobStatus.CANCELED, JobStatus.EXPIRED},
    ),
    JobStatus.RESUMED: frozenset({JobStatus.RUNNING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
    JobStatus.EXPIRED: frozenset(),
}


def is_legal(status_from: JobStatus, status_to: JobStatus) -> bool:
    return status_to in LEGAL_TRANSITIONS[status_from]


def ensure_legal(status_from: JobStatus, status_to: JobStatus) -> None:
    if not is_legal(status_from, status_to):
        raise IllegalTransitionError(status_from, status_to)


def path_to(status_from: JobStatus, status_to: JobStatus) -> list[JobStatus]:
    """Shortest chain of legal edges from one status to another (excluding start).

    Used when a terminal state has to be forced from a status that has no
    direct edge to it, for example ``queued -> running -> failed``.
    """

    frontier: list[list[JobStatus]] = [[status_from]]
    seen = {status_from}
    while frontier:
        path = frontier.pop(0)
        for candidate in sorted(LEGAL_TRANSITIONS[path[-1]], key=lambda item: item.value):
            if candidate in seen:
                continue
            next_path = [*path, candidate]
            if candidate == status_to:
                return next_path[1:]
            seen.add(candidate)
            frontier.append(next_path)
    raise IllegalTransitionError(status_from, status_to)
