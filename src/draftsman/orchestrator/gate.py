"""Idempotency gate: at most one job per external event."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from draftsman.invocation import describe_invocation, parse_invocation_mode
from draftsman.orchestrator.errors import InvalidInputError
from draftsman.orchestrator.models import GateResult, JobCreate, JobMode
from draftsman.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)


def build_dedup_key(source: str, external_event_id: str) -> str:
    source = source.strip()
    external_event_id = external_event_id.strip()
    if not source or not external_event_id:
        raise InvalidInputError("source and external_event_id are required")
    return f"{source}:{external_event_id}"


@dataclass(slots=True)
class ExternalEvent:
    """An inbound trigger after signature checks and payload parsing."""

    source: str
    external_event_id: str
    mode: JobMode
    repo: str
    workspace_ref: str | None = None
    ticket_ref: str | None = None


class IdempotencyGate:
    def __init__(
        self,
        repository: JobRepository,
        *,
        secondary_channels: tuple[str, ...] = (),
    ) -> None:
        self.repository = repository
        self.secondary_channels = secondary_channels

    def create_or_get(self, dedup_key: str, builder: Callable[[], JobCreate]) -> GateResult:
        return self.repository.create_or_get(dedup_key=dedup_key, builder=builder)

    def accept(self, event: ExternalEvent) -> GateResult:
        dedup_key = build_dedup_key(event.source, event.external_event_id)
        if not event.repo.strip():
            raise InvalidInputError("repo is required")

        def builder() -> JobCreate:
            return JobCreate(
                source=event.source.strip(),
                external_event_id=event.external_event_id.strip(),
                mode=event.mode,
                repo=event.repo.strip(),
                workspace_ref=event.workspace_ref,
                ticket_ref=event.ticket_ref,
                secondary_channels=self.secondary_channels,
            )

        result = self.create_or_get(dedup_key, builder)
        if result.deduped:
            logger.info("Duplicate event %s maps to job %s", dedup_key, result.job.job_id)
        return result

    def accept_invocation(  # noqa: PLR0913
        self,
        *,
        source: str,
        external_event_id: str,
        text: str | None,
        repo: str,
        workspace_ref: str | None = None,
        ticket_ref: str | None = None,
    ) -> GateResult:
        """Accept a ticket comment such as ``@draftsman fix``.

        Anything that is not a recognized invocation is rejected before a job
        or queue message exists.
        """

        mode = parse_invocation_mode(text)
        if mode is None:
            raise InvalidInputError(f"Unrecognized invocation; expected {describe_invocation()}")
        return self.accept(
            ExternalEvent(
                source=source,
                external_event_id=external_event_id,
                mode=mode,
                repo=repo,
                workspace_ref=workspace_ref,
                ticket_ref=ticket_ref,
            ),
        )
