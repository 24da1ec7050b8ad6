"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_WORKER_POLL_MS = 5000.0


@dataclass(slots=True)
class LaneSettings:
    """Concurrency and retry policy of one queue lane."""

    concurrency: int
    max_attempts: int
    retry_base_seconds: float
    retry_max_seconds: float
    lease_seconds: int


@dataclass(slots=True)
class WorkerSettings:
    worker_id: str = "draftsman"
    poll_ms: float = DEFAULT_WORKER_POLL_MS
    graceful_shutdown_seconds: int = 30

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_ms / 1000.0


@dataclass(slots=True)
class RunnerSettings:
    """``command_template`` empty means the in-process echo runner."""

    command_template: str = ""
    workdir: Path = Path(".draftsman/runs")
    timeout_seconds: int = 1_800
    graceful_cancel_seconds: int = 10


@dataclass(slots=True)
class JobSettings:
    question_ttl_seconds: int = 86_400
    cancel_grace_seconds: int = 60
    secondary_channels: tuple[str, ...] = ()


@dataclass(slots=True)
class ChannelSettings:
    """Outbound delivery and inbound answer policy per channel tag."""

    webhook_urls: dict[str, str] = field(default_factory=dict)
    webhook_timeout_seconds: float = 10.0
    responder_allowlist: dict[str, frozenset[str]] = field(default_factory=dict)


def _default_orchestration() -> LaneSettings:
    return LaneSettings(
        concurrency=2,
        max_attempts=3,
        retry_base_seconds=30.0,
        retry_max_seconds=900.0,
        lease_seconds=2_100,
    )


def _default_notifications() -> LaneSettings:
    return LaneSettings(
        concurrency=8,
        max_attempts=5,
        retry_base_seconds=10.0,
        retry_max_seconds=600.0,
        lease_seconds=120,
    )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".draftsman.db")
    busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    orchestration: LaneSettings = field(default_factory=_default_orchestration)
    notifications: LaneSettings = field(default_factory=_default_notifications)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    channels: ChannelSettings = field(default_factory=ChannelSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DRAFTSMAN_DB_PATH", ".draftsman.db")),
            busy_timeout_ms=int(os.getenv("DRAFTSMAN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("DRAFTSMAN_LOG_LEVEL", "INFO").upper(),
            worker=WorkerSettings(
                worker_id=os.getenv("DRAFTSMAN_WORKER_ID", "draftsman"),
                poll_ms=resolve_worker_poll_ms(os.getenv("DRAFTSMAN_WORKER_POLL_MS")),
                graceful_shutdown_seconds=int(
                    os.getenv("DRAFTSMAN_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            orchestration=LaneSettings(
                concurrency=int(os.getenv("DRAFTSMAN_ORCHESTRATION_CONCURRENCY", "2")),
                max_attempts=int(os.getenv("DRAFTSMAN_ORCHESTRATION_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(
                    os.getenv("DRAFTSMAN_ORCHESTRATION_RETRY_BASE_SECONDS", "30"),
                ),
                retry_max_seconds=float(
                    os.getenv("DRAFTSMAN_ORCHESTRATION_RETRY_MAX_SECONDS", "900"),
                ),
                lease_seconds=int(os.getenv("DRAFTSMAN_ORCHESTRATION_LEASE_SECONDS", "2100")),
            ),
            notifications=LaneSettings(
                concurrency=int(os.getenv("DRAFTSMAN_NOTIFY_CONCURRENCY", "8")),
                max_attempts=int(os.getenv("DRAFTSMAN_NOTIFY_MAX_ATTEMPTS", "5")),
                retry_base_seconds=float(os.getenv("DRAFTSMAN_NOTIFY_RETRY_BASE_SECONDS", "10")),
                retry_max_seconds=float(os.getenv("DRAFTSMAN_NOTIFY_RETRY_MAX_SECONDS", "600")),
                lease_seconds=int(os.getenv("DRAFTSMAN_NOTIFY_LEASE_SECONDS", "120")),
            ),
            runner=RunnerSettings(
                command_template=os.getenv("DRAFTSMAN_RUNNER_COMMAND", ""),
                workdir=Path(os.getenv("DRAFTSMAN_RUNNER_WORKDIR", ".draftsman/runs")),
                timeout_seconds=int(os.getenv("DRAFTSMAN_RUNNER_TIMEOUT_SECONDS", "1800")),
                graceful_cancel_seconds=int(
                    os.getenv("DRAFTSMAN_RUNNER_GRACEFUL_CANCEL_SECONDS", "10"),
                ),
            ),
            jobs=JobSettings(
                question_ttl_seconds=int(os.getenv("DRAFTSMAN_QUESTION_TTL_SECONDS", "86400")),
                cancel_grace_seconds=int(os.getenv("DRAFTSMAN_CANCEL_GRACE_SECONDS", "60")),
                secondary_channels=_split_csv(os.getenv("DRAFTSMAN_SECONDARY_CHANNELS", "")),
            ),
            channels=ChannelSettings(
                webhook_urls=_collect_webhook_urls(),
                webhook_timeout_seconds=float(
                    os.getenv("DRAFTSMAN_WEBHOOK_TIMEOUT_SECONDS", "10"),
                ),
                responder_allowlist=_collect_responder_allowlist(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on invalid combinations."""

        for name, lane in (("ORCHESTRATION", self.orchestration), ("NOTIFY", self.notifications)):
            if lane.concurrency < 1:
                raise ValueError(f"DRAFTSMAN_{name}_CONCURRENCY must be >= 1.")
            if lane.max_attempts < 1:
                raise ValueError(f"DRAFTSMAN_{name}_MAX_ATTEMPTS must be >= 1.")
            if lane.retry_base_seconds < 0 or lane.retry_max_seconds < lane.retry_base_seconds:
                raise ValueError(
                    f"DRAFTSMAN_{name}_RETRY_BASE_SECONDS must be >= 0 and "
                    f"<= DRAFTSMAN_{name}_RETRY_MAX_SECONDS.",
                )
            if lane.lease_seconds <= 0:
                raise ValueError(f"DRAFTSMAN_{name}_LEASE_SECONDS must be > 0.")
        if self.runner.timeout_seconds <= 0:
            raise ValueError("DRAFTSMAN_RUNNER_TIMEOUT_SECONDS must be > 0.")
        if self.orchestration.lease_seconds <= self.runner.timeout_seconds:
            raise ValueError(
                "DRAFTSMAN_ORCHESTRATION_LEASE_SECONDS must exceed "
                "DRAFTSMAN_RUNNER_TIMEOUT_SECONDS, otherwise running jobs are redelivered.",
            )
        if self.jobs.question_ttl_seconds <= 0:
            raise ValueError("DRAFTSMAN_QUESTION_TTL_SECONDS must be > 0.")
        if self.jobs.cancel_grace_seconds < 0:
            raise ValueError("DRAFTSMAN_CANCEL_GRACE_SECONDS must be >= 0.")
        if self.busy_timeout_ms <= 0:
            raise ValueError("DRAFTSMAN_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        for channel, url in self.channels.webhook_urls.items():
            _validate_webhook_url(channel, url)


def resolve_worker_poll_ms(value: str | None) -> float:
    """Parse the poll interval; anything unusable falls back to 5000 ms."""

    try:
        parsed = float(value) if value is not None else math.nan
    except ValueError:
        return DEFAULT_WORKER_POLL_MS
    if not math.isfinite(parsed) or parsed <= 0:
        return DEFAULT_WORKER_POLL_MS
    return parsed


def _split_csv(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _collect_webhook_urls() -> dict[str, str]:
    raw = os.getenv("DRAFTSMAN_CHANNEL_WEBHOOKS", "").strip()
    urls: dict[str, str] = {}
    for token in _split_csv(raw):
        if "|" not in token:
            raise ValueError(
                "Invalid DRAFTSMAN_CHANNEL_WEBHOOKS entry: "
                f"{token!r}. Expected format '<channel>|<url>'.",
            )
        channel, url = token.split("|", 1)
        urls[channel.strip()] = url.strip()
    return urls


def _collect_responder_allowlist() -> dict[str, frozenset[str]]:
    raw = os.getenv("DRAFTSMAN_RESPONDER_ALLOWLIST", "").strip()
    allowlist: dict[str, frozenset[str]] = {}
    for token in _split_csv(raw):
        if "|" not in token:
            raise ValueError(
                "Invalid DRAFTSMAN_RESPONDER_ALLOWLIST entry: "
                f"{token!r}. Expected format '<channel>|<id>[;<id>...]'.",
            )
        channel, ids_raw = token.split("|", 1)
        ids = frozenset(part.strip() for part in ids_raw.split(";") if part.strip())
        allowlist[channel.strip()] = ids
    return allowlist


def _validate_webhook_url(channel: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid webhook URL for channel {channel!r}: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
