"""Parsing of ``@draftsman <mode>`` ticket comments."""

from __future__ import annotations

from draftsman.orchestrator.models import JobMode

INVOCATION_PREFIX = "@draftsman"


def parse_invocation_mode(text: str | None) -> JobMode | None:
    """Return the requested mode, or None when the text is not an invocation."""

    if text is None:
        return None
    normalized = text.strip().lower()
    for mode in JobMode:
        if normalized == f"{INVOCATION_PREFIX} {mode.value}":
            return mode
    return None


def describe_invocation() -> str:
    return " | ".join(f"{INVOCATION_PREFIX} {mode.value}" for mode in JobMode)


def mode_support_line() -> str:
    return f"[worker] mode support: {describe_invocation()}"
