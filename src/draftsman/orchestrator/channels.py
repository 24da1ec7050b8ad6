"""Channel adapters selected by channel tag.

An adapter is anything with ``deliver(message) -> DeliveryResult``; the
registry maps tags such as ``trello``, ``slack`` or ``mcp`` to adapters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

from draftsman.orchestrator.models import NotificationMessage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(slots=True)
class DeliveryResult:
    ok: bool
    error: str | None = None
    retryable: bool = True

    @classmethod
    def delivered(cls) -> DeliveryResult:
        return cls(ok=True)

    @classmethod
    def failed(cls, error: str, *, retryable: bool = True) -> DeliveryResult:
        return cls(ok=False, error=error, retryable=retryable)


class ChannelAdapter(Protocol):
    def deliver(self, message: NotificationMessage) -> DeliveryResult:
        """Send one notification to the channel."""


class ChannelRegistry:
    """Adapters by tag; ``fallback`` builds one for tags nobody configured."""

    def __init__(
        self,
        adapters: dict[str, ChannelAdapter] | None = None,
        *,
        fallback: Callable[[str], ChannelAdapter] | None = None,
    ) -> None:
        self._adapters: dict[str, ChannelAdapter] = dict(adapters or {})
        self._fallback = fallback

    def register(self, tag: str, adapter: ChannelAdapter) -> None:
        self._adapters[tag] = adapter

    def get(self, tag: str) -> ChannelAdapter | None:
        adapter = self._adapters.get(tag)
        if adapter is None and self._fallback is not None:
            adapter = self._fallback(tag)
            self._adapters[tag] = adapter
        return adapter

    def tags(self) -> list[str]:
        return sorted(self._adapters)

    def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()


class LogChannelAdapter:
    """Writes notifications to the log; the default for unconfigured channels."""

    def __init__(self, tag: str) -> None:
        self.tag = tag

    def deliver(self, message: NotificationMessage) -> DeliveryResult:
        logger.info(
            "[%s] %s notification for job %s: %s",
            self.tag,
            message.kind.value,
            message.job_id,
            message.payload,
        )
        return DeliveryResult.delivered()


class WebhookChannelAdapter:
    """POSTs the notification JSON to a channel webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=5.0))

    def deliver(self, message: NotificationMessage) -> DeliveryResult:
        try:
            response = self._client.post(self.url, json=message.to_payload())
        except httpx.TimeoutException:
            logger.warning("Timeout delivering %s to %s", message.kind.value, self.url)
            return DeliveryResult.failed(f"timeout posting to {self.url}")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error delivering %s to %s: %s", message.kind.value, self.url, exc)
            return DeliveryResult.failed(f"transport error: {exc}")

        if response.status_code >= 500:  # noqa: PLR2004
            return DeliveryResult.failed(f"webhook returned {response.status_code}")
        if response.status_code >= 400:  # noqa: PLR2004
            return DeliveryResult.failed(
                f"webhook rejected notification with {response.status_code}",
                retryable=False,
            )
        return DeliveryResult.delivered()

    def close(self) -> None:
        self._client.close()
