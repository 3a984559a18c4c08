"""Operator notifications about hand-overs and orphaned work."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from agent_handoff.orchestrator.errors import DeliveryFailureError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2


class Notifier(Protocol):
    def notify(self, text: str, *, source: str) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log; used when no endpoint is configured."""

    def notify(self, text: str, *, source: str) -> None:
        logger.info("[%s] %s", source, text)


class HttpNotifier:
    """Posts ``{"text", "source"}`` JSON to a notification endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def notify(self, text: str, *, source: str) -> None:
        try:
            response = self._client.post(self.url, json={"text": text, "source": source})
        except httpx.TimeoutException as exc:
            logger.warning("Timeout posting notification to %s", self.url)
            raise DeliveryFailureError(f"Notification timed out: {self.url}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error posting notification to %s: %s", self.url, exc)
            raise DeliveryFailureError(f"Notification failed: {exc}") from exc
        if not response.is_success:
            raise DeliveryFailureError(
                f"Notification endpoint returned HTTP {response.status_code}",
            )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpNotifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
