"""Operator alarm delivery.

Alarms are fire-and-forget: a sink never raises into the caller.
"""

from __future__ import annotations

import logging
import socket
import time
from abc import ABC, abstractmethod

import httpx

LOGGER = logging.getLogger(__name__)


class AlarmSink(ABC):
    @abstractmethod
    def send_alarm(self, message: str) -> None:
        raise NotImplementedError


class LoggingAlarmSink(AlarmSink):
    """Writes alarms to the log only."""

    def send_alarm(self, message: str) -> None:
        LOGGER.warning("ALARM: %s", message)


class WebhookAlarmSink(AlarmSink):
    """Posts alarms as JSON to an HTTP endpoint.

    Parameters
    ----------
    url:
        Endpoint receiving ``{"node", "message", "timestamp"}`` payloads.
    timeout_seconds:
        Per-request timeout. Default 5.
    node_name:
        Reported node name. Defaults to the host name.
    client:
        Optional pre-built ``httpx.Client`` (tests inject a mock transport).
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        node_name: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._node_name = node_name or socket.gethostname()
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def send_alarm(self, message: str) -> None:
        payload = {
            "node": self._node_name,
            "message": message,
            "timestamp": time.time(),
        }
        try:
            response = self._client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._failures += 1
            LOGGER.warning("alarm delivery to %s failed: %s (message=%r)", self._url, exc, message)
            return
        LOGGER.info("alarm sent: %s", message)

    def close(self) -> None:
        self._client.close()
