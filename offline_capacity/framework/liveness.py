"""Node manager liveness supervision.

Restarts a dead node manager once per check and verifies it came back.
A restart that does not take is escalated through the alarm sink rather
than retried.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

from offline_capacity.alarm import AlarmSink
from offline_capacity.config import LivenessSettings
from offline_capacity.control_plane import NodeManagerControlPlane
from offline_capacity.errors import CapacityEngineError

LOGGER = logging.getLogger(__name__)


class LivenessResult(Enum):
    RUNNING = "running"
    RESTARTED = "restarted"
    START_FAILED = "start_failed"
    NOT_RECOVERED = "not_recovered"
    STATUS_ERROR = "status_error"


class LivenessSupervisor:
    def __init__(
        self,
        control_plane: NodeManagerControlPlane,
        alarm: AlarmSink,
        settings: LivenessSettings | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        on_restart: Callable[[], None] | None = None,
    ) -> None:
        self._control_plane = control_plane
        self._alarm = alarm
        self._settings = settings or LivenessSettings()
        self._sleep = sleep_fn
        self._on_restart = on_restart

    def wait_until_ready(self, stop_event: threading.Event | None = None) -> bool:
        """Block until the node manager answers a status query.

        Retries forever at ``ready_poll_seconds``. Returns False only if
        ``stop_event`` is set first.
        """
        interval = self._settings.ready_poll_seconds
        attempts = 0
        while stop_event is None or not stop_event.is_set():
            attempts += 1
            try:
                self._control_plane.get_status()
            except CapacityEngineError as exc:
                LOGGER.debug("nodemanager container not ready (attempt %d): %s", attempts, exc)
            else:
                LOGGER.info("nodemanager container ready after %d attempt(s)", attempts)
                return True
            if stop_event is None:
                self._sleep(interval)
            else:
                stop_event.wait(interval)
        return False

    def check_and_restart(self) -> LivenessResult:
        grace = self._settings.restart_grace_seconds
        try:
            running = self._control_plane.get_status()
        except CapacityEngineError as exc:
            LOGGER.error("nodemanager status err when checking: %s", exc)
            return LivenessResult.STATUS_ERROR
        if running:
            return LivenessResult.RUNNING

        LOGGER.info("nodemanager is not running, try restarting")
        try:
            self._control_plane.start_process()
        except CapacityEngineError as exc:
            LOGGER.error("start nodemanager err when checking: %s", exc)
            return LivenessResult.START_FAILED
        if self._on_restart is not None:
            try:
                self._on_restart()
            except Exception as exc:
                LOGGER.warning("restart metric side channel failed: %s", exc)

        LOGGER.info("nodemanager restart successfully, check again after %.1fs", grace)
        self._sleep(grace)
        try:
            running = self._control_plane.get_status()
        except CapacityEngineError as exc:
            LOGGER.error("nodemanager status check err after %.1fs: %s", grace, exc)
            return LivenessResult.STATUS_ERROR
        if not running:
            msg = f"nodemanager restart successfully, while not running after {grace:.0f}s"
            LOGGER.error(msg)
            try:
                self._alarm.send_alarm(msg)
            except Exception as exc:
                LOGGER.warning("alarm side channel failed: %s", exc)
            return LivenessResult.NOT_RECOVERED
        return LivenessResult.RESTARTED
