"""Offline schedule enable/disable state machine.

Every transition runs under the write side of a reader/writer lock in a
fixed order: alarm, control plane command, in-memory flag, metric,
checkpoint. A failing control plane command aborts the transition
before the flag moves, so the recorded state never runs ahead of the
node manager. Repeating a transition is a no-op.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from offline_capacity.alarm import AlarmSink
from offline_capacity.checkpoint import CheckpointStore
from offline_capacity.control_plane import NodeManagerControlPlane
from offline_capacity.errors import CapacityEngineError
from offline_capacity.metrics import NodeMetrics

LOGGER = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers are preferred."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ScheduleStateMachine:
    def __init__(
        self,
        control_plane: NodeManagerControlPlane,
        checkpoint: CheckpointStore,
        alarm: AlarmSink,
        metrics: NodeMetrics,
    ) -> None:
        self._control_plane = control_plane
        self._checkpoint = checkpoint
        self._alarm = alarm
        self._metrics = metrics
        self._disabled = False
        self._lock = ReadWriteLock()

    @property
    def disabled(self) -> bool:
        with self._lock.read():
            return self._disabled

    def disable(self) -> None:
        """Stop offline scheduling. Raises ``ControlPlaneError`` on failure."""
        with self._lock.write():
            if self._disabled:
                LOGGER.debug("schedule is already closed")
                return
            self._transition(
                disabled=True,
                alarm_message="schedule is closing",
                command=self._control_plane.disable_scheduling,
            )

    def enable(self) -> None:
        """Resume offline scheduling. Raises ``ControlPlaneError`` on failure."""
        with self._lock.write():
            if not self._disabled:
                LOGGER.debug("schedule is already open")
                return
            self._transition(
                disabled=False,
                alarm_message="schedule is opening",
                command=self._control_plane.enable_scheduling,
            )

    def recover(self) -> None:
        """Replay the persisted state after a restart.

        A checkpoint saying scheduling was disabled is re-asserted against
        the control plane, which also re-sends the alarm.
        """
        self._best_effort("metric", self._metrics.set_schedule_disabled, 0)
        disabled = self._checkpoint.recover()
        if not disabled:
            LOGGER.info("schedule checkpoint: enabled")
            return
        LOGGER.warning("schedule checkpoint: disabled before restart, disabling again")
        self.disable()

    def _transition(self, disabled: bool, alarm_message: str, command: Callable[[], None]) -> None:
        self._best_effort("alarm", self._alarm.send_alarm, alarm_message)
        LOGGER.info(alarm_message)
        try:
            command()
        except CapacityEngineError as exc:
            LOGGER.error("%s schedule err: %s", "disable" if disabled else "enable", exc)
            raise
        self._disabled = disabled
        self._best_effort("metric", self._metrics.set_schedule_disabled, 1 if disabled else 0)
        try:
            self._checkpoint.store(disabled)
        except CapacityEngineError as exc:
            LOGGER.error("store schedule checkpoint (disabled=%s) err: %s", disabled, exc)

    @staticmethod
    def _best_effort(channel: str, fn: Callable[..., None], *args: object) -> None:
        try:
            fn(*args)
        except Exception as exc:
            LOGGER.warning("%s side channel failed: %s", channel, exc)
