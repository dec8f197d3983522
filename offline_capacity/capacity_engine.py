"""Offline capacity adaptation engine.

Decides how much capacity the node manager advertises to the offline
workload and when to change it. Each cycle clamps the predicted
candidate through the adapter pipeline, classifies it as no change,
immediate shrink or throttled growth, applies it through the control
plane and then verifies the node manager is still alive.

Usage::

    engine = build_engine_from_settings(load_settings(), control_plane, disk_probe)
    engine.init()
    engine.recover()
    engine.start(stop_event)
    engine.adapt_and_apply(ResourceAllocation(cpu=8000, memory=16384), [])
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Sequence

from offline_capacity.alarm import AlarmSink, LoggingAlarmSink, WebhookAlarmSink
from offline_capacity.checkpoint import CheckpointStore, FileCheckpointStore
from offline_capacity.config import EngineSettings
from offline_capacity.control_plane import NodeManagerControlPlane
from offline_capacity.errors import CapacityEngineError
from offline_capacity.logging_setup import configure_logging
from offline_capacity.framework.adapters import (
    AdapterPipeline,
    DiskCpuAdapter,
    DiskProbe,
    MinCompareAdapter,
    OverCommitAdapter,
    ResourceReserveAdapter,
    RoundOffAdapter,
)
from offline_capacity.framework.hysteresis import range_resource
from offline_capacity.framework.lifecycle import LifecycleRunner, Runnable
from offline_capacity.framework.liveness import LivenessResult, LivenessSupervisor
from offline_capacity.framework.schedule_state import ScheduleStateMachine
from offline_capacity.framework.throttle import CapacityIncreaseThrottle
from offline_capacity.metrics import MetricsExporter, NodeMetrics
from offline_capacity.models import (
    CPU_UNIT,
    CapacityDecision,
    NMCapacity,
    OfflineJob,
    RangeResource,
    ResourceAllocation,
)

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


class CapacityDecisionEngine:
    """Classifies a candidate allocation against the enforced capacity."""

    def __init__(
        self,
        pipeline: AdapterPipeline,
        control_plane: NodeManagerControlPlane,
        resource_range: RangeResource,
    ) -> None:
        self._pipeline = pipeline
        self._control_plane = control_plane
        self._resource_range = resource_range

    def decide(self, candidate: ResourceAllocation, is_conflicting: bool) -> CapacityDecision:
        reached_min = self._pipeline.adapt(candidate)

        # Conflicts are resolved immediately, even at the floor.
        if is_conflicting:
            return CapacityDecision(changed=True, is_increase=False, reached_minimum=reached_min)

        try:
            current = self._control_plane.get_capacity()
        except CapacityEngineError as exc:
            LOGGER.error("get capacity from nodemanager err: %s", exc)
            return CapacityDecision(changed=True, is_increase=True, reached_minimum=reached_min)

        if reached_min:
            floor = self._control_plane.get_min_capacity()
            if current == floor:
                LOGGER.debug("capacity has already in min capacity, no need to update")
                return CapacityDecision(changed=False, is_increase=False, reached_minimum=True)
            LOGGER.info("capacity(%s) will be set min capacity(%s)", current, dict(candidate))
            return CapacityDecision(changed=True, is_increase=False, reached_minimum=True)

        cpu = candidate.cpu
        mem = candidate.memory
        range_cpu, range_mem = range_resource(self._resource_range, current)
        if abs(cpu - current.millicores) <= range_cpu and abs(mem - current.memory_mb) <= range_mem:
            LOGGER.debug(
                "new resource(mem:%d, cpu:%d) is in available range (%.0f, %.0f), still using old values: %s",
                mem,
                cpu,
                range_mem,
                range_cpu,
                current,
            )
            return CapacityDecision(changed=False, is_increase=False)

        # Only growth on every kind counts as an increase.
        is_increase = cpu > current.millicores and mem > current.memory_mb
        return CapacityDecision(changed=True, is_increase=is_increase)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class OfflineCapacityEngine:
    """Node-local capacity controller for the offline workload."""

    name = "ModuleResourceYarn"

    def __init__(
        self,
        control_plane: NodeManagerControlPlane,
        pipeline: AdapterPipeline,
        resource_range: RangeResource,
        throttle: CapacityIncreaseThrottle,
        schedule: ScheduleStateMachine,
        liveness: LivenessSupervisor,
        metrics: NodeMetrics,
        background: Sequence[Runnable] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._control_plane = control_plane
        self._decider = CapacityDecisionEngine(pipeline, control_plane, resource_range)
        self._throttle = throttle
        self._schedule = schedule
        self._liveness = liveness
        self._metrics = metrics
        self._clock = clock
        self._runner = LifecycleRunner((*background, *pipeline.adapters))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, stop_event: threading.Event | None = None) -> bool:
        """Wait until the node manager container answers status queries."""
        return self._liveness.wait_until_ready(stop_event)

    def start(self, stop_event: threading.Event) -> None:
        self._runner.start(stop_event)

    def stop(self, timeout: float = 5.0) -> bool:
        return self._runner.stop(timeout)

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    def decide(self, candidate: ResourceAllocation, is_conflicting: bool) -> CapacityDecision:
        return self._decider.decide(candidate, is_conflicting)

    def adapt_and_apply(
        self,
        allocation: ResourceAllocation,
        conflicting_resources: Sequence[str] = (),
    ) -> None:
        """Run one adaptation cycle.

        A failed apply is re-raised after the liveness check has run.
        """
        apply_error: CapacityEngineError | None = None
        try:
            self._update_capacity(allocation, conflicting_resources)
        except CapacityEngineError as exc:
            LOGGER.error("update capacity err: %s", exc)
            apply_error = exc

        self.check_liveness()

        if apply_error is not None:
            raise apply_error

    def try_apply(
        self,
        expected: NMCapacity,
        conflicting_resources: Sequence[str],
        is_increase: bool,
    ) -> bool:
        """Hand ``expected`` to the control plane unless growth is throttled.

        Returns True if the control plane was asked to apply it.
        """
        now = self._clock()
        if is_increase:
            if not self._throttle.allows_increase(now):
                LOGGER.info(
                    "checking increasing capacity, while too frequently (%.0fs left), nothing to do",
                    self._throttle.seconds_until_allowed(now),
                )
                self._best_effort(self._metrics.record_increase_throttled)
                return False
            LOGGER.info("increasing nodemanager capacity resource: %s", expected)
            self._control_plane.ensure_capacity(expected, conflicting_resources, False)
            self._throttle.record_increase(now)
        else:
            LOGGER.info("decreasing nodemanager capacity resource: %s (conflicting=%s)", expected, list(conflicting_resources))
            self._control_plane.ensure_capacity(expected, conflicting_resources, True)
        self._best_effort(self._metrics.record_capacity_change)
        return True

    def check_liveness(self) -> LivenessResult:
        return self._liveness.check_and_restart()

    def _update_capacity(self, allocation: ResourceAllocation, conflicting_resources: Sequence[str]) -> None:
        decision = self._decider.decide(allocation, len(conflicting_resources) > 0)
        self._best_effort(self._metrics.reset_offline_resource, allocation)
        if not decision.changed:
            LOGGER.debug("no need to change node resource capacity")
            return
        LOGGER.info("node resource will change to %s", dict(allocation))
        expected = NMCapacity.from_allocation(allocation)
        self.try_apply(expected, conflicting_resources, decision.is_increase)

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    @property
    def schedule_disabled(self) -> bool:
        return self._schedule.disabled

    def disable_scheduling(self) -> None:
        self._schedule.disable()

    def enable_scheduling(self) -> None:
        self._schedule.enable()

    def recover(self) -> None:
        """Replay the schedule checkpoint at startup."""
        try:
            self._schedule.recover()
        except CapacityEngineError as exc:
            LOGGER.error("recover schedule state err: %s", exc)
            raise

    # ------------------------------------------------------------------
    # Offline jobs
    # ------------------------------------------------------------------

    def get_offline_jobs(self) -> list[OfflineJob]:
        return self._control_plane.get_allocated_jobs()

    def kill_offline_job(self, conflicting_resource: str) -> None:
        self._control_plane.kill_container(conflicting_resource)

    @staticmethod
    def _best_effort(fn: Callable[..., None], *args: object) -> None:
        try:
            fn(*args)
        except Exception as exc:
            LOGGER.warning("metrics side channel failed: %s", exc)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_engine(
    settings: EngineSettings,
    control_plane: NodeManagerControlPlane,
    checkpoint: CheckpointStore,
    alarm: AlarmSink,
    metrics: NodeMetrics,
    disk_probe: DiskProbe,
    node_cpu_milli: int | None = None,
) -> OfflineCapacityEngine:
    """Wire the engine with adapters in their required order."""
    if node_cpu_milli is None:
        node_cpu_milli = (os.cpu_count() or 1) * CPU_UNIT

    pipeline = AdapterPipeline([
        MinCompareAdapter(control_plane),
        OverCommitAdapter(settings.over_commit, node_cpu_milli),
        ResourceReserveAdapter(settings.reserve),
        RoundOffAdapter(settings.round_off),
        DiskCpuAdapter(disk_probe, settings.disk_cpu),
    ], floor=control_plane.get_min_capacity)

    background: list[Runnable] = []
    if settings.metrics_textfile_path:
        background.append(MetricsExporter(
            metrics.registry,
            settings.metrics_textfile_path,
            settings.metrics_interval_seconds,
        ))

    return OfflineCapacityEngine(
        control_plane=control_plane,
        pipeline=pipeline,
        resource_range=settings.resource_range,
        throttle=CapacityIncreaseThrottle(settings.capacity_inc_interval_seconds),
        schedule=ScheduleStateMachine(control_plane, checkpoint, alarm, metrics),
        liveness=LivenessSupervisor(
            control_plane,
            alarm,
            settings.liveness,
            on_restart=metrics.record_restart,
        ),
        metrics=metrics,
        background=background,
    )


def build_alarm_sink(settings: EngineSettings) -> AlarmSink:
    if settings.alarm_webhook_url:
        return WebhookAlarmSink(settings.alarm_webhook_url)
    return LoggingAlarmSink()


def build_engine_from_settings(
    settings: EngineSettings,
    control_plane: NodeManagerControlPlane,
    disk_probe: DiskProbe,
    node_cpu_milli: int | None = None,
    metrics: NodeMetrics | None = None,
) -> OfflineCapacityEngine:
    """Configure logging and wire the engine's file and alarm collaborators.

    The schedule checkpoint lives at ``settings.checkpoint_path``. Alarms go
    to ``settings.alarm_webhook_url`` when set, otherwise to the log.
    """
    configure_logging(settings.log_level)
    alarm = build_alarm_sink(settings)
    LOGGER.info(
        "building offline capacity engine (checkpoint=%s, alarm=%s)",
        settings.checkpoint_path,
        type(alarm).__name__,
    )
    return build_engine(
        settings,
        control_plane,
        FileCheckpointStore(settings.checkpoint_path),
        alarm,
        metrics or NodeMetrics(),
        disk_probe,
        node_cpu_milli=node_cpu_milli,
    )
