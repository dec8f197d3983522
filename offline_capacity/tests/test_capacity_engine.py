"""Tests for the offline capacity adaptation engine."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from offline_capacity.alarm import LoggingAlarmSink, WebhookAlarmSink
from offline_capacity.checkpoint import FileCheckpointStore
from offline_capacity.config import (
    DiskCpuSettings,
    EngineSettings,
    LivenessSettings,
    ReserveSettings,
    RoundOffSettings,
)
from offline_capacity.capacity_engine import (
    CapacityDecisionEngine,
    OfflineCapacityEngine,
    build_alarm_sink,
    build_engine,
    build_engine_from_settings,
)
from offline_capacity.errors import ControlPlaneError
from offline_capacity.framework.adapters import AdapterPipeline, MinCompareAdapter
from offline_capacity.framework.liveness import LivenessResult, LivenessSupervisor
from offline_capacity.framework.schedule_state import ScheduleStateMachine
from offline_capacity.framework.throttle import CapacityIncreaseThrottle
from offline_capacity.metrics import (
    CAPACITY_INCREASE_THROTTLED,
    OFFLINE_RESOURCE_PREFIX,
    NodeMetrics,
)
from offline_capacity.models import NMCapacity, OfflineJob, RangeResource, RangeSpec, ResourceAllocation
from offline_capacity.tests.fakes import FakeClock, FakeControlPlane, MemoryCheckpoint, RecordingAlarm

RANGE_10PCT = RangeResource(cpu_milli=RangeSpec(ratio=0.1), memory_mb=RangeSpec(ratio=0.1))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _decider(cp: FakeControlPlane, adapters=(), resource_range: RangeResource = RANGE_10PCT) -> CapacityDecisionEngine:
    return CapacityDecisionEngine(AdapterPipeline(adapters), cp, resource_range)


def _engine(
    cp: FakeControlPlane | None = None,
    *,
    interval: float = 600.0,
    clock: FakeClock | None = None,
    adapters=(),
    checkpoint: MemoryCheckpoint | None = None,
    alarm: RecordingAlarm | None = None,
):
    cp = cp or FakeControlPlane()
    clock = clock or FakeClock()
    alarm = alarm or RecordingAlarm()
    metrics = NodeMetrics()
    engine = OfflineCapacityEngine(
        control_plane=cp,
        pipeline=AdapterPipeline(adapters),
        resource_range=RANGE_10PCT,
        throttle=CapacityIncreaseThrottle(interval, now=clock()),
        schedule=ScheduleStateMachine(cp, checkpoint or MemoryCheckpoint(), alarm, metrics),
        liveness=LivenessSupervisor(cp, alarm, LivenessSettings(), sleep_fn=lambda _s: None),
        metrics=metrics,
        clock=clock,
    )
    return engine, cp, clock, metrics


def _alloc(cpu: int, memory: int) -> ResourceAllocation:
    return ResourceAllocation(cpu=cpu, memory=memory)


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


class TestDecide:
    def test_within_band_no_change(self) -> None:
        decision = _decider(FakeControlPlane()).decide(_alloc(4300, 8500), False)
        assert decision.changed is False

    def test_cpu_outside_band_changes(self) -> None:
        decision = _decider(FakeControlPlane()).decide(_alloc(5000, 8500), False)
        assert decision.changed is True
        assert decision.is_increase is True

    def test_memory_outside_band_changes(self) -> None:
        decision = _decider(FakeControlPlane()).decide(_alloc(4100, 12000), False)
        assert decision.changed is True

    def test_one_sided_increase_is_not_increase(self) -> None:
        decision = _decider(FakeControlPlane()).decide(_alloc(5000, 7000), False)
        assert decision.changed is True
        assert decision.is_increase is False

    def test_memory_only_growth_is_not_increase(self) -> None:
        decision = _decider(FakeControlPlane()).decide(_alloc(4000, 12000), False)
        assert decision.changed is True
        assert decision.is_increase is False

    def test_shrink_is_not_increase(self) -> None:
        decision = _decider(FakeControlPlane()).decide(_alloc(2000, 4096), False)
        assert decision.changed is True
        assert decision.is_increase is False

    @pytest.mark.parametrize("cpu,memory", [(4000, 8192), (4300, 8500), (100000, 100000), (0, 0)])
    def test_conflict_always_changes_without_increase(self, cpu: int, memory: int) -> None:
        cp = FakeControlPlane()
        decision = _decider(cp).decide(_alloc(cpu, memory), True)
        assert decision.changed is True
        assert decision.is_increase is False
        assert cp.count("get_capacity") == 0

    def test_capacity_query_failure_fails_open(self) -> None:
        cp = FakeControlPlane()
        cp.capacity_error = "nm webapp timeout"
        decision = _decider(cp).decide(_alloc(4000, 8192), False)
        assert decision.changed is True
        assert decision.is_increase is True

    def test_floor_already_reached_no_change(self) -> None:
        floor = NMCapacity(vcores=1, millicores=1000, memory_mb=1024)
        cp = FakeControlPlane(capacity=floor, min_capacity=floor)
        decision = _decider(cp, [MinCompareAdapter(cp)]).decide(_alloc(500, 512), False)
        assert decision.reached_minimum is True
        assert decision.changed is False

    def test_floor_not_yet_reached_shrinks(self) -> None:
        cp = FakeControlPlane()
        decision = _decider(cp, [MinCompareAdapter(cp)]).decide(_alloc(500, 512), False)
        assert decision.reached_minimum is True
        assert decision.changed is True
        assert decision.is_increase is False

    def test_floor_compared_on_every_field(self) -> None:
        floor = NMCapacity(vcores=1, millicores=1000, memory_mb=1024)
        cp = FakeControlPlane(capacity=NMCapacity(vcores=1, millicores=1000, memory_mb=4096), min_capacity=floor)
        decision = _decider(cp, [MinCompareAdapter(cp)]).decide(_alloc(500, 512), False)
        assert decision.changed is True

    def test_conflict_at_floor_still_changes(self) -> None:
        floor = NMCapacity(vcores=1, millicores=1000, memory_mb=1024)
        cp = FakeControlPlane(capacity=floor, min_capacity=floor)
        decision = _decider(cp, [MinCompareAdapter(cp)]).decide(_alloc(500, 512), True)
        assert decision.changed is True
        assert decision.reached_minimum is True

    def test_zero_band_flags_any_change(self) -> None:
        disabled = RangeResource()
        decision = _decider(FakeControlPlane(), resource_range=disabled).decide(_alloc(4001, 8192), False)
        assert decision.changed is True


# ---------------------------------------------------------------------------
# Apply and throttle
# ---------------------------------------------------------------------------


class TestAdaptAndApply:
    def test_no_change_does_not_apply(self) -> None:
        engine, cp, _, _ = _engine()
        engine.adapt_and_apply(_alloc(4300, 8500), [])
        assert cp.ensure_calls == []

    def test_increase_applies_expected_capacity(self) -> None:
        engine, cp, _, _ = _engine()
        engine.adapt_and_apply(_alloc(6500, 12000), [])
        assert cp.ensure_calls == [
            ("ensure_capacity", NMCapacity(vcores=6, millicores=6500, memory_mb=12000), (), False),
        ]

    def test_growth_throttled_within_interval(self) -> None:
        engine, cp, clock, metrics = _engine(interval=600.0)
        engine.adapt_and_apply(_alloc(6000, 12000), [])
        clock.advance(100)
        engine.adapt_and_apply(_alloc(9000, 16000), [])
        assert len(cp.ensure_calls) == 1
        assert metrics.registry.get(CAPACITY_INCREASE_THROTTLED).value == 1.0

    def test_growth_allowed_after_interval(self) -> None:
        engine, cp, clock, _ = _engine(interval=600.0)
        engine.adapt_and_apply(_alloc(6000, 12000), [])
        clock.advance(600)
        engine.adapt_and_apply(_alloc(9000, 16000), [])
        assert len(cp.ensure_calls) == 2

    def test_shrink_not_throttled(self) -> None:
        engine, cp, clock, _ = _engine(interval=600.0)
        engine.adapt_and_apply(_alloc(6000, 12000), [])
        clock.advance(1)
        engine.adapt_and_apply(_alloc(3000, 4096), [])
        clock.advance(1)
        engine.adapt_and_apply(_alloc(2000, 2048), [])
        assert [c[3] for c in cp.ensure_calls] == [False, True, True]

    def test_conflict_not_throttled(self) -> None:
        engine, cp, clock, _ = _engine(interval=600.0)
        engine.adapt_and_apply(_alloc(6000, 12000), [])
        clock.advance(1)
        engine.adapt_and_apply(_alloc(9000, 16000), ["cpu"])
        assert len(cp.ensure_calls) == 2
        assert cp.ensure_calls[-1][2] == ("cpu",)
        assert cp.ensure_calls[-1][3] is True

    def test_one_sided_growth_bypasses_throttle(self) -> None:
        engine, cp, clock, _ = _engine(interval=600.0)
        engine.adapt_and_apply(_alloc(6000, 12000), [])
        clock.advance(1)
        engine.adapt_and_apply(_alloc(9000, 8000), [])
        assert len(cp.ensure_calls) == 2

    def test_failed_increase_does_not_start_throttle(self) -> None:
        engine, cp, clock, _ = _engine(interval=600.0)
        cp.ensure_error = "restart failed"
        with pytest.raises(ControlPlaneError):
            engine.adapt_and_apply(_alloc(6000, 12000), [])
        cp.ensure_error = None
        clock.advance(1)
        engine.adapt_and_apply(_alloc(6000, 12000), [])
        assert len(cp.ensure_calls) == 2

    def test_apply_failure_still_checks_liveness(self) -> None:
        engine, cp, _, _ = _engine(FakeControlPlane(running=False))
        cp.ensure_error = "restart failed"
        with pytest.raises(ControlPlaneError):
            engine.adapt_and_apply(_alloc(2000, 2048), [])
        assert cp.count("start_process") == 1

    def test_dead_node_manager_restarted_after_cycle(self) -> None:
        engine, cp, _, _ = _engine(FakeControlPlane(running=False))
        engine.adapt_and_apply(_alloc(4000, 8192), [])
        assert cp.count("start_process") == 1
        assert cp.running is True

    def test_capacity_query_failure_attempts_growth(self) -> None:
        engine, cp, _, _ = _engine()
        cp.capacity_error = "nm webapp timeout"
        engine.adapt_and_apply(_alloc(4000, 8192), [])
        assert len(cp.ensure_calls) == 1
        assert cp.ensure_calls[0][3] is False

    def test_reports_offline_resource(self) -> None:
        engine, _, _, metrics = _engine()
        engine.adapt_and_apply(_alloc(4300, 8500), [])
        assert metrics.registry.get(OFFLINE_RESOURCE_PREFIX + "cpu").value == 4300
        assert metrics.registry.get(OFFLINE_RESOURCE_PREFIX + "memory").value == 8500

    def test_try_apply_reports_skip(self) -> None:
        engine, cp, _, _ = _engine(interval=600.0)
        target = NMCapacity(vcores=8, millicores=8000, memory_mb=16384)
        assert engine.try_apply(target, [], True) is True
        assert engine.try_apply(target, [], True) is False
        assert engine.try_apply(target, [], False) is True


# ---------------------------------------------------------------------------
# Schedule and recovery
# ---------------------------------------------------------------------------


class TestSchedule:
    def test_disable_enable_roundtrip(self) -> None:
        checkpoint = MemoryCheckpoint()
        engine, cp, _, _ = _engine(checkpoint=checkpoint)
        engine.disable_scheduling()
        assert engine.schedule_disabled is True
        engine.enable_scheduling()
        assert engine.schedule_disabled is False
        assert checkpoint.recover() is False

    def test_recover_reasserts_disabled(self) -> None:
        checkpoint = MemoryCheckpoint(disabled=True)
        alarm = RecordingAlarm()
        engine, cp, _, _ = _engine(checkpoint=checkpoint, alarm=alarm)
        engine.recover()
        assert engine.schedule_disabled is True
        assert cp.count("disable_scheduling") == 1
        assert alarm.messages == ["schedule is closing"]

    def test_recover_from_file_after_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "checkpoint.json"
        store = FileCheckpointStore(path)
        cp = FakeControlPlane()
        metrics = NodeMetrics()
        alarm = RecordingAlarm()
        ScheduleStateMachine(cp, store, alarm, metrics).disable()

        # New process, same checkpoint file.
        cp2 = FakeControlPlane()
        engine = OfflineCapacityEngine(
            control_plane=cp2,
            pipeline=AdapterPipeline([]),
            resource_range=RANGE_10PCT,
            throttle=CapacityIncreaseThrottle(600.0),
            schedule=ScheduleStateMachine(cp2, FileCheckpointStore(path), alarm, metrics),
            liveness=LivenessSupervisor(cp2, alarm, sleep_fn=lambda _s: None),
            metrics=metrics,
        )
        assert engine.schedule_disabled is False
        engine.recover()
        assert engine.schedule_disabled is True
        assert cp2.count("disable_scheduling") == 1


# ---------------------------------------------------------------------------
# Offline jobs and lifecycle
# ---------------------------------------------------------------------------


class TestPassThrough:
    def test_offline_jobs(self) -> None:
        engine, cp, _, _ = _engine()
        cp.jobs = [OfflineJob(job_id="container_01", resources={"cpu": 1000})]
        assert [j.job_id for j in engine.get_offline_jobs()] == ["container_01"]

    def test_kill_offline_job(self) -> None:
        engine, cp, _, _ = _engine()
        engine.kill_offline_job("memory")
        assert ("kill_container", "memory") in cp.calls

    def test_init_waits_for_status(self) -> None:
        engine, cp, _, _ = _engine()
        cp.status_failures = 2
        assert engine.init() is True
        assert cp.count("get_status") == 3

    def test_check_liveness(self) -> None:
        engine, _, _, _ = _engine()
        assert engine.check_liveness() is LivenessResult.RUNNING


class TestBuildEngine:
    def test_wires_adapters_in_order(self, tmp_path: Path) -> None:
        settings = EngineSettings(
            resource_range=RANGE_10PCT,
            reserve=ReserveSettings(cpu_milli=1000, memory_mb=1024),
            round_off=RoundOffSettings(cpu_milli_step=1000, memory_mb_step=1024),
            disk_cpu=DiskCpuSettings(enabled=True, cpu_milli_per_disk=1000, refresh_seconds=0.01),
            metrics_textfile_path=str(tmp_path / "offline.prom"),
            metrics_interval_seconds=0.01,
        )
        cp = FakeControlPlane()
        probed = threading.Event()

        def _disks() -> int:
            probed.set()
            return 6

        engine = build_engine(
            settings,
            cp,
            FileCheckpointStore(tmp_path / "ckpt.json"),
            RecordingAlarm(),
            NodeMetrics(),
            disk_probe=_disks,
            node_cpu_milli=16000,
        )
        stop = threading.Event()
        engine.start(stop)
        try:
            assert probed.wait(2.0) is True
            for _ in range(200):
                if (tmp_path / "offline.prom").exists():
                    break
                stop.wait(0.01)
        finally:
            assert engine.stop(timeout=2.0) is True

        # 10500/9000 -> reserve 9500/7976 -> round 9000/7168 -> 6 disks caps cpu at 6000.
        allocation = _alloc(10500, 9000)
        engine.adapt_and_apply(allocation, [])
        assert allocation == {"cpu": 6000, "memory": 7168}
        assert cp.ensure_calls[-1][1] == NMCapacity(vcores=6, millicores=6000, memory_mb=7168)
        assert (tmp_path / "offline.prom").exists()

    def test_adapted_candidate_never_below_floor(self) -> None:
        settings = EngineSettings(
            resource_range=RANGE_10PCT,
            round_off=RoundOffSettings(cpu_milli_step=1000, memory_mb_step=512),
        )
        cp = FakeControlPlane(min_capacity=NMCapacity(vcores=1, millicores=1500, memory_mb=1024))
        engine = build_engine(
            settings,
            cp,
            MemoryCheckpoint(),
            RecordingAlarm(),
            NodeMetrics(),
            disk_probe=lambda: 0,
            node_cpu_milli=16000,
        )
        # Rounding 1800m down to 1000m would land under the 1500m floor.
        allocation = _alloc(1800, 2048)
        engine.adapt_and_apply(allocation, [])
        target = cp.ensure_calls[-1][1]
        assert target == NMCapacity(vcores=1, millicores=1500, memory_mb=1024)
        assert target.millicores >= cp.min_capacity.millicores
        assert target.memory_mb >= cp.min_capacity.memory_mb


class TestBuildFromSettings:
    def test_checkpoint_written_to_configured_path(self, tmp_path: Path) -> None:
        settings = EngineSettings(checkpoint_path=str(tmp_path / "state" / "ckpt.json"), log_level="warning")
        cp = FakeControlPlane()
        engine = build_engine_from_settings(settings, cp, disk_probe=lambda: 0, node_cpu_milli=8000)
        engine.disable_scheduling()
        assert (tmp_path / "state" / "ckpt.json").exists()

        restarted = build_engine_from_settings(settings, FakeControlPlane(), disk_probe=lambda: 0, node_cpu_milli=8000)
        restarted.recover()
        assert restarted.schedule_disabled is True

    def test_alarm_sink_defaults_to_log(self) -> None:
        assert isinstance(build_alarm_sink(EngineSettings()), LoggingAlarmSink)

    def test_alarm_sink_uses_webhook_when_configured(self) -> None:
        sink = build_alarm_sink(EngineSettings(alarm_webhook_url="http://alarm.local/hook"))
        try:
            assert isinstance(sink, WebhookAlarmSink)
        finally:
            sink.close()
