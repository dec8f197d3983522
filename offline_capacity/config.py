from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv

from offline_capacity.checkpoint import DEFAULT_CHECKPOINT_PATH
from offline_capacity.models import RangeResource, RangeSpec


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_hour_windows(value: str | None) -> Tuple[Tuple[int, int], ...]:
    """Parses `start-end,start-end` hour windows (end exclusive, 0-24)."""
    windows: list[Tuple[int, int]] = []
    for chunk in _as_csv(value):
        if "-" not in chunk:
            raise ValueError(f"invalid hour window {chunk!r}, expected start-end")
        start_raw, end_raw = chunk.split("-", 1)
        start, end = int(start_raw), int(end_raw)
        if not (0 <= start < end <= 24):
            raise ValueError(f"invalid hour window {chunk!r}, need 0 <= start < end <= 24")
        windows.append((start, end))
    return tuple(windows)


@dataclass(frozen=True)
class OverCommitSettings:
    enabled: bool = False
    ratio: float = 1.0
    # Hours of the day during which the ratio applies. Empty = all day.
    active_hours: Tuple[Tuple[int, int], ...] = ()


@dataclass(frozen=True)
class ReserveSettings:
    cpu_milli: int = 0
    memory_mb: int = 0


@dataclass(frozen=True)
class RoundOffSettings:
    cpu_milli_step: int = 0
    memory_mb_step: int = 0


@dataclass(frozen=True)
class DiskCpuSettings:
    enabled: bool = False
    cpu_milli_per_disk: int = 0
    refresh_seconds: float = 60.0


@dataclass(frozen=True)
class LivenessSettings:
    ready_poll_seconds: float = 2.0
    restart_grace_seconds: float = 10.0


@dataclass(frozen=True)
class EngineSettings:
    capacity_inc_interval_seconds: float = 600.0
    resource_range: RangeResource = field(default_factory=RangeResource)
    over_commit: OverCommitSettings = field(default_factory=OverCommitSettings)
    reserve: ReserveSettings = field(default_factory=ReserveSettings)
    round_off: RoundOffSettings = field(default_factory=RoundOffSettings)
    disk_cpu: DiskCpuSettings = field(default_factory=DiskCpuSettings)
    liveness: LivenessSettings = field(default_factory=LivenessSettings)
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH
    alarm_webhook_url: str | None = None
    metrics_textfile_path: str | None = None
    metrics_interval_seconds: float = 15.0
    log_level: str = "INFO"


def _validate(settings: EngineSettings) -> None:
    if settings.capacity_inc_interval_seconds < 0:
        raise ValueError("OFFLINE_CAPACITY_INC_INTERVAL_SECONDS must be >= 0")
    for label, spec in (("CPU", settings.resource_range.cpu_milli), ("MEM", settings.resource_range.memory_mb)):
        if spec.ratio < 0 or spec.min < 0 or spec.max < 0:
            raise ValueError(f"OFFLINE_RANGE_{label}_* values must be >= 0")
        if spec.max and spec.min > spec.max:
            raise ValueError(f"OFFLINE_RANGE_{label}_MIN must not exceed OFFLINE_RANGE_{label}_MAX")
    if settings.over_commit.ratio <= 0:
        raise ValueError("OFFLINE_OVERCOMMIT_RATIO must be > 0")
    if settings.reserve.cpu_milli < 0 or settings.reserve.memory_mb < 0:
        raise ValueError("OFFLINE_RESERVE_* values must be >= 0")
    if settings.round_off.cpu_milli_step < 0 or settings.round_off.memory_mb_step < 0:
        raise ValueError("OFFLINE_ROUND_OFF_* values must be >= 0")
    if settings.disk_cpu.enabled and settings.disk_cpu.cpu_milli_per_disk <= 0:
        raise ValueError("OFFLINE_DISK_CPU_MILLI_PER_DISK must be > 0 when disk cpu is enabled")
    if settings.liveness.ready_poll_seconds <= 0 or settings.liveness.restart_grace_seconds < 0:
        raise ValueError("OFFLINE_LIVENESS_* intervals are out of range")


def load_settings() -> EngineSettings:
    load_dotenv(override=False)

    resource_range = RangeResource(
        cpu_milli=RangeSpec(
            ratio=_as_float(os.getenv("OFFLINE_RANGE_CPU_RATIO"), 0.1),
            min=_as_float(os.getenv("OFFLINE_RANGE_CPU_MIN"), 500.0),
            max=_as_float(os.getenv("OFFLINE_RANGE_CPU_MAX"), 4000.0),
        ),
        memory_mb=RangeSpec(
            ratio=_as_float(os.getenv("OFFLINE_RANGE_MEM_RATIO"), 0.1),
            min=_as_float(os.getenv("OFFLINE_RANGE_MEM_MIN"), 512.0),
            max=_as_float(os.getenv("OFFLINE_RANGE_MEM_MAX"), 4096.0),
        ),
    )

    checkpoint_path = os.getenv("OFFLINE_CHECKPOINT_PATH") or DEFAULT_CHECKPOINT_PATH
    checkpoint_path = str(Path(checkpoint_path).expanduser())

    metrics_path = os.getenv("OFFLINE_METRICS_TEXTFILE_PATH")
    if metrics_path:
        metrics_path = str(Path(metrics_path).expanduser())

    settings = EngineSettings(
        capacity_inc_interval_seconds=_as_float(os.getenv("OFFLINE_CAPACITY_INC_INTERVAL_SECONDS"), 600.0),
        resource_range=resource_range,
        over_commit=OverCommitSettings(
            enabled=_as_bool(os.getenv("OFFLINE_OVERCOMMIT_ENABLED"), False),
            ratio=_as_float(os.getenv("OFFLINE_OVERCOMMIT_RATIO"), 1.0),
            active_hours=_as_hour_windows(os.getenv("OFFLINE_OVERCOMMIT_ACTIVE_HOURS")),
        ),
        reserve=ReserveSettings(
            cpu_milli=_as_int(os.getenv("OFFLINE_RESERVE_CPU_MILLI"), 0),
            memory_mb=_as_int(os.getenv("OFFLINE_RESERVE_MEMORY_MB"), 0),
        ),
        round_off=RoundOffSettings(
            cpu_milli_step=_as_int(os.getenv("OFFLINE_ROUND_OFF_CPU_MILLI"), 1000),
            memory_mb_step=_as_int(os.getenv("OFFLINE_ROUND_OFF_MEMORY_MB"), 512),
        ),
        disk_cpu=DiskCpuSettings(
            enabled=_as_bool(os.getenv("OFFLINE_DISK_CPU_ENABLED"), False),
            cpu_milli_per_disk=_as_int(os.getenv("OFFLINE_DISK_CPU_MILLI_PER_DISK"), 0),
            refresh_seconds=_as_float(os.getenv("OFFLINE_DISK_CPU_REFRESH_SECONDS"), 60.0),
        ),
        liveness=LivenessSettings(
            ready_poll_seconds=_as_float(os.getenv("OFFLINE_LIVENESS_READY_POLL_SECONDS"), 2.0),
            restart_grace_seconds=_as_float(os.getenv("OFFLINE_LIVENESS_RESTART_GRACE_SECONDS"), 10.0),
        ),
        checkpoint_path=checkpoint_path,
        alarm_webhook_url=os.getenv("OFFLINE_ALARM_WEBHOOK_URL") or None,
        metrics_textfile_path=metrics_path or None,
        metrics_interval_seconds=_as_float(os.getenv("OFFLINE_METRICS_INTERVAL_SECONDS"), 15.0),
        log_level=os.getenv("OFFLINE_LOG_LEVEL", "INFO"),
    )
    _validate(settings)
    return settings
