"""Ordered resource adapter pipeline.

Each adapter clamps a candidate offline allocation in place. The order
is fixed at construction: min-compare, over-commit, reservation,
round-off, disk-derived cpu. Later stages assume the invariants of the
earlier ones, and the pipeline stops as soon as an adapter pins the
allocation to the node manager floor.

Usage::

    pipeline = AdapterPipeline([
        MinCompareAdapter(control_plane),
        OverCommitAdapter(settings.over_commit, node_cpu_milli),
        ResourceReserveAdapter(settings.reserve),
        RoundOffAdapter(settings.round_off),
        DiskCpuAdapter(disk_probe, settings.disk_cpu),
    ], floor=control_plane.get_min_capacity)
    reached_min = pipeline.adapt(allocation)
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Tuple

from offline_capacity.config import (
    DiskCpuSettings,
    OverCommitSettings,
    ReserveSettings,
    RoundOffSettings,
)
from offline_capacity.control_plane import NodeManagerControlPlane
from offline_capacity.models import NMCapacity, ResourceAllocation

LOGGER = logging.getLogger(__name__)

# Returns the number of healthy data disks on the node.
DiskProbe = Callable[[], int]


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------


class ResourceAdapter(ABC):
    name: str = "adapter"

    @abstractmethod
    def adapt(self, allocation: ResourceAllocation) -> bool:
        """Clamp ``allocation`` in place. Returns True if pinned to the floor."""
        raise NotImplementedError

    def run(self, stop_event: threading.Event) -> None:
        """Background recalibration loop. Most adapters have none."""
        return None


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class MinCompareAdapter(ResourceAdapter):
    """Pins the allocation to the node manager's min capacity."""

    name = "min_compare"

    def __init__(self, control_plane: NodeManagerControlPlane) -> None:
        self._control_plane = control_plane

    def adapt(self, allocation: ResourceAllocation) -> bool:
        floor = self._control_plane.get_min_capacity()
        if allocation.cpu <= floor.millicores or allocation.memory <= floor.memory_mb:
            LOGGER.debug(
                "candidate (cpu=%d, mem=%d) at or below min capacity %s",
                allocation.cpu,
                allocation.memory,
                floor,
            )
            allocation.cpu = floor.millicores
            allocation.memory = floor.memory_mb
            return True
        return False


class OverCommitAdapter(ResourceAdapter):
    """Caps cpu at the node's physical cpu scaled by the over-commit ratio.

    The ratio applies only while enabled and inside an active hour window;
    otherwise cpu is capped at the physical amount.
    """

    name = "over_commit"

    def __init__(
        self,
        settings: OverCommitSettings,
        node_cpu_milli: int,
        hour_fn: Callable[[], int] | None = None,
    ) -> None:
        self._settings = settings
        self._node_cpu_milli = node_cpu_milli
        self._hour_fn = hour_fn or (lambda: time.localtime().tm_hour)

    def current_ratio(self) -> float:
        cfg = self._settings
        if not cfg.enabled:
            return 1.0
        if not cfg.active_hours:
            return cfg.ratio
        hour = self._hour_fn()
        for start, end in cfg.active_hours:
            if start <= hour < end:
                return cfg.ratio
        return 1.0

    def adapt(self, allocation: ResourceAllocation) -> bool:
        ceiling = int(self._node_cpu_milli * self.current_ratio())
        if allocation.cpu > ceiling:
            allocation.cpu = ceiling
        return False


class ResourceReserveAdapter(ResourceAdapter):
    """Withholds the resources the node manager itself needs."""

    name = "reserve"

    def __init__(self, settings: ReserveSettings) -> None:
        self._settings = settings

    def adapt(self, allocation: ResourceAllocation) -> bool:
        allocation.cpu = allocation.cpu - self._settings.cpu_milli
        allocation.memory = allocation.memory - self._settings.memory_mb
        return False


class RoundOffAdapter(ResourceAdapter):
    """Rounds cpu and memory down to configured steps. 0 = no rounding."""

    name = "round_off"

    def __init__(self, settings: RoundOffSettings) -> None:
        self._settings = settings

    def adapt(self, allocation: ResourceAllocation) -> bool:
        cpu_step = self._settings.cpu_milli_step
        mem_step = self._settings.memory_mb_step
        if cpu_step > 0:
            allocation.cpu = allocation.cpu // cpu_step * cpu_step
        if mem_step > 0:
            allocation.memory = allocation.memory // mem_step * mem_step
        return False


class DiskCpuAdapter(ResourceAdapter):
    """Caps cpu by the number of healthy disks available to offline jobs.

    The disk count is refreshed by ``run`` in the background. Until the
    first successful refresh, cpu is left untouched.
    """

    name = "disk_cpu"

    def __init__(self, disk_probe: DiskProbe, settings: DiskCpuSettings) -> None:
        self._disk_probe = disk_probe
        self._settings = settings
        self._healthy_disks: int | None = None
        self._lock = threading.Lock()

    @property
    def healthy_disks(self) -> int | None:
        with self._lock:
            return self._healthy_disks

    def refresh(self) -> None:
        count = self._disk_probe()
        with self._lock:
            changed = count != self._healthy_disks
            self._healthy_disks = count
        if changed:
            LOGGER.info("healthy disk count is now %d", count)

    def adapt(self, allocation: ResourceAllocation) -> bool:
        if not self._settings.enabled:
            return False
        disks = self.healthy_disks
        if disks is None:
            return False
        ceiling = disks * self._settings.cpu_milli_per_disk
        if allocation.cpu > ceiling:
            allocation.cpu = ceiling
        return False

    def run(self, stop_event: threading.Event) -> None:
        if not self._settings.enabled:
            return
        while not stop_event.is_set():
            try:
                self.refresh()
            except Exception as exc:
                LOGGER.warning("disk probe failed, keeping %s disks: %s", self.healthy_disks, exc)
            stop_event.wait(self._settings.refresh_seconds)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class AdapterPipeline:
    """Runs adapters in construction order, stopping at the floor.

    When ``floor`` is given, the adapted allocation is checked against it
    once more after the last stage: reservation and rounding can push a
    candidate below the node manager's min capacity, which is then pinned
    to the floor.
    """

    def __init__(
        self,
        adapters: Iterable[ResourceAdapter],
        floor: Callable[[], NMCapacity] | None = None,
    ) -> None:
        self._adapters: Tuple[ResourceAdapter, ...] = tuple(adapters)
        self._floor = floor

    @property
    def adapters(self) -> Tuple[ResourceAdapter, ...]:
        return self._adapters

    def adapt(self, allocation: ResourceAllocation) -> bool:
        for adapter in self._adapters:
            if adapter.adapt(allocation):
                LOGGER.warning(
                    "resource changing to min capacity (%s): %s",
                    adapter.name,
                    dict(allocation),
                )
                return True
        if self._floor is None:
            return False
        floor = self._floor()
        if allocation.cpu < floor.millicores or allocation.memory < floor.memory_mb:
            LOGGER.warning(
                "adapted resource (cpu=%d, mem=%d) below min capacity %s, pinning to floor",
                allocation.cpu,
                allocation.memory,
                floor,
            )
            allocation.cpu = floor.millicores
            allocation.memory = floor.memory_mb
            return True
        return False
