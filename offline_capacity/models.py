from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

# Millicores per vcore.
CPU_UNIT = 1000

RESOURCE_CPU = "cpu"
RESOURCE_MEMORY = "memory"


class ResourceAllocation(dict):
    """Offline resource candidate keyed by resource kind.

    ``cpu`` is expressed in millicores and ``memory`` in megabytes. The
    adapter pipeline mutates instances in place.
    """

    def __init__(self, cpu: int = 0, memory: int = 0, **extra: int) -> None:
        super().__init__(extra)
        self[RESOURCE_CPU] = int(cpu)
        self[RESOURCE_MEMORY] = int(memory)

    @property
    def cpu(self) -> int:
        return int(self.get(RESOURCE_CPU, 0))

    @cpu.setter
    def cpu(self, value: float) -> None:
        self[RESOURCE_CPU] = max(0, int(value))

    @property
    def memory(self) -> int:
        return int(self.get(RESOURCE_MEMORY, 0))

    @memory.setter
    def memory(self, value: float) -> None:
        self[RESOURCE_MEMORY] = max(0, int(value))


@dataclass(frozen=True)
class NMCapacity:
    """Capacity currently enforced by the node manager."""

    vcores: int
    millicores: int
    memory_mb: int

    @classmethod
    def from_allocation(cls, allocation: ResourceAllocation) -> "NMCapacity":
        return cls(
            vcores=allocation.cpu // CPU_UNIT,
            millicores=allocation.cpu,
            memory_mb=allocation.memory,
        )


@dataclass(frozen=True)
class RangeSpec:
    """Hysteresis policy for one resource kind.

    Parameters
    ----------
    ratio:
        Fraction of the current capacity tolerated as noise.
    min:
        Lower bound of the band. 0 = no lower bound.
    max:
        Upper bound of the band. 0 = no upper bound, so ``max=0`` never
        collapses the band to zero. Node manager agents that always clamp
        to ``max`` treat 0 as a zero-width band instead; set an explicit
        small ``max`` to get that behaviour here.
    """

    ratio: float = 0.0
    min: float = 0.0
    max: float = 0.0


@dataclass(frozen=True)
class RangeResource:
    cpu_milli: RangeSpec = field(default_factory=RangeSpec)
    memory_mb: RangeSpec = field(default_factory=RangeSpec)


@dataclass(frozen=True)
class CapacityDecision:
    """Outcome of comparing a candidate against the enforced capacity."""

    changed: bool
    is_increase: bool
    reached_minimum: bool = False


@dataclass(frozen=True)
class OfflineJob:
    """A container allocated to the offline workload on this node."""

    job_id: str
    resources: Mapping[str, int] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)
