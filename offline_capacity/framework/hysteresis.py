"""Hysteresis band around the enforced node manager capacity.

Candidate changes whose distance from the current capacity stays inside
the band are treated as noise.
"""

from __future__ import annotations

from offline_capacity.models import NMCapacity, RangeResource, RangeSpec


def _band(quantity: float, spec: RangeSpec) -> float:
    width = quantity * spec.ratio
    if spec.min != 0 and width < spec.min:
        width = spec.min
    if spec.max != 0 and width > spec.max:
        width = spec.max
    return width


def range_resource(policy: RangeResource, capacity: NMCapacity) -> tuple[float, float]:
    """Return the ``(cpu_millicores, memory_mb)`` band widths.

    Both ratios at zero disables hysteresis and returns ``(0.0, 0.0)``.
    """
    if policy.cpu_milli.ratio + policy.memory_mb.ratio == 0:
        return 0.0, 0.0
    return (
        _band(float(capacity.millicores), policy.cpu_milli),
        _band(float(capacity.memory_mb), policy.memory_mb),
    )
