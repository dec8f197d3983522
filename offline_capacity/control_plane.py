from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

from offline_capacity.models import NMCapacity, OfflineJob


class NodeManagerControlPlane(ABC):
    """Live process and property control of the node manager.

    Every method may raise ``ControlPlaneError``.
    """

    @abstractmethod
    def get_capacity(self) -> NMCapacity:
        raise NotImplementedError

    @abstractmethod
    def get_min_capacity(self) -> NMCapacity:
        raise NotImplementedError

    @abstractmethod
    def ensure_capacity(
        self,
        target: NMCapacity,
        conflicting_resources: Sequence[str],
        is_decrease: bool,
    ) -> None:
        """Apply ``target``; may restart the node manager process."""
        raise NotImplementedError

    @abstractmethod
    def get_status(self) -> bool:
        """Return True if the node manager process is running."""
        raise NotImplementedError

    @abstractmethod
    def start_process(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop_process(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def disable_scheduling(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def enable_scheduling(self) -> None:
        raise NotImplementedError

    def get_property(self, file_name: str, keys: Sequence[str]) -> dict[str, str]:
        return {}

    def set_property(self, file_name: str, values: Mapping[str, str]) -> None:
        return None

    def get_allocated_jobs(self) -> list[OfflineJob]:
        return []

    def kill_container(self, conflicting_resource: str) -> None:
        return None
