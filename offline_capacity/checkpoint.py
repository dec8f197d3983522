"""Crash-recoverable schedule checkpoint.

Persists whether offline scheduling was deliberately disabled so a
restarted controller does not silently resume scheduling.
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path

from offline_capacity.errors import CheckpointError

LOGGER = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_PATH = "/var/run/offline_capacity/schedule_checkpoint.json"


class CheckpointStore(ABC):
    @abstractmethod
    def store(self, disabled: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def recover(self) -> bool:
        """Return the persisted schedule-disabled flag."""
        raise NotImplementedError


class FileCheckpointStore(CheckpointStore):
    """JSON checkpoint written atomically (temp file + rename).

    A missing file means scheduling was never disabled.
    """

    def __init__(self, path: str | Path = DEFAULT_CHECKPOINT_PATH) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def store(self, disabled: bool) -> None:
        payload = {"schedule_disabled": bool(disabled), "updated_at": time.time()}
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise CheckpointError(f"write {self._path}: {exc}") from exc
        LOGGER.debug("checkpoint stored: schedule_disabled=%s", disabled)

    def recover(self) -> bool:
        if not self._path.exists():
            LOGGER.info("no schedule checkpoint at %s", self._path)
            return False
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CheckpointError(f"read {self._path}: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("schedule_disabled"), bool):
            raise CheckpointError(f"malformed checkpoint {self._path}: {data!r}")
        return data["schedule_disabled"]
