"""Background loops bound to one shared stop signal."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Protocol

LOGGER = logging.getLogger(__name__)


class Runnable(Protocol):
    def run(self, stop_event: threading.Event) -> None: ...


class LifecycleRunner:
    """Starts each component's ``run`` loop on its own daemon thread.

    Setting the stop event ends every loop; ``stop`` is safe to call any
    number of times.
    """

    def __init__(self, components: Iterable[Runnable]) -> None:
        self._components = tuple(components)
        self._threads: list[threading.Thread] = []
        self._stop_event: threading.Event | None = None

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self, stop_event: threading.Event) -> None:
        if self._stop_event is not None:
            LOGGER.warning("lifecycle runner already started, ignoring")
            return
        self._stop_event = stop_event
        for component in self._components:
            name = type(component).__name__
            thread = threading.Thread(
                target=self._run_component,
                args=(component, stop_event),
                name=f"loop-{name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        LOGGER.info("started %d background loop(s)", len(self._threads))

    def stop(self, timeout: float = 5.0) -> bool:
        """Signal every loop and wait for them. Returns True if all exited."""
        if self._stop_event is None:
            return True
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        stragglers = [t.name for t in self._threads if t.is_alive()]
        if stragglers:
            LOGGER.warning("background loops still running after %.1fs: %s", timeout, stragglers)
            return False
        return True

    @staticmethod
    def _run_component(component: Runnable, stop_event: threading.Event) -> None:
        try:
            component.run(stop_event)
        except Exception:
            LOGGER.exception("background loop %s crashed", type(component).__name__)
