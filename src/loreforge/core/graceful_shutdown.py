"""Signal-aware shutdown helper for the runtime and CLI."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Iterable, List


class GracefulShutdown:
    """Turn SIGINT/SIGTERM into an :class:`asyncio.Event` plus callbacks.

    Callbacks run once, on the first trigger, in registration order.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("loreforge")
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._installed: List[int] = []

    def install(self, signals: Iterable[int] | None = None) -> None:
        loop = asyncio.get_running_loop()
        targets = list(signals) if signals is not None else [signal.SIGINT, signal.SIGTERM]
        for sig in targets:
            try:
                loop.add_signal_handler(sig, self.trigger)
            except NotImplementedError:  # pragma: no cover - windows
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.trigger))
            self._installed.append(sig)

    def uninstall(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:  # pragma: no cover - windows
                signal.signal(sig, signal.SIG_DFL)
        self._installed.clear()

    def on_shutdown(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def trigger(self) -> None:
        if self._event.is_set():
            return
        self.logger.info("Shutdown requested")
        self._event.set()
        for callback in self._callbacks:
            callback()

    @property
    def event(self) -> asyncio.Event:
        return self._event

    def is_triggered(self) -> bool:
        return self._event.is_set()


__all__ = ["GracefulShutdown"]
