"""Samples host and process resource usage for the metrics report."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict

import psutil


class SystemMonitor:
    def __init__(self, *, interval: float, metrics, logger: logging.Logger | None = None) -> None:
        self.interval = float(interval)
        self.metrics = metrics
        self.logger = logger or logging.getLogger("loreforge")
        self._process = psutil.Process(os.getpid())

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                stats = self.collect_stats()
            except psutil.Error as exc:
                self.logger.debug("System monitor failed: %s", exc)
            else:
                self.metrics.record_system_stats(stats)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def collect_stats(self) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        rss = self._process.memory_info().rss
        try:
            open_connections = len(self._process.net_connections(kind="inet"))
        except psutil.AccessDenied:
            open_connections = None
        return {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": memory.percent,
            "memory_used_mb": round(memory.used / (1024 * 1024), 2),
            "process_rss_mb": round(rss / (1024 * 1024), 2),
            "open_connections": open_connections,
        }


__all__ = ["SystemMonitor"]
