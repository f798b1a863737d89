"""Periodic retention pass over the job store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

from .job_store import RETAIN_SETTLED_SECONDS, STALE_AFTER_SECONDS, JobStore


@dataclass
class MaintenanceReport:
    stale: List[str] = field(default_factory=list)
    purged: List[str] = field(default_factory=list)


class JobMaintenance:
    def __init__(
        self,
        store: JobStore,
        *,
        interval: float = 60.0,
        stale_after: float = STALE_AFTER_SECONDS,
        retain_settled: float = RETAIN_SETTLED_SECONDS,
        on_stale=None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.interval = float(interval)
        self.stale_after = float(stale_after)
        self.retain_settled = float(retain_settled)
        # Called with each force-failed job id so its driver can be cancelled.
        self.on_stale = on_stale
        self.logger = logger or logging.getLogger("loreforge")

    def run_once(self) -> MaintenanceReport:
        report = MaintenanceReport(
            stale=self.store.cleanup_stale(self.stale_after),
            purged=self.store.cleanup_settled(self.retain_settled),
        )
        if self.on_stale is not None:
            for job_id in report.stale:
                self.on_stale(job_id)
        if report.stale or report.purged:
            self.logger.info(
                "Maintenance: %d stale job(s) failed, %d settled job(s) purged",
                len(report.stale),
                len(report.purged),
            )
        return report

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue


__all__ = ["JobMaintenance", "MaintenanceReport"]
