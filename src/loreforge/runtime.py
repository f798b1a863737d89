"""Runtime wiring for loreforge."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config
from .connectors import AssetConnector, ContentConnector
from .core import (
    GracefulShutdown,
    JobMaintenance,
    JobSnapshotFile,
    JobStore,
    MetricsManager,
    RetryPolicy,
    SystemMonitor,
    TaskQueue,
)
from .core.job_store import GenerationJob
from .core.orchestrator import GenerationRequest, JobOrchestrator
from .endpoints import resolve_endpoints
from .extraction import ResponseExtractor
from .logging_utils import configure_logging


def retry_policy_from_config(config: Dict[str, Any]) -> RetryPolicy:
    rate_limit = config.get("queue", {}).get("rate_limit", {})
    max_attempts = rate_limit.get("max_attempts", 5)
    return RetryPolicy(
        max_attempts=int(max_attempts) if max_attempts is not None else None,
        backoff_seconds=float(rate_limit.get("backoff_seconds", 1.0)),
        max_backoff_seconds=float(rate_limit.get("max_backoff_seconds", 30.0)),
    )


def open_store(config: Dict[str, Any], logger: logging.Logger) -> JobStore:
    """Restore the job store from its snapshot file (stale jobs are failed)."""

    jobs = config.get("jobs", {})
    return JobStore.restore(
        JobSnapshotFile(jobs["snapshot_path"], logger=logger),
        logger=logger,
        stale_after=float(jobs.get("stale_after_seconds", 600)),
    )


class LoreForgeRuntime:
    """Own every long-lived component and the background loops around them.

    Use as ``async with LoreForgeRuntime(config, logger) as runtime``.
    """

    def __init__(self, config: Dict[str, Any], logger: logging.Logger, **connector_kwargs: Any) -> None:
        self.config = config
        self.logger = logger
        self._connector_kwargs = connector_kwargs
        self.orchestrator: Optional[JobOrchestrator] = None
        self.store: Optional[JobStore] = None
        self.metrics: Optional[MetricsManager] = None
        self.shutdown = GracefulShutdown(logger)
        self._stop = asyncio.Event()
        self._background: List[asyncio.Task] = []
        self._connectors: List[Any] = []

    @classmethod
    def from_defaults(cls, path: str | Path | None = None, *, log_level: str | None = None) -> "LoreForgeRuntime":
        config, logger = bootstrap(path, log_level=log_level)
        return cls(config, logger)

    # ------------------------------------------------------------------
    async def start(self) -> JobOrchestrator:
        paths = self.config.get("paths", {})
        metrics_cfg = self.config.get("metrics", {})
        jobs_cfg = self.config.get("jobs", {})

        self.metrics = MetricsManager(
            paths.get("metrics"),
            report_interval=float(metrics_cfg.get("report_interval", 10.0)),
            include_system=bool(metrics_cfg.get("include_system", True)),
            logger=self.logger,
        )
        self.store = open_store(self.config, self.logger)
        queue = TaskQueue(
            int(self.config.get("queue", {}).get("concurrency_limit", 3)),
            retry_policy=retry_policy_from_config(self.config),
            logger=self.logger,
            metrics=self.metrics,
        )
        content = ContentConnector.from_config(
            self.config, self.logger, transport=self._connector_kwargs.get("content_transport")
        )
        assets = AssetConnector.from_config(
            self.config, self.logger, transport=self._connector_kwargs.get("asset_transport")
        )
        self._connectors = [content, assets]
        self.orchestrator = JobOrchestrator(
            queue=queue,
            store=self.store,
            content=content,
            assets=assets,
            endpoints=resolve_endpoints(self.config, self.logger),
            extractor=ResponseExtractor(self.logger),
            metrics=self.metrics,
            logger=self.logger,
        )

        maintenance = JobMaintenance(
            self.store,
            interval=float(jobs_cfg.get("maintenance_interval", 60)),
            stale_after=float(jobs_cfg.get("stale_after_seconds", 600)),
            retain_settled=float(jobs_cfg.get("retain_settled_seconds", 86400)),
            on_stale=self.orchestrator.abort,
            logger=self.logger,
        )
        self._background = [
            asyncio.create_task(self.metrics.run(), name="metrics"),
            asyncio.create_task(maintenance.run(self._stop), name="maintenance"),
        ]
        if metrics_cfg.get("include_system", True):
            monitor = SystemMonitor(
                interval=float(metrics_cfg.get("system_interval", 5.0)),
                metrics=self.metrics,
                logger=self.logger,
            )
            self._background.append(asyncio.create_task(monitor.run(self._stop), name="system-monitor"))
        self.shutdown.on_shutdown(self._stop.set)
        self.logger.info("Runtime started (concurrency=%d)", queue.concurrency_limit)
        return self.orchestrator

    async def close(self) -> None:
        self._stop.set()
        if self.orchestrator is not None:
            await self.orchestrator.aclose()
        if self.metrics is not None:
            self.metrics.stop()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        for connector in self._connectors:
            await connector.aclose()
        self._connectors.clear()
        if self.metrics is not None:
            self._write_summary(self.config.get("paths", {}).get("metrics"), self.metrics.summary())

    async def __aenter__(self) -> "LoreForgeRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    async def generate(self, request: GenerationRequest) -> GenerationJob:
        """Submit one job and wait for it to settle."""

        return await self._settle(self._require_orchestrator().submit(request))

    async def generate_retry(self, job_id: str) -> GenerationJob:
        """Retry a failed job under a new id and wait for it to settle."""

        return await self._settle(self._require_orchestrator().retry(job_id))

    def _require_orchestrator(self) -> JobOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("Runtime has not been started")
        return self.orchestrator

    async def _settle(self, job_id: str) -> GenerationJob:
        waiter = asyncio.ensure_future(self.orchestrator.wait(job_id))
        stopper = asyncio.ensure_future(self.shutdown.event.wait())
        done, _ = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            self.orchestrator.abort(job_id)
            await waiter
        stopper.cancel()
        job = self.store.by_id(job_id) if self.store is not None else None
        if job is None:
            raise KeyError(job_id)
        return job

    def _write_summary(self, directory: str | None, summary: Dict[str, Any]) -> None:
        if not directory:
            return
        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        timestamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime())
        summary_path = target_dir / f"run-summary-{timestamp}.json"
        summary_path.write_text(json.dumps(summary, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        self.logger.info("Run summary written to %s", summary_path)


def bootstrap(path: str | Path | None = None, *, log_level: str | None = None):
    """Load configuration and configure logging; returns ``(config, logger)``."""

    result = load_config(path, include_sources=True)
    logging_config = dict(result.config.get("logging", {}))
    logging_config.setdefault("log_dir", result.config.get("paths", {}).get("logs"))
    if log_level:
        logging_config["console_level"] = log_level
    logger = configure_logging(logging_config)
    logger.info("Loaded configuration from: %s", ", ".join(result.sources) or "<defaults>")
    return result.config, logger


__all__ = ["LoreForgeRuntime", "bootstrap", "open_store", "retry_policy_from_config"]
