"""Drives each generation job through content and optional asset stages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..endpoints import KindEndpoint
from ..errors import ErrorKind, QueueRejection, classify
from ..extraction import ResponseExtractor
from ..logging_utils import job_extra
from ..prompting import build_generation_prompt
from ..schemas import GenerationKind, build_asset_prompt, schema_for, supports_asset
from ..status import JobView, describe
from .job_store import GenerationJob, JobSpec, JobStatus, JobStore
from .task_queue import QueueSnapshot, TaskQueue


@dataclass(frozen=True)
class GenerationRequest:
    kind: GenerationKind | str
    prompt: str = ""
    form_data: Dict[str, Any] = field(default_factory=dict)
    owner_id: str = "anonymous"
    skip_asset: bool = False

    def to_spec(self) -> JobSpec:
        return JobSpec(
            kind=GenerationKind.parse(self.kind),
            prompt=self.prompt,
            form_data=dict(self.form_data),
            owner_id=self.owner_id,
            skip_asset=self.skip_asset,
        )


class JobOrchestrator:
    """Create jobs and run them to a terminal state in the background.

    Each job is driven by one asyncio task. Removing a job through
    :meth:`cancel` also cancels that task, which drops its queued work or
    interrupts the outbound call in flight.
    """

    def __init__(
        self,
        *,
        queue: TaskQueue,
        store: JobStore,
        content,
        endpoints: Mapping[GenerationKind, KindEndpoint],
        assets=None,
        extractor: ResponseExtractor | None = None,
        metrics=None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.content = content
        self.assets = assets
        self.endpoints = dict(endpoints)
        self.logger = logger or logging.getLogger("loreforge")
        self.extractor = extractor or ResponseExtractor(self.logger)
        self.metrics = metrics
        self._drivers: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    def submit(self, request: GenerationRequest) -> str:
        """Create a pending job and start driving it; returns the job id."""

        spec = request.to_spec()
        job_id = self.store.create(spec)
        self.logger.info("Submitted %s job for %s", spec.kind.value, spec.owner_id, extra=job_extra(job_id))
        driver = asyncio.get_running_loop().create_task(self._drive(job_id, spec), name=f"job-{job_id}")
        self._drivers[job_id] = driver
        driver.add_done_callback(lambda task, job_id=job_id: self._forget(job_id, task))
        return job_id

    async def wait(self, job_id: str) -> Optional[GenerationJob]:
        """Wait until the job's driver finishes and return the final record."""

        driver = self._drivers.get(job_id)
        if driver is not None:
            await asyncio.wait({driver})
        return self.store.by_id(job_id)

    def cancel(self, job_id: str) -> bool:
        removed = self.store.remove(job_id)
        stopped = self.abort(job_id)
        if removed or stopped:
            self.logger.info("Cancelled", extra=job_extra(job_id))
        return removed or stopped

    def abort(self, job_id: str) -> bool:
        """Cancel the job's driver without touching its stored record."""

        driver = self._drivers.pop(job_id, None)
        if driver is None or driver.done():
            return False
        driver.cancel()
        return True

    def retry(self, job_id: str) -> str:
        """Replace a failed job with a fresh one built from the same request."""

        job = self.store.by_id(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.status is not JobStatus.ERROR:
            raise ValueError(f"Only failed jobs can be retried; {job_id} is {job.status.value}")
        self.store.remove(job_id)
        new_id = self.submit(
            GenerationRequest(
                kind=job.kind,
                prompt=job.prompt,
                form_data=job.form_data,
                owner_id=job.owner_id,
                skip_asset=job.skip_asset,
            )
        )
        self.logger.info("Retried as %s", new_id, extra=job_extra(job_id))
        return new_id

    def describe(self, job_id: str) -> Optional[JobView]:
        job = self.store.by_id(job_id)
        if job is None:
            return None
        position = self.queue.get_position(job.owner_id) if job.status is JobStatus.PENDING else 0
        return describe(job, position)

    def queue_snapshot(self) -> QueueSnapshot:
        return self.queue.get_snapshot()

    @property
    def running(self) -> List[str]:
        return [job_id for job_id, driver in self._drivers.items() if not driver.done()]

    async def aclose(self) -> None:
        drivers = [driver for driver in self._drivers.values() if not driver.done()]
        for driver in drivers:
            driver.cancel()
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)
        self._drivers.clear()

    # ------------------------------------------------------------------
    async def _drive(self, job_id: str, spec: JobSpec) -> None:
        try:
            await self._generate(job_id, spec)
        except asyncio.CancelledError:
            if self.store.fail(job_id, "Generation cancelled", kind=ErrorKind.CANCELLED):
                self._record_failure(spec.kind, ErrorKind.CANCELLED)
            raise
        except Exception as exc:
            self.logger.exception("Driver crashed", extra=job_extra(job_id))
            self._fail(job_id, spec.kind, str(exc), ErrorKind.UPSTREAM)

    async def _generate(self, job_id: str, spec: JobSpec) -> None:
        kind = spec.kind
        endpoint = self.endpoints[kind]
        prompt = build_generation_prompt(kind, spec.prompt, spec.form_data)

        async def generate_content():
            self._advance(job_id, status=JobStatus.GENERATING, progress=10)
            return await self.content.generate(endpoint, prompt)

        try:
            response = await self.queue.add(generate_content, spec.owner_id, label=kind.value)
        except QueueRejection as exc:
            self._fail(job_id, kind, str(exc), classify(exc))
            return

        result = self.extractor.extract(response.text, schema=schema_for(kind), truncated=response.truncated)
        if not result.ok:
            self.logger.debug("Unparseable response: %.500s", response.text, extra=job_extra(job_id))
            self._fail(job_id, kind, str(result), ErrorKind.MALFORMED_RESPONSE)
            return
        content = dict(result.record)
        if not self._advance(job_id, status=JobStatus.CONTENT_COMPLETE, progress=70, content=content):
            self.logger.debug("No longer active; dropping its content", extra=job_extra(job_id))
            return
        if self.metrics is not None:
            self.metrics.record_success(kind.value, elapsed=response.elapsed, tokens=response.tokens)

        if spec.skip_asset or not supports_asset(kind) or self.assets is None or not endpoint.asset_url:
            self.store.complete(job_id, content)
            self.logger.info("%s complete", kind.value, extra=job_extra(job_id))
            return

        if not self._advance(job_id, status=JobStatus.IMAGE_GENERATING, progress=80):
            self.logger.debug("No longer active; skipping its asset", extra=job_extra(job_id))
            return
        asset_prompt = build_asset_prompt(kind, content)

        async def generate_asset():
            return await self.assets.generate(endpoint.asset_url, asset_prompt, spec.owner_id)

        try:
            asset = await self.queue.add(generate_asset, spec.owner_id, label=f"{kind.value}-asset")
        except QueueRejection as exc:
            self.logger.warning("Asset generation failed; completing without it: %s", exc, extra=job_extra(job_id))
            if self.metrics is not None:
                self.metrics.record_asset_failure(kind.value)
            self.store.complete(job_id, content, None, asset_error=str(exc))
            return
        self.store.complete(job_id, content, asset)
        self.logger.info("%s complete with asset", kind.value, extra=job_extra(job_id))

    # ------------------------------------------------------------------
    def _advance(self, job_id: str, **patch: Any) -> bool:
        updated = self.store.update(job_id, **patch)
        if updated:
            self.logger.debug(
                "-> %s (%s%%)",
                patch["status"].value,
                patch.get("progress", "-"),
                extra=job_extra(job_id),
            )
        return updated

    def _fail(self, job_id: str, kind: GenerationKind, message: str, error_kind: ErrorKind) -> None:
        if self.store.fail(job_id, message, kind=error_kind):
            self.logger.error("%s failed [%s]: %s", kind.value, error_kind.value, message, extra=job_extra(job_id))
            self._record_failure(kind, error_kind)

    def _record_failure(self, kind: GenerationKind, error_kind: ErrorKind) -> None:
        if self.metrics is not None:
            self.metrics.record_failure(kind.value, error_kind.value)

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._drivers.get(job_id) is task:
            del self._drivers[job_id]


__all__ = ["GenerationRequest", "JobOrchestrator"]
