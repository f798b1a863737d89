"""Registry of multi-stage generation jobs, partitioned active/settled."""

from __future__ import annotations

import copy
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..errors import ErrorKind, InvalidTransitionError
from ..schemas import GenerationKind

STALE_AFTER_SECONDS = 10 * 60
RETAIN_SETTLED_SECONDS = 24 * 60 * 60
TIMEOUT_MESSAGE = "Generation timed out. Please try again."


class JobStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    CONTENT_COMPLETE = "content-complete"
    IMAGE_GENERATING = "image-generating"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.ERROR)


_FORWARD_ORDER = {
    JobStatus.PENDING: 0,
    JobStatus.GENERATING: 1,
    JobStatus.CONTENT_COMPLETE: 2,
    JobStatus.IMAGE_GENERATING: 3,
    JobStatus.COMPLETE: 4,
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    if current.is_terminal:
        return False
    if target is JobStatus.ERROR:
        return True
    return _FORWARD_ORDER[target] >= _FORWARD_ORDER[current]


@dataclass
class GenerationJob:
    id: str
    kind: GenerationKind
    prompt: str
    form_data: Dict[str, Any] = field(default_factory=dict)
    owner_id: str = ""
    skip_asset: bool = False
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    start_time: float = 0.0
    finished_at: Optional[float] = None
    elapsed: float = 0.0
    content: Optional[Dict[str, Any]] = None
    asset: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    asset_error: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GenerationJob":
        error_kind = data.get("error_kind")
        return cls(
            id=str(data["id"]),
            kind=GenerationKind.parse(data["kind"]),
            prompt=str(data.get("prompt") or ""),
            form_data=dict(data.get("form_data") or {}),
            owner_id=str(data.get("owner_id") or ""),
            skip_asset=bool(data.get("skip_asset", False)),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            progress=int(data.get("progress") or 0),
            start_time=float(data.get("start_time") or 0.0),
            finished_at=float(data["finished_at"]) if data.get("finished_at") is not None else None,
            elapsed=float(data.get("elapsed") or 0.0),
            content=data.get("content"),
            asset=data.get("asset"),
            error=data.get("error"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            asset_error=data.get("asset_error"),
        )


@dataclass(frozen=True)
class JobSpec:
    kind: GenerationKind
    prompt: str
    form_data: Dict[str, Any] = field(default_factory=dict)
    owner_id: str = ""
    skip_asset: bool = False


_PATCHABLE = frozenset({"status", "progress", "content", "asset", "asset_error", "error", "error_kind"})


class JobStore:
    """Own job state; active jobs and settled jobs never overlap.

    Every mutation is handed to ``persistence`` (if given) as a full snapshot.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger | None = None,
        persistence=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = logger or logging.getLogger("loreforge")
        self.persistence = persistence
        self.clock = clock
        self._active: "OrderedDict[str, GenerationJob]" = OrderedDict()
        self._settled: "OrderedDict[str, GenerationJob]" = OrderedDict()

    # ------------------------------------------------------------------
    @classmethod
    def restore(
        cls,
        persistence,
        *,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
        stale_after: float = STALE_AFTER_SECONDS,
    ) -> "JobStore":
        """Rebuild a store from ``persistence`` and fail jobs left in flight.

        Jobs restored as active may belong to a process that no longer
        exists, so they are checked against ``stale_after`` straight away.
        """

        store = cls(logger=logger, persistence=persistence, clock=clock)
        active, settled = persistence.load()
        for job in settled:
            store._settled[job.id] = job
        for job in active:
            if job.id in store._settled:
                store.logger.warning("Job %s is both active and settled in the snapshot; keeping the settled record", job.id)
                continue
            if job.status.is_terminal:
                store._settled[job.id] = job
            else:
                store._active[job.id] = job
        store.logger.info("Restored %d active and %d settled job(s)", len(store._active), len(store._settled))
        if store._active:
            store.cleanup_stale(stale_after)
        return store

    # ------------------------------------------------------------------
    def create(self, spec: JobSpec) -> str:
        job_id = str(uuid.uuid4())
        job = GenerationJob(
            id=job_id,
            kind=GenerationKind.parse(spec.kind),
            prompt=spec.prompt,
            form_data=dict(spec.form_data),
            owner_id=spec.owner_id,
            skip_asset=spec.skip_asset,
            status=JobStatus.PENDING,
            progress=0,
            start_time=self.clock(),
        )
        self._active[job_id] = job
        self.logger.debug("Created %s job %s", job.kind.value, job_id)
        self._persist()
        return job_id

    def update(self, job_id: str, **patch: Any) -> bool:
        """Merge ``patch`` into an active job; returns ``False`` if not active."""

        job = self._active.get(job_id)
        if job is None:
            return False
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Cannot patch job fields: {', '.join(sorted(unknown))}")
        status = patch.get("status")
        if status is not None:
            status = JobStatus(status)
            if status.is_terminal:
                raise InvalidTransitionError("Use complete() or fail() to settle a job")
            if not can_transition(job.status, status):
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {job.status.value} to {status.value}"
                )
            patch["status"] = status
        self._active[job_id] = replace(job, **patch)
        self._persist()
        return True

    def complete(
        self,
        job_id: str,
        content: Optional[Dict[str, Any]],
        asset: Optional[str] = None,
        *,
        asset_error: Optional[str] = None,
    ) -> bool:
        job = self._active.pop(job_id, None)
        if job is None:
            return False
        now = self.clock()
        self._settled[job_id] = replace(
            job,
            status=JobStatus.COMPLETE,
            progress=100,
            content=content,
            asset=asset,
            asset_error=asset_error if asset_error is not None else job.asset_error,
            finished_at=now,
            elapsed=now - job.start_time,
        )
        self._persist()
        return True

    def fail(self, job_id: str, message: str, *, kind: ErrorKind | None = None) -> bool:
        job = self._active.pop(job_id, None)
        if job is None:
            return False
        now = self.clock()
        self._settled[job_id] = replace(
            job,
            status=JobStatus.ERROR,
            error=message,
            error_kind=kind,
            finished_at=now,
            elapsed=now - job.start_time,
        )
        self._persist()
        return True

    def remove(self, job_id: str) -> bool:
        removed = self._active.pop(job_id, None) is not None
        removed = self._settled.pop(job_id, None) is not None or removed
        if removed:
            self._persist()
        return removed

    # ------------------------------------------------------------------
    def by_id(self, job_id: str) -> Optional[GenerationJob]:
        job = self._active.get(job_id) or self._settled.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    def all_active(self) -> List[GenerationJob]:
        return [copy.deepcopy(job) for job in self._active.values()]

    def all_settled(self) -> List[GenerationJob]:
        return [copy.deepcopy(job) for job in self._settled.values()]

    def by_kind(self, kind: GenerationKind | str) -> List[GenerationJob]:
        resolved = GenerationKind.parse(kind)
        return [job for job in self._iter_all() if job.kind is resolved]

    def by_status(self, status: JobStatus | str) -> List[GenerationJob]:
        resolved = JobStatus(status)
        return [job for job in self._iter_all() if job.status is resolved]

    def any_active(self, kind: GenerationKind | str | None = None) -> bool:
        if kind is None:
            return bool(self._active)
        resolved = GenerationKind.parse(kind)
        return any(job.kind is resolved for job in self._active.values())

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def _iter_all(self) -> Iterable[GenerationJob]:
        for job in list(self._active.values()) + list(self._settled.values()):
            yield copy.deepcopy(job)

    # ------------------------------------------------------------------
    def cleanup_settled(self, max_age: float = RETAIN_SETTLED_SECONDS) -> List[str]:
        now = self.clock()
        expired = [
            job_id
            for job_id, job in self._settled.items()
            if now - (job.finished_at or job.start_time) > max_age
        ]
        for job_id in expired:
            del self._settled[job_id]
        if expired:
            self.logger.info("Purged %d settled job(s) older than %.0fs", len(expired), max_age)
            self._persist()
        return expired

    def cleanup_stale(self, max_age: float = STALE_AFTER_SECONDS) -> List[str]:
        now = self.clock()
        stale = [job_id for job_id, job in self._active.items() if now - job.start_time > max_age]
        for job_id in stale:
            job = self._active.pop(job_id)
            self._settled[job_id] = replace(
                job,
                status=JobStatus.ERROR,
                error=TIMEOUT_MESSAGE,
                error_kind=ErrorKind.TIMED_OUT,
                finished_at=now,
                elapsed=now - job.start_time,
            )
            self.logger.warning(
                "Job %s (%s) stuck in %s for %.0fs; marked as timed out",
                job_id,
                job.kind.value,
                job.status.value,
                now - job.start_time,
            )
        if stale:
            self._persist()
        return stale

    def reset(self) -> None:
        self._active.clear()
        self._settled.clear()
        self._persist()

    # ------------------------------------------------------------------
    def _persist(self) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save(list(self._active.values()), list(self._settled.values()))
        except OSError as exc:
            self.logger.error("Failed to persist job snapshot: %s", exc, exc_info=True)


__all__ = [
    "STALE_AFTER_SECONDS",
    "RETAIN_SETTLED_SECONDS",
    "TIMEOUT_MESSAGE",
    "JobStatus",
    "GenerationJob",
    "JobSpec",
    "JobStore",
    "can_transition",
]
