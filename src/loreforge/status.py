"""Human-facing presentation of job progress and failures."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .core.job_store import GenerationJob, JobStatus
from .errors import ErrorKind

BASE_QUEUE_SECONDS = 30


class Stage(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    GENERATING = "generating"
    PORTRAIT = "portrait"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def lifecycle(self) -> str:
        """Coarse ``queued``/``running``/``settled`` bucket for this stage."""

        if self in (Stage.QUEUED, Stage.PROCESSING):
            return "queued"
        if self in (Stage.COMPLETE, Stage.ERROR):
            return "settled"
        return "running"


def stage_for(job: GenerationJob, queue_position: int = 0) -> Stage:
    if job.status is JobStatus.PENDING:
        return Stage.QUEUED if queue_position > 0 else Stage.PROCESSING
    if job.status in (JobStatus.GENERATING, JobStatus.CONTENT_COMPLETE):
        return Stage.GENERATING
    if job.status is JobStatus.IMAGE_GENERATING:
        return Stage.PORTRAIT
    if job.status is JobStatus.COMPLETE:
        return Stage.COMPLETE
    return Stage.ERROR


def status_message(stage: Stage, queue_position: int = 0) -> str:
    if stage is Stage.QUEUED:
        return f"Position {queue_position} in queue..." if queue_position else "Submitting to queue..."
    return {
        Stage.PROCESSING: "Processing request...",
        Stage.GENERATING: "Generating content with AI...",
        Stage.PORTRAIT: "Generating portrait image with AI...",
        Stage.COMPLETE: "Generation complete!",
        Stage.ERROR: "Generation failed",
    }[stage]


def estimated_seconds(stage: Stage, queue_position: int = 0, base_time: int = BASE_QUEUE_SECONDS) -> int:
    if stage is Stage.QUEUED:
        return queue_position * base_time
    return {
        Stage.PROCESSING: 15,
        Stage.GENERATING: 45,
        Stage.PORTRAIT: 120,
        Stage.COMPLETE: 0,
        Stage.ERROR: 0,
    }[stage]


def format_time(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, remainder = divmod(seconds, 60)
    return f"{minutes}m {remainder}s"


def user_message(job: GenerationJob) -> Optional[str]:
    """Short, kind-specific text for a failed job; ``None`` otherwise."""

    if job.status is not JobStatus.ERROR:
        return None
    noun = job.kind.label
    if job.error_kind is ErrorKind.RATE_LIMITED:
        return "AI service is currently busy. Please wait a moment and try again."
    if job.error_kind is ErrorKind.TIMED_OUT:
        if job.error and job.error.startswith("Generation timed out"):
            return job.error
        return "AI request timed out. Please try again with a simpler prompt."
    if job.error_kind is ErrorKind.MALFORMED_RESPONSE:
        return f"Failed to extract {noun} data from AI response"
    if job.error_kind is ErrorKind.CANCELLED:
        return "Generation was cancelled."
    return f"Failed to generate {noun}. Please try again."


@dataclass(frozen=True)
class JobView:
    job: GenerationJob
    queue_position: int
    stage: Stage

    @property
    def message(self) -> str:
        return status_message(self.stage, self.queue_position)

    @property
    def estimated_time(self) -> int:
        return estimated_seconds(self.stage, self.queue_position)

    def as_dict(self) -> Dict[str, Any]:
        data = self.job.to_dict()
        data.update(
            {
                "queue_position": self.queue_position,
                "stage": self.stage.value,
                "lifecycle": self.stage.lifecycle,
                "message": self.message,
                "estimated_time": self.estimated_time,
                "estimated_time_display": format_time(self.estimated_time),
                "user_message": user_message(self.job),
            }
        )
        return data


def describe(job: GenerationJob, queue_position: int = 0) -> JobView:
    return JobView(job=job, queue_position=queue_position, stage=stage_for(job, queue_position))


__all__ = [
    "BASE_QUEUE_SECONDS",
    "Stage",
    "JobView",
    "stage_for",
    "status_message",
    "estimated_seconds",
    "format_time",
    "user_message",
    "describe",
]
