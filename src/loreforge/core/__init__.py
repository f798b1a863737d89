"""Core runtime components for loreforge."""

from .graceful_shutdown import GracefulShutdown
from .job_store import GenerationJob, JobSpec, JobStatus, JobStore
from .maintenance import JobMaintenance
from .metrics_manager import MetricsManager
from .persistence import JobSnapshotFile
from .system_monitor import SystemMonitor
from .task_queue import QueueSnapshot, RetryPolicy, TaskQueue

__all__ = [
    "GracefulShutdown",
    "GenerationJob",
    "JobSpec",
    "JobStatus",
    "JobStore",
    "JobMaintenance",
    "MetricsManager",
    "JobSnapshotFile",
    "SystemMonitor",
    "QueueSnapshot",
    "RetryPolicy",
    "TaskQueue",
]
