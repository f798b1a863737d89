"""Versioned on-disk snapshot of the job store."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from .job_store import GenerationJob

SNAPSHOT_VERSION = 1


class CorruptSnapshotError(ValueError):
    """The snapshot file exists but cannot be decoded."""


class JobSnapshotFile:
    """Load/save ``{active, settled}`` as a single JSON document.

    A missing file yields empty state. A corrupt file is logged, moved aside
    to ``<name>.corrupt-<timestamp>`` and also yields empty state.
    """

    def __init__(self, path: str | Path, *, logger: logging.Logger | None = None) -> None:
        self.path = Path(path)
        self.logger = logger or logging.getLogger("loreforge")

    # ------------------------------------------------------------------
    def load(self) -> Tuple[List[GenerationJob], List[GenerationJob]]:
        if not self.path.exists():
            self.logger.info("No job snapshot at %s; starting empty", self.path)
            return [], []
        try:
            return self._decode(self.path.read_text(encoding="utf-8"))
        except (CorruptSnapshotError, UnicodeDecodeError, OSError) as exc:
            quarantined = self._quarantine()
            self.logger.warning(
                "Job snapshot %s is unreadable (%s); starting from empty state%s",
                self.path,
                exc,
                f", original kept at {quarantined}" if quarantined else "",
            )
            return [], []

    def save(self, active: Sequence[GenerationJob], settled: Sequence[GenerationJob]) -> None:
        payload: Dict[str, Any] = {
            "version": SNAPSHOT_VERSION,
            "saved_at": time.time(),
            "active": [[job.id, job.to_dict()] for job in active],
            "settled": [[job.id, job.to_dict()] for job in settled],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    # ------------------------------------------------------------------
    def _decode(self, text: str) -> Tuple[List[GenerationJob], List[GenerationJob]]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptSnapshotError(f"invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise CorruptSnapshotError("snapshot root must be an object")
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise CorruptSnapshotError(f"unsupported snapshot version {version!r}")
        return self._decode_partition(data, "active"), self._decode_partition(data, "settled")

    def _decode_partition(self, data: Dict[str, Any], key: str) -> List[GenerationJob]:
        entries = data.get(key)
        if not isinstance(entries, list):
            raise CorruptSnapshotError(f"'{key}' must be a list of [id, job] pairs")
        jobs: List[GenerationJob] = []
        for entry in entries:
            if not isinstance(entry, list) or len(entry) != 2 or not isinstance(entry[1], dict):
                raise CorruptSnapshotError(f"malformed entry in '{key}': {entry!r}")
            try:
                job = GenerationJob.from_dict(entry[1])
            except (KeyError, ValueError, TypeError) as exc:
                raise CorruptSnapshotError(f"invalid job in '{key}': {exc}") from exc
            if job.id != str(entry[0]):
                raise CorruptSnapshotError(f"entry key {entry[0]!r} does not match job id {job.id!r}")
            jobs.append(job)
        return jobs

    def _quarantine(self) -> Path | None:
        target = self.path.with_name(f"{self.path.name}.corrupt-{time.strftime('%Y%m%dT%H%M%S', time.gmtime())}")
        try:
            self.path.replace(target)
        except OSError as exc:
            self.logger.error("Could not move corrupt snapshot aside: %s", exc)
            return None
        return target


__all__ = ["SNAPSHOT_VERSION", "CorruptSnapshotError", "JobSnapshotFile"]
