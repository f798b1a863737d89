"""Per-kind generation metrics, appended periodically to ``metrics.jsonl``."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping


@dataclass
class KindTotals:
    success: int = 0
    failure: int = 0
    retries: int = 0
    asset_failures: int = 0
    elapsed: float = 0.0
    tokens: int = 0

    @property
    def avg_latency(self) -> float:
        return self.elapsed / self.success if self.success else 0.0

    @property
    def avg_tokens(self) -> float:
        return self.tokens / self.success if self.success else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failure": self.failure,
            "retries": self.retries,
            "asset_failures": self.asset_failures,
            "avg_elapsed": self.avg_latency,
            "avg_tokens": self.avg_tokens,
            "total": self.success + self.failure,
        }


class MetricsManager:
    """Fold recorded events into per-kind totals.

    ``record_*`` calls only enqueue; the ``run`` coroutine applies them and
    writes a snapshot line every ``report_interval`` seconds plus a final
    one when stopped. System samples are written through as they arrive.
    """

    def __init__(
        self,
        metrics_dir: str | Path,
        *,
        report_interval: float = 10.0,
        include_system: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.metrics_dir = Path(metrics_dir)
        self.metrics_dir.mkdir(parents=True, exist_ok=True)
        self.metrics_path = self.metrics_dir / "metrics.jsonl"
        self.report_interval = float(report_interval)
        self.include_system = include_system
        self.logger = logger or logging.getLogger("loreforge")
        self._events: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self._stopped = asyncio.Event()
        self._totals: Dict[str, KindTotals] = {}
        self._error_kinds: Counter = Counter()
        self._last_report = time.monotonic()

    # ------------------------------------------------------------------
    def record_success(self, kind: str, *, elapsed: float, tokens: int = 0) -> None:
        self._events.put_nowait({"type": "success", "kind": str(kind), "elapsed": float(elapsed), "tokens": int(tokens)})

    def record_failure(self, kind: str, error_kind: str | None = None) -> None:
        self._events.put_nowait({"type": "failure", "kind": str(kind), "error_kind": error_kind})

    def record_retry(self, kind: str) -> None:
        self._events.put_nowait({"type": "retry", "kind": str(kind)})

    def record_asset_failure(self, kind: str) -> None:
        self._events.put_nowait({"type": "asset_failure", "kind": str(kind)})

    def record_system_stats(self, stats: Mapping[str, Any]) -> None:
        if self.include_system:
            self._events.put_nowait({"type": "system", "payload": dict(stats)})

    # ------------------------------------------------------------------
    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                event = await asyncio.wait_for(self._events.get(), timeout=self.report_interval)
            except asyncio.TimeoutError:
                self._report()
                continue
            self._apply(event)
            if time.monotonic() - self._last_report >= self.report_interval:
                self._report()
        self.drain()
        self._report(final=True)

    def stop(self) -> None:
        self._stopped.set()
        self._events.put_nowait({"type": "wakeup"})

    def drain(self) -> None:
        """Apply every queued event without waiting."""

        while not self._events.empty():
            self._apply(self._events.get_nowait())

    # ------------------------------------------------------------------
    def totals(self, kind: str) -> KindTotals:
        return self._totals.setdefault(kind, KindTotals())

    def summary(self) -> Dict[str, Any]:
        return {
            "kinds": {kind: self._totals[kind].as_dict() for kind in sorted(self._totals)},
            "error_kinds": dict(self._error_kinds),
            "timestamp": time.time(),
        }

    # ------------------------------------------------------------------
    def _apply(self, event: Mapping[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "system":
            self._write({"type": "system", **event.get("payload", {})})
            return
        kind = event.get("kind")
        if not kind:
            return
        totals = self.totals(kind)
        if event_type == "success":
            totals.success += 1
            totals.elapsed += float(event.get("elapsed", 0.0))
            totals.tokens += int(event.get("tokens", 0))
        elif event_type == "failure":
            totals.failure += 1
            if event.get("error_kind"):
                self._error_kinds[str(event["error_kind"])] += 1
        elif event_type == "retry":
            totals.retries += 1
        elif event_type == "asset_failure":
            totals.asset_failures += 1

    def _report(self, *, final: bool = False) -> None:
        snapshot = self.summary()
        snapshot["final"] = final
        self._write(snapshot)
        self._last_report = time.monotonic()
        self.logger.debug("Metrics snapshot written to %s", self.metrics_path)

    def _write(self, payload: Mapping[str, Any]) -> None:
        with self.metrics_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


__all__ = ["MetricsManager", "KindTotals"]
