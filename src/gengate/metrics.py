"""Job records and Prometheus text metrics.

``JobRecorder.write`` appends one JSON line per finished generation to
``jobs-YYYYMMDD.jsonl`` and folds the same record into the counters exposed
by ``GET /metrics``. A copy of the exposition is kept in ``prometheus.prom``
for node-exporter style scraping.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import json
import os
import threading
import time
from collections import defaultdict
from dataclasses import asdict
from typing import Any, Iterator, Optional, Union

from .types import JobRecord

_PROM_FILE = "prometheus.prom"
DURATION_BUCKETS: tuple[float, ...] = (0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 45.0, 90.0)


def _text(value: Any, default: str = "unknown") -> str:
    return str(value) if value not in (None, "") else default


def _labels(names: tuple[str, ...], values: tuple[str, ...]) -> str:
    pairs = []
    for name, value in zip(names, values):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        pairs.append(f'{name}="{escaped}"')
    return "{" + ",".join(pairs) + "}"


class _Counter:
    def __init__(self, name: str, help_text: str, label_names: tuple[str, ...]):
        self.name = name
        self.help_text = help_text
        self.label_names = label_names
        self.values: defaultdict[tuple[str, ...], int] = defaultdict(int)

    def inc(self, labels: tuple[str, ...], amount: int = 1) -> None:
        self.values[labels] += amount

    def exposition(self) -> Iterator[str]:
        yield f"# HELP {self.name} {self.help_text}"
        yield f"# TYPE {self.name} counter"
        for labels, value in sorted(self.values.items()):
            yield f"{self.name}{_labels(self.label_names, labels)} {value}"


class _Histogram:
    """Per-bucket counts are stored flat and made cumulative on render."""

    def __init__(self, name: str, help_text: str, label_names: tuple[str, ...]):
        self.name = name
        self.help_text = help_text
        self.label_names = label_names
        self.counts: dict[tuple[str, ...], list[int]] = {}
        self.sums: defaultdict[tuple[str, ...], float] = defaultdict(float)

    def observe(self, labels: tuple[str, ...], value: float) -> None:
        counts = self.counts.setdefault(labels, [0] * (len(DURATION_BUCKETS) + 1))
        counts[bisect.bisect_left(DURATION_BUCKETS, value)] += 1
        self.sums[labels] += value

    def exposition(self) -> Iterator[str]:
        yield f"# HELP {self.name} {self.help_text}"
        yield f"# TYPE {self.name} histogram"
        bounds = [format(bound, "g") for bound in DURATION_BUCKETS] + ["+Inf"]
        for labels, counts in sorted(self.counts.items()):
            for bound, total in zip(bounds, itertools.accumulate(counts)):
                yield f"{self.name}_bucket{_labels(self.label_names + ('le',), labels + (bound,))} {total}"
            suffix = _labels(self.label_names, labels)
            yield f"{self.name}_count{suffix} {sum(counts)}"
            yield f"{self.name}_sum{suffix} {self.sums[labels]}"


class JobMetrics:
    """Aggregates job records into per-kind, per-tier and per-provider series."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.jobs = _Counter(
            "gengate_jobs_total", "Finished generation jobs by outcome", ("kind", "tier", "outcome")
        )
        self.provider_jobs = _Counter(
            "gengate_provider_jobs_total", "Jobs answered by each provider", ("provider", "stream")
        )
        self.fallbacks = _Counter(
            "gengate_fallback_attempts_total", "Provider attempts that failed before an answer", ("tier",)
        )
        self.hints = _Counter("gengate_job_hints_total", "Post-processing hints attached to jobs", ("kind",))
        self.duration = _Histogram(
            "gengate_job_duration_seconds", "End-to-end job duration", ("kind",)
        )

    def record(self, payload: dict[str, Any]) -> None:
        kind = _text(payload.get("kind"))
        tier = _text(payload.get("tier"))
        outcome = "ok" if payload.get("ok") else _text(payload.get("error_code"), "failed")
        attempts = int(payload.get("attempts") or 0)
        hints = payload.get("hints") or ()
        seconds = max(float(payload.get("duration_ms") or 0) / 1000.0, 0.0)
        with self._lock:
            self.jobs.inc((kind, tier, outcome))
            if payload.get("provider"):
                stream = "true" if payload.get("stream") else "false"
                self.provider_jobs.inc((str(payload["provider"]), stream))
            # Every attempt but the answering one failed; with no answer all of them did.
            failed = attempts - 1 if payload.get("provider") else attempts
            if failed > 0:
                self.fallbacks.inc((tier,), failed)
            if hints:
                self.hints.inc((kind,), len(hints))
            self.duration.observe((kind,), seconds)

    def render(self) -> str:
        with self._lock:
            families = (self.jobs, self.provider_jobs, self.fallbacks, self.hints, self.duration)
            return "\n".join(line for family in families for line in family.exposition()) + "\n"


class JobRecorder:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self.metrics = JobMetrics()

    def _file(self) -> str:
        return os.path.join(self.dir, f"jobs-{time.strftime('%Y%m%d')}.jsonl")

    def _publish(self, exposition: str) -> None:
        prom_path = os.path.join(self.dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(exposition)
        os.replace(tmp_path, prom_path)

    async def write(self, record: Union[JobRecord, dict[str, Any]]) -> None:
        payload = asdict(record) if isinstance(record, JobRecord) else dict(record)
        payload.setdefault("ts", time.time())
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
            self.metrics.record(payload)
            self._publish(self.metrics.render())

    def render_prometheus(self) -> str:
        return self.metrics.render()
