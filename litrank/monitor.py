from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import pandas as pd
from loguru import logger


@dataclass
class StageMetrics:
    name: str
    input_count: int
    output_count: int = 0
    duration_ms: float = 0.0
    counters: Dict[str, float] = field(default_factory=dict)
    degraded: bool = False
    note: Optional[str] = None

    @property
    def pass_rate(self) -> float:
        if self.input_count <= 0:
            return 0.0
        return self.output_count / float(self.input_count)


class StageRecorder:
    """Handle yielded by PerformanceMonitor.stage; the stage fills it in."""

    def __init__(self, metrics: StageMetrics) -> None:
        self._m = metrics

    @property
    def output_count(self) -> int:
        return self._m.output_count

    @output_count.setter
    def output_count(self, value: int) -> None:
        self._m.output_count = int(value)

    @property
    def counters(self) -> Dict[str, float]:
        return self._m.counters

    def mark_degraded(self, note: str) -> None:
        self._m.degraded = True
        self._m.note = note

    def add_note(self, note: str) -> None:
        self._m.note = note


@dataclass
class PipelineRunReport:
    run_id: str
    query: str
    stages: List[StageMetrics]
    total_duration_ms: float
    initial_count: int
    final_count: int
    cache_hits: int = 0
    cache_lookups: int = 0
    degradations: List[str] = field(default_factory=list)

    @property
    def cache_hit_rate(self) -> float:
        return (self.cache_hits / float(self.cache_lookups)) if self.cache_lookups else 0.0

    @property
    def overall_pass_rate(self) -> float:
        return (self.final_count / float(self.initial_count)) if self.initial_count else 0.0

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)

    def stage(self, name: str) -> Optional[StageMetrics]:
        for s in self.stages:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "query": self.query,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "initial_count": self.initial_count,
            "final_count": self.final_count,
            "overall_pass_rate": round(self.overall_pass_rate, 4),
            "cache_hits": self.cache_hits,
            "cache_lookups": self.cache_lookups,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "degraded": self.degraded,
            "degradations": list(self.degradations),
            "stages": [dict(asdict(s), pass_rate=round(s.pass_rate, 4)) for s in self.stages],
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per stage, handy for comparing runs while tuning thresholds."""
        rows = []
        for s in self.stages:
            row = {
                "stage": s.name,
                "input": s.input_count,
                "output": s.output_count,
                "pass_rate": s.pass_rate,
                "duration_ms": s.duration_ms,
                "degraded": s.degraded,
                "note": s.note or "",
            }
            row.update({f"c_{k}": v for k, v in s.counters.items()})
            rows.append(row)
        return pd.DataFrame(rows)


class PerformanceMonitor:
    """Collects per-stage metrics for one pipeline run."""

    def __init__(self, query: str, initial_count: int = 0, clock: Callable[[], float] = time.perf_counter) -> None:
        self.run_id = uuid.uuid4().hex[:12]
        self.query = query
        self.initial_count = initial_count
        self._clock = clock
        self._start = clock()
        self._stages: List[StageMetrics] = []
        self._cache_hits = 0
        self._cache_lookups = 0

    @contextmanager
    def stage(self, name: str, input_count: int) -> Iterator[StageRecorder]:
        metrics = StageMetrics(name=name, input_count=input_count)
        start = self._clock()
        try:
            yield StageRecorder(metrics)
        finally:
            metrics.duration_ms = (self._clock() - start) * 1000.0
            self._stages.append(metrics)
            logger.info(
                "Stage {:<15} {:>5} -> {:<5} ({:.1f} ms){}",
                name, metrics.input_count, metrics.output_count, metrics.duration_ms,
                " [degraded]" if metrics.degraded else "",
            )

    def record_cache(self, hits: int, lookups: int) -> None:
        self._cache_hits += int(hits)
        self._cache_lookups += int(lookups)

    def report(self, final_count: int) -> PipelineRunReport:
        return PipelineRunReport(
            run_id=self.run_id,
            query=self.query,
            stages=list(self._stages),
            total_duration_ms=(self._clock() - self._start) * 1000.0,
            initial_count=self.initial_count,
            final_count=final_count,
            cache_hits=self._cache_hits,
            cache_lookups=self._cache_lookups,
            degradations=[f"{s.name}: {s.note}" for s in self._stages if s.degraded],
        )


def log_report(report: PipelineRunReport) -> None:
    bar = "=" * 70
    lines = [
        bar,
        f"PIPELINE RUN {report.run_id}  query='{report.query}'",
        f"  {report.initial_count} -> {report.final_count} candidates "
        f"({report.overall_pass_rate * 100:.1f}% pass) in {report.total_duration_ms:.0f} ms",
        f"  cache hit rate: {report.cache_hit_rate * 100:.1f}% ({report.cache_hits}/{report.cache_lookups})",
    ]
    for s in report.stages:
        flag = f"  DEGRADED: {s.note}" if s.degraded else ""
        lines.append(
            f"  - {s.name:<15} {s.input_count:>5} -> {s.output_count:<5} {s.duration_ms:8.1f} ms{flag}"
        )
    lines.append(bar)
    if report.degraded:
        logger.warning("\n".join(lines))
    else:
        logger.info("\n".join(lines))
