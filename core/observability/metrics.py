"""
Metrics Collection for the Sync Engine

Collects and exposes metrics for:
- Job lifecycle (started, completed, failed, retried) per entity type
- Batch outcomes (completed, partial, failed, cancelled)
- Error categories
- Processing times (average, p95)

Metrics live in memory on the collector owned by the SyncContext; when a
database path is given, counter events are also persisted as snapshots.
"""

import json
import sqlite3
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union


# =============================================================================
# Metric Data Classes
# =============================================================================

def _job_counts() -> Dict[str, int]:
    return {"started": 0, "completed": 0, "failed": 0, "retries": 0}


@dataclass
class JobMetrics:
    """Metrics for job execution."""
    started: int = 0
    completed: int = 0
    failed: int = 0
    retries: int = 0
    in_progress: int = 0

    # By entity type
    by_entity: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(_job_counts))

    # By error category
    errors: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class BatchMetrics:
    """Metrics for batch execution."""
    submitted: int = 0
    completed: int = 0
    partial: int = 0
    failed: int = 0
    cancelled: int = 0
    rate_limit_pauses: int = 0


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    # Raw timing samples (keep last N for percentile calculations)
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    # By stage
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the sync engine.

    One collector per SyncContext; there is no process-wide instance.

    Usage:
        metrics = MetricsCollector()
        metrics.record_job_started("contact")
        metrics.record_job_completed("contact", duration_ms=120)
        metrics.get_summary()
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.jobs = JobMetrics()
        self.batches = BatchMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()
        self.db_path = str(db_path) if db_path and str(db_path) != ":memory:" else None

        if self.db_path:
            self._init_db()

    def _init_db(self):
        """Initialize metrics table in database."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS metrics_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    metric_type TEXT NOT NULL,
                    metric_name TEXT NOT NULL,
                    metric_value REAL NOT NULL,
                    labels TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_time
                ON metrics_snapshots(metric_type, timestamp)
            """)
            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Job Metrics
    # =========================================================================

    def record_job_started(self, entity_type: str):
        """Record a job attempt start."""
        with self._lock:
            self.jobs.started += 1
            self.jobs.in_progress += 1
            self.jobs.by_entity[entity_type]["started"] += 1

    def record_job_completed(self, entity_type: str, duration_ms: float = None):
        """Record a job completion."""
        with self._lock:
            self.jobs.completed += 1
            self.jobs.in_progress = max(0, self.jobs.in_progress - 1)
            self.jobs.by_entity[entity_type]["completed"] += 1

            if duration_ms:
                self.timings.add_sample(duration_ms, f"job.{entity_type}")

        self._persist_metric("job", "completed", 1, {"entity_type": entity_type})

    def record_job_failed(self, entity_type: str, category: str = None):
        """Record a job that failed for good (permanent or retries exhausted)."""
        with self._lock:
            self.jobs.failed += 1
            self.jobs.in_progress = max(0, self.jobs.in_progress - 1)
            self.jobs.by_entity[entity_type]["failed"] += 1
            if category:
                self.jobs.errors[category] += 1

        self._persist_metric("job", "failed", 1, {"entity_type": entity_type, "category": category})

    def record_job_retry(self, entity_type: str, attempt: int, category: str = None):
        """Record a failed attempt that will be retried."""
        with self._lock:
            self.jobs.retries += 1
            self.jobs.in_progress = max(0, self.jobs.in_progress - 1)
            self.jobs.by_entity[entity_type]["retries"] += 1
            if category:
                self.jobs.errors[category] += 1

        self._persist_metric("job", "retry", attempt, {"entity_type": entity_type, "category": category})

    # =========================================================================
    # Batch Metrics
    # =========================================================================

    def record_batch_submitted(self, entity_type: str, size: int):
        with self._lock:
            self.batches.submitted += 1
        self._persist_metric("batch", "submitted", size, {"entity_type": entity_type})

    def record_batch_finished(self, entity_type: str, status: str, duration_ms: float = None):
        """Record a batch reaching completed, partial or failed."""
        with self._lock:
            if status == "completed":
                self.batches.completed += 1
            elif status == "partial":
                self.batches.partial += 1
            else:
                self.batches.failed += 1
            if duration_ms:
                self.timings.add_sample(duration_ms, f"batch.{entity_type}")
        self._persist_metric("batch", status, 1, {"entity_type": entity_type})

    def record_batch_cancelled(self, entity_type: str):
        with self._lock:
            self.batches.cancelled += 1

    def record_rate_limit_pause(self, delay_seconds: float):
        with self._lock:
            self.batches.rate_limit_pauses += 1
            self.timings.add_sample(delay_seconds * 1000, "rate_limit_pause")

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "jobs": {
                    "started": self.jobs.started,
                    "completed": self.jobs.completed,
                    "failed": self.jobs.failed,
                    "retries": self.jobs.retries,
                    "in_progress": self.jobs.in_progress,
                    "by_entity": {k: dict(v) for k, v in self.jobs.by_entity.items()},
                    "errors": dict(self.jobs.errors),
                },
                "batches": {
                    "submitted": self.batches.submitted,
                    "completed": self.batches.completed,
                    "partial": self.batches.partial,
                    "failed": self.batches.failed,
                    "cancelled": self.batches.cancelled,
                    "rate_limit_pauses": self.batches.rate_limit_pauses,
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist_metric(self, metric_type: str, metric_name: str, value: float, labels: Dict = None):
        """Persist a metric to the database."""
        if not self.db_path:
            return
        try:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute("""
                    INSERT INTO metrics_snapshots (timestamp, metric_type, metric_name, metric_value, labels)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    datetime.now(timezone.utc).isoformat(),
                    metric_type,
                    metric_name,
                    value,
                    json.dumps(labels) if labels else None,
                ))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error:
            pass  # Don't fail on metrics persistence errors
