"""
Run metrics.

In-memory counters and gauges fed with per-stage reports, so data quality
regressions (more drops, more malformed records, lower coverage) are
visible without inspecting individual records.
"""

import logging
from collections import defaultdict
from typing import Dict, List

from ..models import StageReport

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Collects pipeline metrics."""

    def __init__(self):
        self.counters = defaultdict(int)
        self.gauges = defaultdict(float)
        self.histograms = defaultdict(list)
        self.reports: List[StageReport] = []

    def record_stage(self, report: StageReport):
        """Record counts and timing for one completed stage."""
        stage = report.stage
        self.reports.append(report)

        self.counters[f"{stage}:records_in"] += report.records_in
        self.counters[f"{stage}:records_out"] += report.records_out
        self.counters[f"{stage}:dropped"] += report.dropped
        self.counters[f"{stage}:flagged"] += report.flagged
        self.counters[f"{stage}:ambiguous"] += report.ambiguous
        self.counters["warnings"] += len(report.warnings)

        self.histograms["stage_duration_seconds"].append(report.duration_seconds)
        for name, value in report.details.items():
            self.gauges[f"{stage}:{name}"] = value

        for warning in report.warnings:
            logger.warning(f"[{stage}] {warning}")

    def record_resume(self, stage: str):
        self.counters[f"resumed_after:{stage}"] += 1

    def record_failure(self, stage: str):
        self.counters[f"{stage}:failed"] += 1

    def get_stats(self) -> Dict:
        """Get current statistics."""
        return {
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "histogram_counts": {k: len(v) for k, v in self.histograms.items()},
        }

    def summary(self) -> Dict:
        """Per-stage counts in run order plus total duration."""
        stages = [
            {
                "stage": r.stage,
                "in": r.records_in,
                "out": r.records_out,
                "dropped": r.dropped,
                "flagged": r.flagged,
                "ambiguous": r.ambiguous,
                "seconds": r.duration_seconds,
            }
            for r in self.reports
        ]
        return {
            "stages": stages,
            "total_seconds": round(sum(self.histograms["stage_duration_seconds"]), 4),
            "warnings": self.counters.get("warnings", 0),
        }
