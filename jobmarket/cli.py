"""
Command line entry point.

    jobmarket jobs_stepstone.csv jobs_indeed.json --out results/ [--db-url URL]

Loads collector batches, runs the pipeline and writes the JSON store (and
PostgreSQL when a database URL is configured).
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from .config import PipelineConfig, configure_logging
from .errors import JobMarketError
from .pipeline.checkpoint import CheckpointManager
from .pipeline.loaders import load_many
from .pipeline.orchestrator import JobMarketPipeline
from .pipeline.store import JsonFileStore, PostgresStore

logger = logging.getLogger(__name__)


class CompositeStore:
    """
    Writes the same result to several stores in order.

    The first store that fails stops the chain, so stores later in the list
    keep their previous contents. Put the transactional store first.
    """

    def __init__(self, stores):
        self.stores = stores

    def write_batch(self, result, deadline=None):
        counts = {}
        for store in self.stores:
            counts.update(store.write_batch(result, deadline=deadline))
        return counts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobmarket",
        description="Normalize, deduplicate, cluster and keyword-tag scraped job postings",
    )
    parser.add_argument("inputs", nargs="+", help="CSV, JSON or JSONL collector files")
    parser.add_argument("--out", required=True, help="Output directory for the JSON store")
    parser.add_argument("--db-url", help="PostgreSQL connection string (default: JOBMARKET_DB_URL)")
    parser.add_argument("--k", type=int, help="Fixed number of job clusters (default: select over K_MIN..K_MAX)")
    parser.add_argument("--resume", action="store_true", help="Resume after the last completed stage")
    parser.add_argument("--checkpoint-dir", help="Checkpoint directory (default: <out>/checkpoints)")
    parser.add_argument("--timeout", type=float, help="Wall-clock budget per stage in seconds")
    parser.add_argument("--log-level", help="Logging level (default: JOBMARKET_LOG_LEVEL or INFO)")
    return parser


def print_summary(result) -> None:
    print(f"{'stage':<10} {'in':>7} {'out':>7} {'dropped':>8} {'flagged':>8} {'ambig.':>7} {'sec':>8}")
    for report in result.reports:
        print(
            f"{report.stage:<10} {report.records_in:>7} {report.records_out:>7} {report.dropped:>8} "
            f"{report.flagged:>8} {report.ambiguous:>7} {report.duration_seconds:>8.2f}"
        )
    print(
        f"jobs={len(result.records)} clusters={len(result.clusters)} keywords={len(result.keywords)} "
        f"links={len(result.job_keywords)} duplicates={len(result.duplicates)}"
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        configure_logging(args.log_level)
        config = PipelineConfig.from_env(
            job_clusters=args.k,
            db_url=args.db_url,
            checkpoint_dir=args.checkpoint_dir,
            stage_timeout_seconds=args.timeout,
        )

        out_dir = Path(args.out)
        stores = []
        if config.db_url:
            stores.append(PostgresStore(config.db_url))
        stores.append(JsonFileStore(out_dir))
        checkpoints = CheckpointManager(config.checkpoint_dir or out_dir / "checkpoints")

        raw_records = load_many(args.inputs)
        pipeline = JobMarketPipeline(config, store=CompositeStore(stores), checkpoints=checkpoints)
        result = pipeline.run(raw_records, resume=args.resume)
    except JobMarketError as e:
        logger.error(f"Pipeline failed: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print_summary(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
