"""
Result stores.

PostgresStore writes clusters, jobs, keywords, job-keyword links and the
duplicate audit in a single transaction, so a reader never sees a job whose
cluster_id has no clusters row. Each run replaces the previous one (clusters
are recomputed wholesale, never updated incrementally).

JsonFileStore is the flat-file alternative with the same relationships.
"""

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Dict, Optional

import psycopg2
from psycopg2.extras import execute_values

from ..errors import StageTimeoutError, StoreError
from ..models import PipelineResult
from .budget import StageDeadline

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS clusters (
    cluster_id INTEGER PRIMARY KEY,
    size INTEGER NOT NULL,
    centroid DOUBLE PRECISION[] NOT NULL,
    top_terms TEXT[] NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    company TEXT,
    location TEXT,
    city TEXT,
    state TEXT,
    country TEXT,
    salary_min NUMERIC,
    salary_max NUMERIC,
    salary_avg NUMERIC,
    currency TEXT NOT NULL DEFAULT 'EUR',
    employment_type TEXT,
    contract_type TEXT,
    description TEXT,
    posted_date TIMESTAMPTZ,
    url TEXT,
    source_tags TEXT[] NOT NULL DEFAULT '{}',
    career_level TEXT NOT NULL DEFAULT 'MID',
    is_ambiguous BOOLEAN NOT NULL DEFAULT FALSE,
    is_malformed BOOLEAN NOT NULL DEFAULT FALSE,
    cluster_id INTEGER REFERENCES clusters(cluster_id),
    keywords TEXT[] NOT NULL DEFAULT '{}',
    CHECK (salary_min IS NULL OR salary_max IS NULL OR salary_min <= salary_max)
);

CREATE TABLE IF NOT EXISTS keywords (
    keyword_id INTEGER PRIMARY KEY,
    text TEXT NOT NULL,
    category TEXT NOT NULL,
    source_cluster_id INTEGER,
    UNIQUE (text, category)
);

CREATE TABLE IF NOT EXISTS job_keywords (
    job_id TEXT NOT NULL REFERENCES jobs(job_id) ON DELETE CASCADE,
    keyword_id INTEGER NOT NULL REFERENCES keywords(keyword_id) ON DELETE CASCADE,
    relevance_score REAL NOT NULL,
    PRIMARY KEY (job_id, keyword_id)
);

CREATE TABLE IF NOT EXISTS duplicate_audit (
    removed_id TEXT PRIMARY KEY,
    survivor_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    similarity REAL
);

CREATE INDEX IF NOT EXISTS idx_jobs_cluster_id ON jobs(cluster_id);
CREATE INDEX IF NOT EXISTS idx_job_keywords_keyword_id ON job_keywords(keyword_id);
"""

JOB_COLUMNS = (
    "job_id", "title", "company", "location", "city", "state", "country",
    "salary_min", "salary_max", "salary_avg", "currency", "employment_type",
    "contract_type", "description", "posted_date", "url", "source_tags",
    "career_level", "is_ambiguous", "is_malformed", "cluster_id", "keywords",
)


class PostgresStore:
    """Transactional PostgreSQL writer."""

    def __init__(self, db_url: str, page_size: int = 500):
        """
        Args:
            db_url: PostgreSQL connection string
            page_size: Rows per execute_values statement
        """
        self.db_url = db_url
        self.page_size = page_size

    def _get_db_conn(self):
        """Get database connection."""
        try:
            return psycopg2.connect(self.db_url, connect_timeout=5)
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise StoreError(f"Failed to connect to database: {e}")

    def ensure_schema(self):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Schema creation failed: {e}", exc_info=True)
            raise StoreError(f"Schema creation failed: {e}")
        finally:
            conn.close()

    @staticmethod
    def _job_row(record):
        return (
            record.job_id, record.title, record.company, record.location, record.city,
            record.state, record.country, record.salary_min, record.salary_max,
            record.salary_avg, record.currency, record.employment_type, record.contract_type,
            record.description, record.posted_date, record.url, sorted(record.source_tags),
            record.career_level.value, record.is_ambiguous, record.is_malformed,
            record.cluster_id, sorted(record.keywords),
        )

    def write_batch(self, result: PipelineResult, deadline: Optional[StageDeadline] = None) -> Dict[str, int]:
        """
        Replace stored results with this run, in one transaction.

        Order: clusters, jobs, keywords, job_keywords, duplicate_audit.

        Args:
            result: Pipeline output to persist
            deadline: Optional stage budget; statements are capped by the time
                left and nothing is committed once it has passed

        Returns:
            Row counts per table

        Raises:
            StoreError: On any failure (the transaction is rolled back)
            StageTimeoutError: The budget ran out (the transaction is rolled back)
        """
        deadline = deadline or StageDeadline("store")
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                if deadline.limited:
                    cur.execute("SET LOCAL statement_timeout = %s", (max(1, int(deadline.remaining() * 1000)),))
                cur.execute(SCHEMA_SQL)
                cur.execute("DELETE FROM job_keywords")
                cur.execute("DELETE FROM duplicate_audit")
                cur.execute("DELETE FROM jobs")
                cur.execute("DELETE FROM keywords")
                cur.execute("DELETE FROM clusters")

                if result.clusters:
                    execute_values(
                        cur,
                        "INSERT INTO clusters (cluster_id, size, centroid, top_terms) VALUES %s",
                        [(c.cluster_id, c.size, c.centroid, c.top_terms) for c in result.clusters],
                        page_size=self.page_size,
                    )
                if result.records:
                    execute_values(
                        cur,
                        f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES %s",
                        [self._job_row(r) for r in result.records],
                        page_size=self.page_size,
                    )
                if result.keywords:
                    execute_values(
                        cur,
                        "INSERT INTO keywords (keyword_id, text, category, source_cluster_id) VALUES %s",
                        [(k.keyword_id, k.text, k.category.value, k.source_cluster_id) for k in result.keywords],
                        page_size=self.page_size,
                    )
                if result.job_keywords:
                    execute_values(
                        cur,
                        "INSERT INTO job_keywords (job_id, keyword_id, relevance_score) VALUES %s",
                        [(jk.job_id, jk.keyword_id, jk.relevance_score) for jk in result.job_keywords],
                        page_size=self.page_size,
                    )
                if result.duplicates:
                    execute_values(
                        cur,
                        "INSERT INTO duplicate_audit (removed_id, survivor_id, reason, similarity) VALUES %s",
                        [(d.removed_id, d.survivor_id, d.reason, d.similarity) for d in result.duplicates],
                        page_size=self.page_size,
                    )
            deadline.check()
            conn.commit()
        except StageTimeoutError:
            conn.rollback()
            logger.error("Store budget exhausted before commit, rolled back")
            raise
        except Exception as e:
            conn.rollback()
            if deadline.expired():
                logger.error(f"Store statement cancelled by budget, rolled back: {e}")
                raise StageTimeoutError(deadline.stage, deadline.budget_seconds)
            logger.error(f"Failed to write batch, rolled back: {e}", exc_info=True)
            raise StoreError(f"Failed to write batch: {e}")
        finally:
            conn.close()

        counts = {
            "clusters": len(result.clusters),
            "jobs": len(result.records),
            "keywords": len(result.keywords),
            "job_keywords": len(result.job_keywords),
            "duplicate_audit": len(result.duplicates),
        }
        logger.info(f"Stored batch in PostgreSQL: {counts}")
        return counts


class JsonFileStore:
    """Writes the result as JSON files; all files are replaced together."""

    FILES = ("jobs", "clusters", "keywords", "job_keywords", "duplicates")

    def __init__(self, out_dir):
        self.out_dir = Path(out_dir)

    def write_batch(self, result: PipelineResult, deadline: Optional[StageDeadline] = None) -> Dict[str, int]:
        deadline = deadline or StageDeadline("store")
        self.out_dir.mkdir(parents=True, exist_ok=True)
        payloads = {
            "jobs": [r.to_row() for r in result.records],
            "clusters": [c.to_row() for c in result.clusters],
            "keywords": [k.model_dump(mode="json") for k in result.keywords],
            "job_keywords": [jk.model_dump(mode="json") for jk in result.job_keywords],
            "duplicates": [d.model_dump(mode="json") for d in result.duplicates],
        }

        temp_paths = {}
        try:
            for name, payload in payloads.items():
                fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self.out_dir)
                temp_paths[name] = tmp_name
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, ensure_ascii=False, indent=2)
        except (OSError, TypeError, ValueError) as e:
            for tmp_name in temp_paths.values():
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
            logger.error(f"Failed to write JSON store: {e}", exc_info=True)
            raise StoreError(f"Failed to write JSON store in {self.out_dir}: {e}")

        if deadline.expired():
            for tmp_name in temp_paths.values():
                os.unlink(tmp_name)
            logger.error(f"Store budget exhausted, leaving {self.out_dir} unchanged")
            deadline.check()

        for name, tmp_name in temp_paths.items():
            os.replace(tmp_name, self.out_dir / f"{name}.json")

        counts = {name: len(payload) for name, payload in payloads.items()}
        logger.info(f"Stored batch in {self.out_dir}: {counts}")
        return counts
