"""
Pipeline orchestrator.

Runs the stages in order:
    normalize -> dedupe -> seniority -> embed -> cluster -> tag -> store

Every stage runs under the configured wall-clock budget. A completed stage
writes an immutable checkpoint; a stage that times out writes nothing, so a
resumed run restarts after the last completed stage. Embedding vectors are
not checkpointed and are refit from the checkpointed records on resume.
The store is written once, at the end, in one transaction.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import PipelineConfig
from ..core.dedupe import Deduplicator
from ..core.normalize import RecordNormalizer
from ..core.seniority import SeniorityClassifier, SeniorityRules
from ..errors import StageTimeoutError, VocabularyMismatchError
from ..models import (
    Cluster,
    DuplicateAudit,
    JobKeyword,
    JobRecord,
    Keyword,
    PipelineResult,
    StageReport,
)
from .budget import StageDeadline
from .checkpoint import STAGES, CheckpointManager, input_fingerprint
from .clusterer import KMeansClusterer
from .embedder import Embeddings, TextEmbedder
from .keyword_tagger import CertificationFilter, KeywordExtractor, KeywordLexicon, KeywordTagger
from .monitoring import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class PipelineState:
    """Mutable hand-off between stages; everything but embeddings is checkpointed."""

    records: List[JobRecord] = field(default_factory=list)
    duplicates: List[DuplicateAudit] = field(default_factory=list)
    clusters: List[Cluster] = field(default_factory=list)
    keywords: List[Keyword] = field(default_factory=list)
    job_keywords: List[JobKeyword] = field(default_factory=list)
    reports: List[StageReport] = field(default_factory=list)
    embedding_fingerprint: Optional[str] = None
    embeddings: Optional[Embeddings] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "records": [r.to_row() for r in self.records],
            "duplicates": [d.model_dump(mode="json") for d in self.duplicates],
            "clusters": [c.to_row() for c in self.clusters],
            "keywords": [k.model_dump(mode="json") for k in self.keywords],
            "job_keywords": [jk.model_dump(mode="json") for jk in self.job_keywords],
            "reports": [r.model_dump(mode="json") for r in self.reports],
            "embedding_fingerprint": self.embedding_fingerprint,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PipelineState":
        return cls(
            records=[JobRecord.model_validate(r) for r in payload.get("records", [])],
            duplicates=[DuplicateAudit.model_validate(d) for d in payload.get("duplicates", [])],
            clusters=[Cluster.model_validate(c) for c in payload.get("clusters", [])],
            keywords=[Keyword.model_validate(k) for k in payload.get("keywords", [])],
            job_keywords=[JobKeyword.model_validate(jk) for jk in payload.get("job_keywords", [])],
            reports=[StageReport.model_validate(r) for r in payload.get("reports", [])],
            embedding_fingerprint=payload.get("embedding_fingerprint"),
        )


class JobMarketPipeline:
    """
    Batch pipeline over one corpus snapshot.

    Args:
        config: Pipeline configuration
        store: Optional store with write_batch(result) (PostgresStore, JsonFileStore)
        checkpoints: Optional CheckpointManager enabling resume
    """

    def __init__(self, config: Optional[PipelineConfig] = None, store=None,
                 checkpoints: Optional[CheckpointManager] = None):
        self.config = config or PipelineConfig()
        self.store = store
        self.checkpoints = checkpoints
        self.metrics = MetricsCollector()
        self.deadline = StageDeadline("idle")

        rules = (
            SeniorityRules.from_file(self.config.seniority_rules_path)
            if self.config.seniority_rules_path else SeniorityRules()
        )
        lexicon = (
            KeywordLexicon.from_file(self.config.lexicon_path)
            if self.config.lexicon_path else KeywordLexicon()
        )

        self.normalizer = RecordNormalizer(
            default_currency=self.config.default_currency,
            drop_invalid=self.config.drop_invalid,
        )
        self.deduplicator = Deduplicator(
            threshold=self.config.duplicate_threshold,
            ngram_range=self.config.ngram_range,
            max_block_size=self.config.max_block_size,
            workers=self.config.workers,
        )
        self.classifier = SeniorityClassifier(rules)
        self.embedder = TextEmbedder(
            max_features=self.config.max_features,
            min_df=self.config.min_df,
            max_df=self.config.max_df,
        )
        self.clusterer = KMeansClusterer(
            k_range=(self.config.k_min, self.config.k_max),
            n_init=self.config.n_init,
            random_state=self.config.random_seed,
        )
        self.extractor = KeywordExtractor(
            lexicon=lexicon,
            cert_filter=CertificationFilter(
                min_len=self.config.cert_min_len,
                max_len=self.config.cert_max_len,
                blocklist=lexicon.company_blocklist,
                allowlist=lexicon.certification_allowlist,
            ),
            term_clusters=self.config.term_clusters,
            random_state=self.config.random_seed,
        )
        self.tagger = KeywordTagger()

    # ------------------------------------------------------------------ stages

    def _normalize(self, state: PipelineState, raw_records: List[Dict[str, Any]]) -> StageReport:
        state.records, report = self.normalizer.normalize_batch(raw_records)
        return report

    def _dedupe(self, state: PipelineState, raw_records) -> StageReport:
        result = self.deduplicator.deduplicate(state.records)
        self.deadline.check()
        state.records = result.records
        state.duplicates = result.audit
        return result.report

    def _seniority(self, state: PipelineState, raw_records) -> StageReport:
        return self.classifier.classify_batch(state.records)

    def _embed(self, state: PipelineState, raw_records) -> StageReport:
        embeddings = self.embedder.fit_transform(state.records)
        self.deadline.check()
        state.embeddings = embeddings
        state.embedding_fingerprint = state.embeddings.fingerprint
        return state.embeddings.report

    def _ensure_embeddings(self, state: PipelineState) -> Embeddings:
        """Refit after a resume; the corpus must be the one checkpointed."""
        if state.embeddings is None:
            logger.info("Re-fitting embeddings from checkpointed records")
            embeddings = self.embedder.fit_transform(state.records)
            if state.embedding_fingerprint and embeddings.fingerprint != state.embedding_fingerprint:
                raise VocabularyMismatchError(state.embedding_fingerprint, embeddings.fingerprint)
            state.embeddings = embeddings
            state.embedding_fingerprint = embeddings.fingerprint
        return state.embeddings

    def _cluster(self, state: PipelineState, raw_records) -> StageReport:
        embeddings = self._ensure_embeddings(state)
        self.deadline.check()
        result = self.clusterer.fit(embeddings.vectors, embeddings.ids, k=self.config.job_clusters,
                                    deadline=self.deadline)
        self.deadline.check()
        for cluster in result.clusters:
            cluster.top_terms = self.embedder.top_terms(cluster.centroid)
        for record in state.records:
            record.cluster_id = result.assignments.get(record.job_id)
        state.clusters = result.clusters
        return result.report

    def _tag(self, state: PipelineState, raw_records) -> StageReport:
        self._ensure_embeddings(state)
        keywords = self.extractor.extract(state.records, self.embedder, self.clusterer)
        self.deadline.check()
        state.keywords = keywords
        state.job_keywords, report = self.tagger.tag(state.records, keywords)
        return report

    # --------------------------------------------------------------- machinery

    def _timed_out(self, stage: str, budget: float) -> StageTimeoutError:
        self.metrics.record_failure(stage)
        logger.error(f"Stage '{stage}' exceeded its budget of {budget}s; aborting run")
        return StageTimeoutError(stage, budget)

    def _run_with_budget(self, stage: str, fn: Callable[[], Any]) -> Any:
        """
        Run one stage under its wall-clock budget.

        The stage runs on a daemon thread so an overrun cannot keep the
        process alive. Stages call ``self.deadline.check()`` between steps,
        so an abandoned stage stops at its next check instead of running on.
        """
        deadline = StageDeadline(stage, self.config.stage_timeout_seconds)
        self.deadline = deadline
        if not deadline.limited:
            return fn()

        outcome: Dict[str, Any] = {}

        def target():
            try:
                outcome["value"] = fn()
            except BaseException as e:
                outcome["error"] = e

        worker = threading.Thread(target=target, name=f"stage-{stage}", daemon=True)
        worker.start()
        worker.join(deadline.remaining())

        if worker.is_alive():
            raise self._timed_out(stage, deadline.budget_seconds)
        error = outcome.get("error")
        if isinstance(error, StageTimeoutError):
            raise self._timed_out(stage, deadline.budget_seconds)
        if error is not None:
            raise error
        return outcome["value"]

    def _write_store(self, result: PipelineResult) -> Dict[str, int]:
        """Write on the calling thread; the store refuses to commit past the deadline."""
        deadline = StageDeadline("store", self.config.stage_timeout_seconds)
        self.deadline = deadline
        try:
            return self.store.write_batch(result, deadline=deadline)
        except StageTimeoutError:
            raise self._timed_out("store", deadline.budget_seconds)

    def _resume_state(self, fingerprint: str, resume: bool) -> Tuple[PipelineState, int]:
        if self.checkpoints is None:
            return PipelineState(), 0

        if resume:
            if self.checkpoints.matches(fingerprint):
                latest = self.checkpoints.latest()
                if latest is not None:
                    stage, payload = latest
                    logger.info(f"Resuming after completed stage '{stage}'")
                    self.metrics.record_resume(stage)
                    return PipelineState.from_payload(payload), STAGES.index(stage) + 1
            else:
                logger.warning("Checkpoints belong to a different input batch; starting over")

        self.checkpoints.start(fingerprint, self.config.snapshot())
        return PipelineState(), 0

    def run(self, raw_records: List[Dict[str, Any]], resume: bool = False) -> PipelineResult:
        """
        Run the pipeline over a batch of raw collector records.

        Args:
            raw_records: Raw records with collector-specific field names
            resume: Continue after the last completed checkpoint when it
                belongs to the same input batch

        Returns:
            PipelineResult with records, clusters, keywords, join rows,
            duplicate audit, per-stage reports and metrics

        Raises:
            StageTimeoutError: A stage exceeded its budget (checkpoints kept)
            VocabularyMismatchError: Embeddings do not match the corpus
            StoreError: Persisting the result failed
        """
        started = time.monotonic()
        fingerprint = input_fingerprint(raw_records)
        state, start_index = self._resume_state(fingerprint, resume)
        for report in state.reports:
            self.metrics.record_stage(report)

        handlers = {
            "normalize": self._normalize,
            "dedupe": self._dedupe,
            "seniority": self._seniority,
            "embed": self._embed,
            "cluster": self._cluster,
            "tag": self._tag,
        }

        for stage in STAGES[start_index:]:
            logger.info(f"Stage '{stage}' starting")
            report = self._run_with_budget(stage, lambda: handlers[stage](state, raw_records))
            state.reports.append(report)
            self.metrics.record_stage(report)
            if self.checkpoints is not None:
                self.checkpoints.save(stage, state.to_payload())

        result = PipelineResult(
            records=state.records,
            clusters=state.clusters,
            keywords=state.keywords,
            job_keywords=state.job_keywords,
            duplicates=state.duplicates,
            reports=state.reports,
        )

        if self.store is not None:
            store_started = time.monotonic()
            counts = self._write_store(result)
            store_report = StageReport(
                stage="store",
                records_in=len(result.records),
                records_out=counts.get("jobs", len(result.records)),
                duration_seconds=round(time.monotonic() - store_started, 4),
                details={name: float(count) for name, count in counts.items()},
            )
            result.reports.append(store_report)
            self.metrics.record_stage(store_report)

        result.metrics = self.metrics.summary()
        logger.info(
            f"Pipeline finished in {time.monotonic() - started:.2f}s: "
            f"{len(result.records)} jobs, {len(result.clusters)} clusters, {len(result.keywords)} keywords"
        )
        return result
