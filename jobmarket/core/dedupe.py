"""
Duplicate detection across merged collector batches.

Three passes run in order:
1. Exact: identical (title, company, location, description) after normalization
2. Temporal: reposts sharing (title, company, location) keep the latest date
3. Fuzzy: char n-gram TF-IDF cosine on a weighted title/company/location key,
   grouped transitively with union-find

Reposts are collapsed before the fuzzy pass, so among records sharing
title, company and location the latest posting wins even when an older
repost carries a longer description.

Fuzzy scoring is blocked by the first character of the normalized company
name (split further by title initial when a block is too large). Pairs whose
companies start with different characters are never compared, so company
spellings that differ in the first letter are missed; in exchange the cost
drops from O(n^2) to the sum of squared block sizes.
"""

import re
import time
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sklearn.feature_extraction.text import TfidfVectorizer

from ..models import DuplicateAudit, JobRecord, StageReport
from .field_extractors import fold_key

logger = logging.getLogger(__name__)

EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)
NON_ALNUM_RE = re.compile(r"[^0-9a-z+#.]+")
# Dots survive only inside tokens (.net, node.js), not as sentence punctuation
STRAY_DOT_RE = re.compile(r"\.(?![0-9a-z])")
COMPANY_SUFFIX_RE = re.compile(
    r"\b(gmbh|ag|se|kg|kgaa|ug|mbh|co|inc|llc|ltd|corp|corporation|limited|holding)\b\.?",
    re.IGNORECASE,
)


class DisjointSet:
    """Union-find over record indices with union by size and path compression."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.size = [1] * size

    def find(self, index: int) -> int:
        root = index
        while self.parent[root] != root:
            root = self.parent[root]
        # Path compression
        while self.parent[index] != root:
            self.parent[index], index = root, self.parent[index]
        return root

    def union(self, a: int, b: int) -> int:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return root_a
        if self.size[root_a] < self.size[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        self.size[root_a] += self.size[root_b]
        return root_a

    def groups(self) -> Dict[int, List[int]]:
        """Root -> member indices, members in ascending order."""
        result: Dict[int, List[int]] = defaultdict(list)
        for index in range(len(self.parent)):
            result[self.find(index)].append(index)
        return dict(result)


class DedupResult(BaseModel):
    records: List[JobRecord]
    audit: List[DuplicateAudit] = Field(default_factory=list)
    report: StageReport


def _norm(value: Optional[str]) -> str:
    if not value:
        return ""
    text = STRAY_DOT_RE.sub(" ", NON_ALNUM_RE.sub(" ", fold_key(value)))
    return " ".join(text.split())


def normalize_company(name: Optional[str]) -> str:
    """Lower-case company without legal-form suffixes or punctuation."""
    if not name:
        return ""
    return _norm(COMPANY_SUFFIX_RE.sub(" ", name))


def location_key(record: JobRecord) -> str:
    """Canonical city when known so spelling variants compare equal."""
    return _norm(record.city or record.location)


def exact_key(record: JobRecord) -> Tuple[str, str, str, str]:
    return (
        _norm(record.title),
        _norm(record.company),
        location_key(record),
        _norm(record.description),
    )


def composite_key(record: JobRecord) -> str:
    """Weighted key: title and company twice, location once."""
    title = _norm(record.title)
    company = normalize_company(record.company)
    return " ".join(part for part in (title, title, company, company, location_key(record)) if part)


def survivor_key(record: JobRecord):
    """Ranking used to pick a group representative (max wins)."""
    return (
        record.non_null_field_count(),
        record.description_length(),
        record.posted_date or EPOCH_MIN,
        -record.ingest_order,
    )


class Deduplicator:
    """
    Collapses duplicate postings into one representative per job.

    Removed records are reported as DuplicateAudit entries that always point
    at the record that finally survived.
    """

    def __init__(self, threshold: float = 0.85, ngram_range: Tuple[int, int] = (3, 5),
                 max_block_size: int = 2000, workers: int = 4):
        """
        Args:
            threshold: Minimum cosine similarity for a fuzzy duplicate pair
            ngram_range: Character n-gram range of the composite key vectors
            max_block_size: Blocks above this size are split by title initial
            workers: Threads used to score blocks
        """
        self.threshold = threshold
        self.ngram_range = tuple(ngram_range)
        self.max_block_size = max_block_size
        self.workers = max(1, workers)

    def deduplicate(self, records: List[JobRecord]) -> DedupResult:
        started = time.monotonic()
        removed: Dict[str, Tuple[str, str, Optional[float]]] = {}

        survivors = self._exact_pass(records, removed)
        exact_count = len(removed)

        survivors = self._temporal_pass(survivors, removed)
        temporal_count = len(removed) - exact_count

        survivors = self._fuzzy_pass(survivors, removed)
        fuzzy_count = len(removed) - exact_count - temporal_count

        audit = self._build_audit(removed)
        survivors.sort(key=lambda r: r.ingest_order)

        report = StageReport(
            stage="dedupe",
            records_in=len(records),
            records_out=len(survivors),
            dropped=len(removed),
            duration_seconds=round(time.monotonic() - started, 4),
            details={
                "exact": float(exact_count),
                "fuzzy": float(fuzzy_count),
                "temporal": float(temporal_count),
            },
        )
        logger.info(
            f"Deduplicated {len(records)} -> {len(survivors)} records "
            f"(exact={exact_count}, temporal={temporal_count}, fuzzy={fuzzy_count})"
        )
        return DedupResult(records=survivors, audit=audit, report=report)

    # ------------------------------------------------------------------ passes

    def _exact_pass(self, records: List[JobRecord], removed: Dict) -> List[JobRecord]:
        """
        Collapse records identical on the exact key.

        Keeps the most complete member, not simply the first seen; ingest
        order only breaks ties between equally complete records.
        """
        groups: Dict[Tuple, List[JobRecord]] = defaultdict(list)
        for record in records:
            groups[exact_key(record)].append(record)

        survivors = []
        for members in groups.values():
            # Identical on the key fields: the first seen of the most complete wins
            keeper = max(members, key=lambda r: (r.non_null_field_count(), r.description_length(), -r.ingest_order))
            self._absorb(keeper, members, removed, "exact")
            survivors.append(keeper)
        return survivors

    def _fuzzy_pass(self, records: List[JobRecord], removed: Dict) -> List[JobRecord]:
        candidates = [i for i, r in enumerate(records) if not r.is_malformed and r.title.strip()]
        if len(candidates) < 2:
            return records

        keys = [composite_key(records[i]) for i in candidates]
        vectorizer = TfidfVectorizer(analyzer="char_wb", ngram_range=self.ngram_range, lowercase=True)
        try:
            matrix = vectorizer.fit_transform(keys).tocsr()
        except ValueError:
            logger.warning("Fuzzy dedupe skipped: composite keys produced no n-grams")
            return records

        blocks = self._blocks([records[i] for i in candidates])
        logger.debug(f"Fuzzy dedupe: {len(candidates)} records in {len(blocks)} blocks")

        # Shards share nothing; merging happens below on one thread
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            shard_pairs = list(executor.map(lambda block: self._score_block(matrix, block), blocks))

        dsu = DisjointSet(len(candidates))
        for pairs in shard_pairs:
            for a, b, _ in pairs:
                dsu.union(a, b)

        candidate_set = set(candidates)
        survivors = [r for i, r in enumerate(records) if i not in candidate_set]
        for members in dsu.groups().values():
            group = [records[candidates[m]] for m in members]
            keeper_pos = max(members, key=lambda m: survivor_key(records[candidates[m]]))
            keeper = records[candidates[keeper_pos]]
            for m in members:
                if m == keeper_pos:
                    continue
                score = float(matrix[m].multiply(matrix[keeper_pos]).sum())
                removed[records[candidates[m]].job_id] = (keeper.job_id, "fuzzy", round(score, 4))
            self._merge_tags(keeper, group)
            survivors.append(keeper)
        return survivors

    def _temporal_pass(self, records: List[JobRecord], removed: Dict) -> List[JobRecord]:
        groups: Dict[Tuple[str, str, str], List[JobRecord]] = defaultdict(list)
        survivors = []
        for record in records:
            if record.is_malformed or not record.title.strip():
                survivors.append(record)
                continue
            groups[(_norm(record.title), normalize_company(record.company), location_key(record))].append(record)

        for members in groups.values():
            dates = {m.posted_date for m in members}
            if len(members) == 1 or len(dates) == 1:
                survivors.extend(members)
                continue
            # Undated loses to dated; equal dates keep the earliest ingest order
            keeper = max(
                members,
                key=lambda r: (r.posted_date is not None, r.posted_date or EPOCH_MIN, -r.ingest_order),
            )
            self._absorb(keeper, members, removed, "temporal")
            survivors.append(keeper)
        return survivors

    # ----------------------------------------------------------------- helpers

    def _blocks(self, records: List[JobRecord]) -> List[List[int]]:
        by_company: Dict[str, List[int]] = defaultdict(list)
        for i, record in enumerate(records):
            company = normalize_company(record.company)
            by_company[company[:1]].append(i)

        blocks = []
        for members in by_company.values():
            if len(members) <= self.max_block_size:
                blocks.append(members)
                continue
            by_title: Dict[str, List[int]] = defaultdict(list)
            for i in members:
                by_title[_norm(records[i].title)[:1]].append(i)
            logger.debug(f"Split oversized block of {len(members)} into {len(by_title)} title blocks")
            blocks.extend(by_title.values())
        return [b for b in blocks if len(b) > 1]

    def _score_block(self, matrix, block: List[int]) -> List[Tuple[int, int, float]]:
        sub = matrix[block]
        sims = (sub @ sub.T).tocoo()
        pairs = []
        for row, col, value in zip(sims.row, sims.col, sims.data):
            # Rows are L2-normalized, so the dot product is the cosine
            if row < col and value >= self.threshold - 1e-9:
                pairs.append((block[row], block[col], float(value)))
        return pairs

    @staticmethod
    def _merge_tags(keeper: JobRecord, members: List[JobRecord]) -> None:
        tags = set(keeper.source_tags)
        for member in members:
            tags.update(member.source_tags)
        keeper.source_tags = tags

    def _absorb(self, keeper: JobRecord, members: List[JobRecord], removed: Dict, reason: str) -> None:
        for member in members:
            if member is keeper:
                continue
            removed[member.job_id] = (keeper.job_id, reason, None)
        self._merge_tags(keeper, members)

    @staticmethod
    def _build_audit(removed: Dict[str, Tuple[str, str, Optional[float]]]) -> List[DuplicateAudit]:
        def final_survivor(job_id: str) -> str:
            seen = set()
            while job_id in removed and job_id not in seen:
                seen.add(job_id)
                job_id = removed[job_id][0]
            return job_id

        return [
            DuplicateAudit(
                removed_id=removed_id,
                survivor_id=final_survivor(survivor_id),
                reason=reason,
                similarity=similarity,
            )
            for removed_id, (survivor_id, reason, similarity) in removed.items()
        ]
