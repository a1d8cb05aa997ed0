"""
Canonical schema for the job market pipeline.

JobRecord, Cluster and Keyword are the single source of truth for every
stage and every store. Collector-specific field names never leave the
normalizer.

This file uses Pydantic v2.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field, model_validator


class CareerLevel(str, Enum):
    """Career level assigned by the seniority classifier."""
    ENTRY = "ENTRY"
    MID = "MID"
    SENIOR = "SENIOR"
    MANAGEMENT = "MANAGEMENT"


class KeywordCategory(str, Enum):
    """Curated keyword categories."""
    TECH_STACK = "tech_stack"
    SOFT_SKILL = "soft_skill"
    BENEFIT = "benefit"
    CERTIFICATION = "certification"
    EDUCATION = "education"


# Fields that count towards completeness when choosing a duplicate survivor.
COMPLETENESS_FIELDS = (
    "title",
    "company",
    "location",
    "city",
    "state",
    "country",
    "salary_min",
    "salary_max",
    "employment_type",
    "contract_type",
    "description",
    "posted_date",
    "url",
)


class JobRecord(BaseModel):
    """One merged job posting, mutated in place by each stage."""

    job_id: str
    title: str = ""
    company: Optional[str] = None
    location: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None

    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    salary_avg: Optional[float] = None
    currency: str = "EUR"

    employment_type: Optional[str] = None
    contract_type: Optional[str] = None
    description: Optional[str] = None
    posted_date: Optional[datetime] = None
    url: Optional[str] = None
    source_tags: Set[str] = Field(default_factory=set)

    ingest_order: int = 0
    is_malformed: bool = False

    career_level: CareerLevel = CareerLevel.MID
    is_ambiguous: bool = False
    cluster_id: Optional[int] = None
    keywords: Set[str] = Field(default_factory=set)
    keywords_by_category: Dict[str, List[str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_salary(self) -> "JobRecord":
        if self.salary_min is not None and self.salary_max is not None:
            if self.salary_min > self.salary_max:
                raise ValueError(
                    f"salary_min ({self.salary_min}) must not exceed salary_max ({self.salary_max})"
                )
            self.salary_avg = round((self.salary_min + self.salary_max) / 2, 2)
        elif self.salary_min is not None or self.salary_max is not None:
            self.salary_avg = self.salary_min if self.salary_min is not None else self.salary_max
        else:
            self.salary_avg = None
        return self

    def non_null_field_count(self) -> int:
        """Number of populated completeness fields (empty strings count as null)."""
        count = 0
        for name in COMPLETENESS_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            count += 1
        return count

    def description_length(self) -> int:
        return len(self.description or "")

    def to_row(self) -> Dict:
        """JSON-compatible dict with sets rendered as sorted lists."""
        data = self.model_dump(mode="json")
        data["source_tags"] = sorted(self.source_tags)
        data["keywords"] = sorted(self.keywords)
        return data


class Cluster(BaseModel):
    """A group of similar jobs or terms around one centroid."""

    cluster_id: int
    centroid: List[float] = Field(default_factory=list)
    member_ids: List[str] = Field(default_factory=list)
    top_terms: List[str] = Field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_row(self) -> Dict:
        data = self.model_dump(mode="json")
        data["size"] = self.size
        return data


class Keyword(BaseModel):
    """A canonical skill, benefit, certification or education term."""

    keyword_id: int
    text: str
    category: KeywordCategory
    source_cluster_id: Optional[int] = None


class JobKeyword(BaseModel):
    """Join row between a job and a keyword."""

    job_id: str
    keyword_id: int
    relevance_score: float


class DuplicateAudit(BaseModel):
    """Audit entry for a record removed by the deduplicator."""

    removed_id: str
    survivor_id: str
    reason: str
    similarity: Optional[float] = None


class StageReport(BaseModel):
    """Per-stage counts so data quality regressions are visible."""

    stage: str
    records_in: int = 0
    records_out: int = 0
    dropped: int = 0
    flagged: int = 0
    ambiguous: int = 0
    duration_seconds: float = 0.0
    warnings: List[str] = Field(default_factory=list)
    details: Dict[str, float] = Field(default_factory=dict)


class PipelineResult(BaseModel):
    """Augmented batch returned by a pipeline run and handed to stores."""

    records: List[JobRecord] = Field(default_factory=list)
    clusters: List[Cluster] = Field(default_factory=list)
    keywords: List[Keyword] = Field(default_factory=list)
    job_keywords: List[JobKeyword] = Field(default_factory=list)
    duplicates: List[DuplicateAudit] = Field(default_factory=list)
    reports: List[StageReport] = Field(default_factory=list)
    metrics: Dict = Field(default_factory=dict)
