"""
Record normalization.

Maps heterogeneous collector records (CSV exports, JSON APIs, browser
scraper dumps) onto the canonical JobRecord schema:
- Field aliases -> canonical field names
- Salary strings -> salary_min / salary_max / currency
- Absolute and relative dates -> UTC timestamps
- Composite locations -> city / state / country
- HTML / entity / Unicode cleanup of free text

Sub-parsers never raise. A record is only dropped when it has no title
and the drop_invalid policy is enabled; otherwise it is flagged.
"""

import time
import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models import JobRecord, StageReport
from .field_extractors import (
    clean_text,
    normalize_employment_type,
    parse_location,
    parse_posted_date,
    parse_salary,
)

logger = logging.getLogger(__name__)


# canonical field -> accepted raw field names (compared case-insensitively)
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "job_id": ("job_id", "id", "jobid", "external_id", "external_job_id"),
    "title": ("title", "job_title", "jobtitle", "position", "titel", "stellenbezeichnung", "name"),
    "company": ("company", "company_name", "companyname", "employer", "org_name", "unternehmen", "firma", "arbeitgeber"),
    "location": ("location", "location_raw", "job_location", "ort", "standort", "arbeitsort", "city", "candidate_required_location"),
    "salary": ("salary", "salary_range", "salary_raw", "compensation", "gehalt", "verguetung", "vergütung", "pay"),
    "salary_min": ("salary_min", "min_salary", "salary_from"),
    "salary_max": ("salary_max", "max_salary", "salary_to"),
    "currency": ("currency", "salary_currency", "waehrung", "währung"),
    "employment_type": ("employment_type", "job_type", "jobtype", "arbeitszeit", "schedule"),
    "contract_type": ("contract_type", "contract", "vertragsart", "anstellungsart", "contract_time"),
    "description": ("description", "job_description", "beschreibung", "stellenbeschreibung", "snippet", "summary", "text"),
    "posted_date": ("posted_date", "date_posted", "posted", "posted_at", "created_at", "publication_date", "datum", "veroeffentlicht", "veröffentlicht"),
    "url": ("url", "job_url", "link", "apply_url", "href"),
    "source": ("source", "source_name", "collector", "quelle"),
    "source_tags": ("source_tags", "sources"),
}


def _alias_index() -> Dict[str, str]:
    index = {}
    for canonical, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            index.setdefault(alias.lower(), canonical)
    return index


ALIAS_INDEX = _alias_index()


def map_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rename raw collector fields to canonical names.

    The first non-empty value wins when several aliases of the same field
    are present. Unknown fields are ignored.
    """
    mapped: Dict[str, Any] = {}
    for key, value in raw.items():
        canonical = ALIAS_INDEX.get(str(key).strip().lower())
        if canonical is None:
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        mapped.setdefault(canonical, value)
    return mapped


def _source_tags(mapped: Dict[str, Any]) -> Set[str]:
    tags: Set[str] = set()
    raw_tags = mapped.get("source_tags")
    if isinstance(raw_tags, (list, tuple, set)):
        tags.update(str(t).strip() for t in raw_tags if str(t).strip())
    elif isinstance(raw_tags, str):
        tags.update(t.strip() for t in raw_tags.split(",") if t.strip())
    source = mapped.get("source")
    if source and str(source).strip():
        tags.add(str(source).strip())
    return tags


def _to_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    low, _, _ = parse_salary(value)
    return low


def stable_job_id(source: str, key: str, ingest_order: int) -> str:
    """Deterministic 16-hex-char id for records arriving without one."""
    joined = f"{source}|{key}|{ingest_order}".lower()
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


class RecordNormalizer:
    """
    Normalizes raw merged records into JobRecords.

    Normalization is idempotent: feeding ``record.to_row()`` back through
    ``normalize`` yields an equal record.
    """

    def __init__(self, default_currency: str = "EUR", drop_invalid: bool = False,
                 now: Optional[datetime] = None):
        """
        Args:
            default_currency: Currency for salaries without a recognizable one
            drop_invalid: Drop records without a title instead of flagging them
            now: Anchor for relative dates (defaults to the time of each call)
        """
        self.default_currency = default_currency
        self.drop_invalid = drop_invalid
        self.now = now

    def normalize(self, raw: Dict[str, Any], ingest_order: int = 0) -> Optional[JobRecord]:
        """
        Normalize a single raw record.

        Args:
            raw: Raw record with collector-specific field names
            ingest_order: Position of the record in the merged input

        Returns:
            JobRecord, or None if the record is invalid and drop_invalid is set
        """
        mapped = map_fields(raw)

        title = clean_text(mapped.get("title")) or ""
        company = clean_text(mapped.get("company"))
        location = clean_text(mapped.get("location"))
        description = clean_text(mapped.get("description"))
        url = clean_text(mapped.get("url"))

        if not title and self.drop_invalid:
            return None

        salary_min, salary_max, currency = parse_salary(mapped.get("salary"), self.default_currency)
        explicit_min = _to_amount(mapped.get("salary_min"))
        explicit_max = _to_amount(mapped.get("salary_max"))
        if explicit_min is not None or explicit_max is not None:
            salary_min = explicit_min if explicit_min is not None else explicit_max
            salary_max = explicit_max if explicit_max is not None else explicit_min
        if salary_min is not None and salary_max is not None and salary_min > salary_max:
            salary_min, salary_max = salary_max, salary_min
        if mapped.get("currency"):
            currency = str(mapped["currency"]).strip().upper() or currency

        loc = parse_location(location)

        employment_type = normalize_employment_type(mapped.get("employment_type"))
        contract_type = clean_text(mapped.get("contract_type"))
        if employment_type is None and contract_type:
            employment_type = normalize_employment_type(contract_type)

        tags = _source_tags(mapped)
        source = sorted(tags)[0] if tags else "unknown"

        job_id = clean_text(mapped.get("job_id"))
        if not job_id:
            key = url or f"{title}|{company or ''}|{location or ''}"
            job_id = stable_job_id(source, key, ingest_order)

        return JobRecord(
            job_id=str(job_id),
            title=title,
            company=company,
            location=location,
            city=loc.city,
            state=loc.state,
            country=loc.country,
            salary_min=salary_min,
            salary_max=salary_max,
            currency=currency,
            employment_type=employment_type,
            contract_type=contract_type,
            description=description,
            posted_date=parse_posted_date(mapped.get("posted_date"), now=self.now),
            url=url,
            source_tags=tags,
            ingest_order=ingest_order,
            is_malformed=not title,
        )

    def normalize_batch(self, raws: Iterable[Dict[str, Any]]) -> Tuple[List[JobRecord], StageReport]:
        """
        Normalize a batch, assigning ingest order and unique ids.

        Returns:
            (records, report) where report counts dropped and malformed records
        """
        started = time.monotonic()
        records: List[JobRecord] = []
        seen_ids: Dict[str, int] = {}
        total = 0
        dropped = 0
        missing_salary = 0
        missing_date = 0

        for order, raw in enumerate(raws):
            total += 1
            record = self.normalize(raw, ingest_order=order)
            if record is None:
                dropped += 1
                continue

            # Never reuse an id within a batch
            if record.job_id in seen_ids:
                seen_ids[record.job_id] += 1
                record.job_id = f"{record.job_id}-{seen_ids[record.job_id]}"
            seen_ids.setdefault(record.job_id, 0)

            if record.salary_min is None:
                missing_salary += 1
            if record.posted_date is None:
                missing_date += 1
            records.append(record)

        malformed = sum(1 for r in records if r.is_malformed)
        report = StageReport(
            stage="normalize",
            records_in=total,
            records_out=len(records),
            dropped=dropped,
            flagged=malformed,
            duration_seconds=round(time.monotonic() - started, 4),
            details={
                "missing_salary": float(missing_salary),
                "missing_posted_date": float(missing_date),
            },
        )
        if malformed:
            report.warnings.append(f"{malformed} records without title kept as malformed")

        logger.info(
            f"Normalized {len(records)}/{total} records "
            f"(dropped={dropped}, malformed={malformed}, no_salary={missing_salary}, no_date={missing_date})"
        )
        return records, report
