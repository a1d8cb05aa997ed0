"""
Career level classification.

Maps (title, contract_type) to one of ENTRY / MID / SENIOR / MANAGEMENT with a
strict priority order:
1. Student / intern / apprenticeship contract -> ENTRY (always wins)
2. Management marker in title -> MANAGEMENT
3. Senior marker in title -> SENIOR
4. Junior marker in title -> ENTRY
5. Nothing matched -> MID

A record is flagged ambiguous when more than one of rules 1-4 matched.

Whether a bare "Manager" title denotes personnel responsibility differs by
industry (consulting uses it for senior individual contributors), so the
manager handling is driven by SeniorityRules: explicit management compounds,
an individual-contributor exception list and a flag for bare "manager".
"""

import re
import json
import time
import logging
from collections import Counter
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from ..errors import ConfigError
from ..models import CareerLevel, JobRecord, StageReport

logger = logging.getLogger(__name__)


@dataclass
class SeniorityRules:
    """Injectable keyword lists for the classifier."""

    contract_patterns: List[str] = field(default_factory=lambda: [
        "werkstudent", "werkstudentin", "working student", "praktikum", "praktikant",
        "praktikantin", "internship", "intern", "ausbildung", "azubi", "apprenticeship",
        "trainee", "duales studium", "dualer student", "student", "abschlussarbeit", "thesis",
    ])
    management_markers: List[str] = field(default_factory=lambda: [
        "head of", "head", "director", "direktor", "vp", "vice president", "chief", "cto",
        "ceo", "cfo", "coo", "cio", "teamlead", "team lead", "geschäftsführer",
        "geschaeftsfuehrer", "managing director", "bereichsleitung", "abteilungsleitung",
    ])
    # Matched as substrings so German compounds (Teamleiter, Stationsleitung) hit
    management_substrings: List[str] = field(default_factory=lambda: ["leiter", "leitung", "teamlead"])
    management_compounds: List[str] = field(default_factory=lambda: [
        "engineering manager", "team manager", "people manager", "it manager",
        "general manager", "development manager", "delivery manager", "store manager",
        "department manager", "branch manager", "plant manager", "manager of",
    ])
    ic_manager_exceptions: List[str] = field(default_factory=lambda: [
        "product manager", "project manager", "account manager", "key account manager",
        "program manager", "programme manager", "marketing manager", "campaign manager",
        "community manager", "office manager", "case manager", "content manager",
        "social media manager", "sales manager", "category manager", "release manager",
    ])
    bare_manager_is_management: bool = False
    senior_markers: List[str] = field(default_factory=lambda: [
        "senior", "sr", "lead", "principal", "staff", "expert", "experte", "architect",
        "architekt",
    ])
    junior_markers: List[str] = field(default_factory=lambda: [
        "junior", "jr", "entry", "entry level", "graduate", "apprentice", "berufseinsteiger",
        "einsteiger", "absolvent",
    ])

    @classmethod
    def from_dict(cls, data: Dict) -> "SeniorityRules":
        """Build rules from a mapping; missing keys keep their defaults."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown seniority rule keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: str) -> "SeniorityRules":
        try:
            with open(Path(path), "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not load seniority rules from {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Seniority rules in {path} must be a JSON object")
        return cls.from_dict(data)


def compile_terms(terms: Iterable[str]) -> Optional[Pattern]:
    """Case-insensitive alternation with word boundaries, longest term first."""
    cleaned = sorted({t.strip().lower() for t in terms if t and t.strip()}, key=lambda t: (-len(t), t))
    if not cleaned:
        return None
    parts = [r"\s+".join(re.escape(word) for word in term.split()) for term in cleaned]
    return re.compile(r"(?<!\w)(?:" + "|".join(parts) + r")(?!\w)", re.IGNORECASE)


class SeniorityClassifier:
    """Deterministic single-pass career level classifier."""

    BARE_MANAGER_RE = re.compile(r"(?<!\w)manager(?!\w)", re.IGNORECASE)

    def __init__(self, rules: Optional[SeniorityRules] = None):
        self.rules = rules or SeniorityRules()
        self._contract_re = compile_terms(self.rules.contract_patterns)
        self._management_re = compile_terms(self.rules.management_markers)
        self._compound_re = compile_terms(self.rules.management_compounds)
        self._exception_re = compile_terms(self.rules.ic_manager_exceptions)
        self._senior_re = compile_terms(self.rules.senior_markers)
        self._junior_re = compile_terms(self.rules.junior_markers)
        self._substrings = [s.lower() for s in self.rules.management_substrings if s]

    @staticmethod
    def _hit(pattern: Optional[Pattern], text: str) -> bool:
        return bool(pattern and text and pattern.search(text))

    def _is_management(self, title: str) -> bool:
        lowered = title.lower()
        if self._hit(self._management_re, title):
            return True
        if any(s in lowered for s in self._substrings):
            return True
        if self._hit(self._compound_re, title):
            return True
        if self.rules.bare_manager_is_management:
            remainder = self._exception_re.sub(" ", title) if self._exception_re else title
            return bool(self.BARE_MANAGER_RE.search(remainder))
        return False

    def signals(self, title: Optional[str], contract_type: Optional[str] = None) -> Dict[str, bool]:
        """Which of the four rules fire, before priority resolution."""
        title = title or ""
        return {
            "contract": self._hit(self._contract_re, contract_type or ""),
            "management": self._is_management(title),
            "senior": self._hit(self._senior_re, title),
            "junior": self._hit(self._junior_re, title),
        }

    def classify(self, title: Optional[str], contract_type: Optional[str] = None) -> Tuple[CareerLevel, bool]:
        """
        Classify one title.

        Args:
            title: Job title
            contract_type: Raw contract text (e.g. "Werkstudent", "Festanstellung")

        Returns:
            (career_level, is_ambiguous)
        """
        fired = self.signals(title, contract_type)
        ambiguous = sum(fired.values()) > 1

        if fired["contract"]:
            return CareerLevel.ENTRY, ambiguous
        if fired["management"]:
            return CareerLevel.MANAGEMENT, ambiguous
        if fired["senior"]:
            return CareerLevel.SENIOR, ambiguous
        if fired["junior"]:
            return CareerLevel.ENTRY, ambiguous
        return CareerLevel.MID, ambiguous

    def classify_record(self, record: JobRecord) -> JobRecord:
        contract = " ".join(filter(None, [record.contract_type, record.employment_type])).replace("_", " ")
        record.career_level, record.is_ambiguous = self.classify(record.title, contract)
        return record

    def classify_batch(self, records: List[JobRecord]) -> StageReport:
        started = time.monotonic()
        levels: Counter = Counter()
        for record in records:
            self.classify_record(record)
            levels[record.career_level.value] += 1
        ambiguous = sum(1 for r in records if r.is_ambiguous)

        logger.info(f"Classified {len(records)} records: {dict(levels)} (ambiguous={ambiguous})")
        return StageReport(
            stage="seniority",
            records_in=len(records),
            records_out=len(records),
            ambiguous=ambiguous,
            duration_seconds=round(time.monotonic() - started, 4),
            details={level.value: float(levels.get(level.value, 0)) for level in CareerLevel},
        )
