"""
Keyword extraction and job tagging.

Extraction clusters the vocabulary terms (term-document vectors, not job
vectors), assigns each term cluster a category by overlap with the seed
lexicon or discards it as noise, and merges the curated terms with the
seed lexicon.

Tagging compiles one alternation per category and matches it against each
job's title and description:
- word boundaries around alphanumeric terms ("Python" never hits "Pythonic")
- no boundary on the symbol side of terms like "C++", ".NET", "C#"
- internal whitespace of multi-word terms matched by \\s+
- certifications match case-sensitively, everything else case-insensitively
"""

import re
import json
import time
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Set, Tuple

from sklearn.decomposition import TruncatedSVD
from sklearn.preprocessing import normalize

from ..errors import ConfigError
from ..models import JobKeyword, JobRecord, Keyword, KeywordCategory, StageReport

logger = logging.getLogger(__name__)

CATEGORY_ORDER = [
    KeywordCategory.TECH_STACK,
    KeywordCategory.CERTIFICATION,
    KeywordCategory.EDUCATION,
    KeywordCategory.BENEFIT,
    KeywordCategory.SOFT_SKILL,
]

DEFAULT_SEEDS: Dict[KeywordCategory, List[str]] = {
    KeywordCategory.TECH_STACK: [
        "Python", "Java", "JavaScript", "TypeScript", "C++", "C#", ".NET", "SQL", "Scala",
        "Kotlin", "Rust", "PHP", "Ruby on Rails", "Golang", "React", "Angular", "Vue.js",
        "Node.js", "Django", "Flask", "FastAPI", "Spring Boot", "Docker", "Kubernetes",
        "Terraform", "Ansible", "AWS", "Azure", "GCP", "Linux", "Git", "Jenkins", "GitLab",
        "Kafka", "Apache Spark", "PySpark", "Hadoop", "Airflow", "Pandas", "NumPy", "TensorFlow",
        "PyTorch", "scikit-learn", "PostgreSQL", "MySQL", "MongoDB", "Redis", "Elasticsearch", "SAP",
        "MS Excel", "Power BI", "Tableau", "Jira", "HTML", "CSS", "REST API", "RESTful",
        "GraphQL", "Machine Learning", "Deep Learning", "CI/CD", "Microservices", "Snowflake",
        "dbt",
    ],
    KeywordCategory.SOFT_SKILL: [
        "communication skills", "Kommunikationsfähigkeit", "Kommunikationsstärke",
        "teamwork", "Teamfähigkeit", "team player", "problem solving", "analytical thinking",
        "analytisches Denken", "leadership", "Eigeninitiative", "Selbstständigkeit",
        "Zuverlässigkeit", "creativity", "Kreativität", "time management", "Belastbarkeit",
        "Kundenorientierung", "customer focus", "attention to detail", "Organisationstalent",
    ],
    KeywordCategory.BENEFIT: [
        "home office", "remote work", "flexible working hours", "flexible Arbeitszeiten",
        "Gleitzeit", "30 Tage Urlaub", "30 days vacation", "betriebliche Altersvorsorge",
        "company pension", "Jobticket", "Deutschlandticket", "JobRad", "company car",
        "Firmenwagen", "Weiterbildung", "training budget", "gym membership",
        "Urban Sports Club", "Sabbatical", "Kinderbetreuung", "childcare", "bonus",
        "Weihnachtsgeld", "Urlaubsgeld", "Essenszuschuss", "free drinks",
    ],
    KeywordCategory.CERTIFICATION: [
        "PMP", "AWS Certified", "CISSP", "ITIL", "PRINCE2", "CCNA", "CCNP", "CPA", "CFA",
        "PSM", "CSM", "ISTQB", "TOGAF", "CISA", "CISM", "OSCP", "CKA", "CKAD", "IPMA",
        "PMI-ACP", "SAFe",
    ],
    KeywordCategory.EDUCATION: [
        "Bachelor", "Master", "PhD", "Diplom", "MBA", "abgeschlossenes Studium",
        "Studium der Informatik", "computer science", "Informatik", "Wirtschaftsinformatik",
        "Mathematik", "mathematics", "Physik", "physics", "Ingenieurwissenschaften",
        "abgeschlossene Ausbildung", "Berufsausbildung", "degree",
    ],
}

DEFAULT_NOISE_WORDS = {
    "a", "an", "and", "the", "you", "your", "yours", "we", "our", "ours", "they", "their",
    "them", "he", "him", "his", "she", "her", "it", "its", "this", "that", "these", "those",
    "who", "which", "what", "when", "where", "why", "how", "role", "position", "team",
    "company", "candidate", "requirements", "qualification", "qualifications",
    "responsibilities", "preferred", "required", "must", "should", "ability", "skills",
    "knowledge", "experience", "years", "work", "working", "environment", "strong",
    "excellent", "good", "great", "wir", "sie", "ihr", "ihre", "unser", "unsere", "uns",
    "du", "dein", "deine", "bieten", "suchen", "aufgaben", "profil", "stelle", "sowie",
    "gerne", "bereich", "mwd", "gn",
}

DEFAULT_COMPANY_BLOCKLIST = {
    "SAP", "IBM", "SIEMENS", "BOSCH", "BMW", "AUDI", "BASF", "BAYER", "DHL", "EON", "RWE",
    "MICROSOFT", "GOOGLE", "AMAZON", "ORACLE", "CISCO", "ACCENTURE", "DELOITTE", "KPMG",
    "PWC", "EY", "CAPGEMINI", "ALLIANZ", "TELEKOM", "ZALANDO", "DAIMLER", "PORSCHE",
    "VOLKSWAGEN", "VW", "META", "APPLE", "NVIDIA", "INTEL", "ATOS", "ADESSO", "MSG", "GMBH",
}

DEFAULT_CERTIFICATION_ALLOWLIST = {"AWS Certified", "SAFe", "Scrum Master", "Azure Fundamentals"}


def _lower_key(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip()).lower()


@dataclass
class KeywordLexicon:
    """Seed terms, noise words and blocklists; all injectable."""

    seeds: Dict[KeywordCategory, List[str]] = field(
        default_factory=lambda: {c: list(terms) for c, terms in DEFAULT_SEEDS.items()}
    )
    noise_words: Set[str] = field(default_factory=lambda: set(DEFAULT_NOISE_WORDS))
    company_blocklist: Set[str] = field(default_factory=lambda: set(DEFAULT_COMPANY_BLOCKLIST))
    certification_allowlist: Set[str] = field(default_factory=lambda: set(DEFAULT_CERTIFICATION_ALLOWLIST))

    def seed_index(self) -> Dict[str, KeywordCategory]:
        """Lower-cased seed -> category (first category wins)."""
        index: Dict[str, KeywordCategory] = {}
        for category in CATEGORY_ORDER:
            for term in self.seeds.get(category, []):
                index.setdefault(_lower_key(term), category)
        return index

    def is_company(self, term: str) -> bool:
        upper = term.strip().upper()
        return upper in {c.upper() for c in self.company_blocklist}

    @classmethod
    def from_dict(cls, data: Dict) -> "KeywordLexicon":
        """
        Build a lexicon from a mapping.

        Keys: seeds ({category: [terms]}), noise_words, company_blocklist,
        certification_allowlist. Missing keys keep their defaults; "seeds"
        replaces the listed categories only.
        """
        lexicon = cls()
        unknown = set(data) - {"seeds", "noise_words", "company_blocklist", "certification_allowlist"}
        if unknown:
            raise ConfigError(f"Unknown lexicon keys: {sorted(unknown)}")
        for name, terms in (data.get("seeds") or {}).items():
            try:
                category = KeywordCategory(name)
            except ValueError:
                raise ConfigError(f"Unknown keyword category: {name}")
            lexicon.seeds[category] = list(terms)
        if "noise_words" in data:
            lexicon.noise_words = {w.lower() for w in data["noise_words"]}
        if "company_blocklist" in data:
            lexicon.company_blocklist = set(data["company_blocklist"])
        if "certification_allowlist" in data:
            lexicon.certification_allowlist = set(data["certification_allowlist"])
        return lexicon

    @classmethod
    def from_file(cls, path: str) -> "KeywordLexicon":
        try:
            with open(Path(path), "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not load keyword lexicon from {path}: {e}")
        return cls.from_dict(data)


class CertificationFilter:
    """
    Accept only uppercase acronyms that are not company names.

    Certification term clusters are heavily contaminated with employer names
    (SAP, IBM), so shape alone is not enough: the blocklist always wins and
    the allowlist is the only way past the shape test.
    """

    def __init__(self, min_len: int = 3, max_len: int = 8,
                 blocklist: Optional[Iterable[str]] = None, allowlist: Optional[Iterable[str]] = None):
        self.min_len = min_len
        self.max_len = max_len
        self.blocklist = {b.upper() for b in (blocklist if blocklist is not None else DEFAULT_COMPANY_BLOCKLIST)}
        self.allowlist = {_lower_key(a) for a in (allowlist if allowlist is not None else DEFAULT_CERTIFICATION_ALLOWLIST)}
        self.shape_re = re.compile(
            r"^[A-Z0-9][A-Z0-9+\-]{%d,%d}$" % (max(0, min_len - 1), max(0, max_len - 1))
        )

    def accept(self, token: str) -> bool:
        token = (token or "").strip()
        if not token:
            return False
        if _lower_key(token) in self.allowlist:
            return True
        if token.upper() in self.blocklist:
            return False
        return bool(self.shape_re.match(token)) and any(ch.isalpha() for ch in token)

    def filter(self, tokens: Iterable[str]) -> List[str]:
        return [t for t in tokens if self.accept(t)]


@dataclass
class TermCluster:
    cluster_id: int
    terms: List[str]
    display: List[str]


@dataclass
class CuratedCluster:
    cluster_id: int
    category: Optional[KeywordCategory]
    keywords: List[str] = field(default_factory=list)
    discarded_reason: Optional[str] = None


TECH_SHAPE_RE = re.compile(r"[+#./]|[a-z][A-Z]|^[A-Z0-9]{2,8}$")


class TermClusterCurator:
    """Assigns term clusters to a category or discards them as noise."""

    def __init__(self, lexicon: KeywordLexicon, cert_filter: CertificationFilter,
                 companies: Optional[Iterable[str]] = None, noise_ratio: float = 0.5,
                 expansion_ratio: float = 0.5):
        """
        Args:
            lexicon: Seed terms and blocklists
            cert_filter: Filter applied to every certification keyword
            companies: Employer names seen in the corpus (treated as noise)
            noise_ratio: Clusters with at least this share of noise terms are discarded
            expansion_ratio: Minimum seed share before non-seed terms are adopted
        """
        self.lexicon = lexicon
        self.cert_filter = cert_filter
        self.seed_index = lexicon.seed_index()
        self.noise_ratio = noise_ratio
        self.expansion_ratio = expansion_ratio
        self.companies = set()
        for name in companies or []:
            for token in re.findall(r"\w+", name.lower()):
                if len(token) > 2 and token not in {"gmbh", "ag", "se", "kg", "inc", "ltd", "llc"}:
                    self.companies.add(token)

    def _is_noise(self, term: str, display: str) -> bool:
        words = term.split()
        if all(w in self.lexicon.noise_words for w in words):
            return True
        if all(w.isdigit() for w in words):
            return True
        if self.lexicon.is_company(display) or term in self.companies:
            return True
        return False

    def _valid_expansion(self, category: KeywordCategory, term: str, display: str) -> bool:
        if self._is_noise(term, display) or len(term) < 2:
            return False
        if category == KeywordCategory.CERTIFICATION:
            return self.cert_filter.accept(display)
        if category == KeywordCategory.TECH_STACK:
            return bool(TECH_SHAPE_RE.search(display))
        return len(term) >= 4 and not any(w in self.lexicon.noise_words for w in term.split())

    def curate(self, cluster: TermCluster) -> CuratedCluster:
        pairs = list(zip(cluster.terms, cluster.display))
        if not pairs:
            return CuratedCluster(cluster.cluster_id, None, discarded_reason="empty")

        noise = sum(1 for term, display in pairs if self._is_noise(term, display))
        if noise / len(pairs) >= self.noise_ratio:
            return CuratedCluster(cluster.cluster_id, None, discarded_reason="noise")

        hits: Dict[KeywordCategory, List[str]] = defaultdict(list)
        for term, display in pairs:
            category = self.seed_index.get(_lower_key(display)) or self.seed_index.get(_lower_key(term))
            if category is not None:
                hits[category].append(display)
        if not hits:
            return CuratedCluster(cluster.cluster_id, None, discarded_reason="no_seed_overlap")

        category = max(CATEGORY_ORDER, key=lambda c: (len(hits.get(c, [])), -CATEGORY_ORDER.index(c)))
        keywords = list(hits[category])
        if len(hits[category]) / len(pairs) >= self.expansion_ratio:
            for term, display in pairs:
                if display in keywords or self.seed_index.get(_lower_key(display)) is not None:
                    continue
                if self._valid_expansion(category, term, display):
                    keywords.append(display)

        if category == KeywordCategory.CERTIFICATION:
            keywords = self.cert_filter.filter(keywords)
            if not keywords:
                return CuratedCluster(cluster.cluster_id, None, discarded_reason="certification_filter")
        return CuratedCluster(cluster.cluster_id, category, keywords=keywords)


class KeywordExtractor:
    """Derives the curated keyword list from clustered vocabulary terms."""

    def __init__(self, lexicon: Optional[KeywordLexicon] = None, cert_filter: Optional[CertificationFilter] = None,
                 term_clusters: int = 250, svd_components: int = 100, random_state: int = 42):
        self.lexicon = lexicon or KeywordLexicon()
        self.cert_filter = cert_filter or CertificationFilter(
            blocklist=self.lexicon.company_blocklist,
            allowlist=self.lexicon.certification_allowlist,
        )
        self.term_clusters = term_clusters
        self.svd_components = svd_components
        self.random_state = random_state
        self.curated: List[CuratedCluster] = []

    def _reduce(self, matrix):
        """Project term vectors to a fixed small dimension for large corpora."""
        n_terms, n_docs = matrix.shape
        if n_docs <= self.svd_components or n_terms <= 2:
            return matrix
        components = min(self.svd_components, n_terms - 1)
        reduced = TruncatedSVD(n_components=components, random_state=self.random_state).fit_transform(matrix)
        return normalize(reduced, norm="l2")

    def extract(self, records: List[JobRecord], embedder, clusterer) -> List[Keyword]:
        """
        Build keywords for the tagger.

        Args:
            records: Corpus the embedder was fit on
            embedder: Fitted TextEmbedder
            clusterer: KMeansClusterer used for the term clustering

        Returns:
            Keywords with unique text per category and stable ids
        """
        curator = TermClusterCurator(
            self.lexicon,
            self.cert_filter,
            companies=[r.company for r in records if r.company],
        )
        found: Dict[Tuple[KeywordCategory, str], Tuple[str, Optional[int]]] = {}

        matrix, terms = embedder.term_vectors()
        self.curated = []
        if terms:
            vectors = self._reduce(matrix)
            k = min(self.term_clusters, len(terms))
            result = clusterer.fit(vectors, terms, k=k)
            for cluster in result.clusters:
                term_cluster = TermCluster(
                    cluster_id=cluster.cluster_id,
                    terms=list(cluster.member_ids),
                    display=[embedder.display_form(t) for t in cluster.member_ids],
                )
                curated = curator.curate(term_cluster)
                self.curated.append(curated)
                if curated.category is None:
                    continue
                for text in curated.keywords:
                    found.setdefault((curated.category, _lower_key(text)), (text, curated.cluster_id))

            discarded = Counter(c.discarded_reason for c in self.curated if c.category is None)
            logger.info(
                f"Curated {len(self.curated)} term clusters: "
                f"{sum(1 for c in self.curated if c.category is not None)} kept, discarded={dict(discarded)}"
            )

        # The matcher always gets the complete seed lexicon
        for seed in self.seed_keywords():
            found.setdefault((seed.category, _lower_key(seed.text)), (seed.text, None))

        ordered = sorted(found.items(), key=lambda item: (CATEGORY_ORDER.index(item[0][0]), item[0][1]))
        keywords = [
            Keyword(keyword_id=i + 1, text=text, category=category, source_cluster_id=cluster_id)
            for i, ((category, _), (text, cluster_id)) in enumerate(ordered)
        ]
        logger.info(f"Extracted {len(keywords)} keywords ({sum(1 for k in keywords if k.source_cluster_id is not None)} from term clusters)")
        return keywords

    def seed_keywords(self) -> List[Keyword]:
        """Keywords from the seed lexicon only (no term clustering)."""
        keywords = []
        for category in CATEGORY_ORDER:
            for text in sorted(set(self.lexicon.seeds.get(category, [])), key=_lower_key):
                if category == KeywordCategory.CERTIFICATION and not self.cert_filter.accept(text):
                    logger.warning(f"Seed certification '{text}' rejected by certification filter")
                    continue
                keywords.append(Keyword(keyword_id=len(keywords) + 1, text=text, category=category))
        return keywords


def term_pattern(term: str) -> str:
    """Regex for one term with symbol-aware boundaries."""
    words = term.split()
    body = r"\s+".join(re.escape(w) for w in words)
    left = r"(?<!\w)" if re.match(r"\w", term[0]) else ""
    right = r"(?!\w)" if re.match(r"\w", term[-1]) else ""
    return left + body + right


class KeywordMatcher:
    """One compiled alternation per category."""

    def __init__(self, keywords: Iterable[Keyword]):
        self.patterns: Dict[KeywordCategory, Pattern] = {}
        self.lookup: Dict[KeywordCategory, Dict[str, Keyword]] = {}

        by_category: Dict[KeywordCategory, List[Keyword]] = defaultdict(list)
        for keyword in keywords:
            if keyword.text.strip():
                by_category[keyword.category].append(keyword)

        for category, items in by_category.items():
            case_sensitive = category == KeywordCategory.CERTIFICATION
            lookup = {}
            for keyword in items:
                key = self._key(keyword.text, case_sensitive)
                lookup.setdefault(key, keyword)
            # Longest first so "Power BI" wins over a shorter overlapping term
            texts = sorted({k.text.strip() for k in items}, key=lambda t: (-len(t), t))
            flags = 0 if case_sensitive else re.IGNORECASE
            self.patterns[category] = re.compile("|".join(term_pattern(t) for t in texts), flags)
            self.lookup[category] = lookup

    @staticmethod
    def _key(text: str, case_sensitive: bool) -> str:
        collapsed = re.sub(r"\s+", " ", text.strip())
        return collapsed if case_sensitive else collapsed.lower()

    def match(self, text: Optional[str]) -> Dict[KeywordCategory, Counter]:
        """Keyword -> occurrence count, per category."""
        found: Dict[KeywordCategory, Counter] = {}
        if not text:
            return found
        for category, pattern in self.patterns.items():
            case_sensitive = category == KeywordCategory.CERTIFICATION
            counts: Counter = Counter()
            for m in pattern.finditer(text):
                keyword = self.lookup[category].get(self._key(m.group(0), case_sensitive))
                if keyword is not None:
                    counts[keyword.keyword_id] += 1
            if counts:
                found[category] = counts
        return found


class KeywordTagger:
    """Tags jobs with keywords and produces job-keyword join rows."""

    def tag(self, records: List[JobRecord], keywords: List[Keyword]) -> Tuple[List[JobKeyword], StageReport]:
        """
        Tag records in place.

        Args:
            records: Jobs to tag (keywords / keywords_by_category are overwritten)
            keywords: Curated keywords

        Returns:
            (job_keywords, report)
        """
        started = time.monotonic()
        matcher = KeywordMatcher(keywords)
        by_id = {k.keyword_id: k for k in keywords}
        job_keywords: List[JobKeyword] = []
        untagged = 0

        for record in records:
            if record.is_malformed or not record.title.strip():
                text = record.description or ""
            else:
                text = f"{record.title}\n{record.description or ''}"

            matches = matcher.match(text)
            total = sum(sum(c.values()) for c in matches.values())
            record.keywords = set()
            record.keywords_by_category = {}
            for category, counts in matches.items():
                texts = sorted({by_id[kid].text for kid in counts}, key=str.lower)
                record.keywords_by_category[category.value] = texts
                record.keywords.update(texts)
                for kid, occurrences in sorted(counts.items()):
                    job_keywords.append(JobKeyword(
                        job_id=record.job_id,
                        keyword_id=kid,
                        relevance_score=round(occurrences / total, 4),
                    ))
            if not record.keywords:
                untagged += 1

        coverage = (len(records) - untagged) / len(records) if records else 0.0
        report = StageReport(
            stage="tag",
            records_in=len(records),
            records_out=len(records),
            flagged=untagged,
            duration_seconds=round(time.monotonic() - started, 4),
            details={
                "coverage": round(coverage, 4),
                "keywords": float(len(keywords)),
                "job_keywords": float(len(job_keywords)),
            },
        )
        if records and coverage < 0.8:
            report.warnings.append(f"keyword coverage {coverage:.1%} is below 80%")
        logger.info(f"Tagged {len(records)} jobs with {len(job_keywords)} keyword links (coverage={coverage:.1%})")
        return job_keywords, report


def evaluate(records: List[JobRecord], labels: Dict[str, Iterable[str]]) -> Dict[str, float]:
    """
    Coverage and precision of tagged records against a labeled sample.

    Args:
        records: Tagged records
        labels: job_id -> keywords judged relevant for that job

    Returns:
        {"coverage": share of labeled jobs with >= 1 keyword,
         "precision": share of matched keywords judged relevant}
    """
    labeled = [r for r in records if r.job_id in labels]
    if not labeled:
        return {"coverage": 0.0, "precision": 0.0}

    covered = 0
    matched = 0
    relevant = 0
    for record in labeled:
        expected = {_lower_key(k) for k in labels[record.job_id]}
        if record.keywords:
            covered += 1
        for keyword in record.keywords:
            matched += 1
            if _lower_key(keyword) in expected:
                relevant += 1

    return {
        "coverage": round(covered / len(labeled), 4),
        "precision": round(relevant / matched, 4) if matched else 0.0,
    }
