"""
Unit tests for keyword extraction, certification filtering and tagging.
"""

import json

import pytest

from jobmarket.errors import ConfigError
from jobmarket.models import JobRecord, Keyword, KeywordCategory
from jobmarket.pipeline.clusterer import KMeansClusterer
from jobmarket.pipeline.embedder import TextEmbedder
from jobmarket.pipeline.keyword_tagger import (
    CertificationFilter,
    KeywordExtractor,
    KeywordLexicon,
    KeywordMatcher,
    KeywordTagger,
    TermCluster,
    TermClusterCurator,
    evaluate,
    term_pattern,
)


def keywords_for(*items):
    """Keywords from (text, category) pairs with sequential ids."""
    return [
        Keyword(keyword_id=i + 1, text=text, category=category)
        for i, (text, category) in enumerate(items)
    ]


TECH = KeywordCategory.TECH_STACK
CERT = KeywordCategory.CERTIFICATION


def matched_texts(matcher, text):
    by_id = {k.keyword_id: k for lookup in matcher.lookup.values() for k in lookup.values()}
    return {by_id[kid].text for counts in matcher.match(text).values() for kid in counts}


class TestMatcherBoundaries:
    """Test symbol-aware word boundaries."""

    @pytest.fixture
    def matcher(self):
        return KeywordMatcher(keywords_for(
            ("Python", TECH), ("C++", TECH), ("C#", TECH), (".NET", TECH),
            ("Java", TECH), ("JavaScript", TECH), ("Power BI", TECH), ("PMP", CERT),
        ))

    def test_python_not_inside_pythonic(self, matcher):
        assert matched_texts(matcher, "Write Pythonic code") == set()
        assert matched_texts(matcher, "Write Python code") == {"Python"}

    def test_symbol_terms(self, matcher):
        assert matched_texts(matcher, "C++ developer") == {"C++"}
        assert matched_texts(matcher, "Erfahrung mit C# und .NET") == {"C#", ".NET"}

    def test_longest_alternative_wins(self, matcher):
        assert matched_texts(matcher, "JavaScript only") == {"JavaScript"}
        assert matched_texts(matcher, "Java and JavaScript") == {"Java", "JavaScript"}

    def test_internal_whitespace_is_tolerated(self, matcher):
        assert matched_texts(matcher, "Reports in Power   BI") == {"Power BI"}
        assert matched_texts(matcher, "Reports in Power\nBI") == {"Power BI"}

    def test_case_sensitivity(self, matcher):
        assert matched_texts(matcher, "python and POWER BI") == {"Python", "Power BI"}
        assert matched_texts(matcher, "pmp certified") == set()
        assert matched_texts(matcher, "PMP certified") == {"PMP"}

    def test_term_pattern_boundaries(self):
        assert term_pattern("Python") == r"(?<!\w)Python(?!\w)"
        assert term_pattern("C++") == r"(?<!\w)C\+\+"
        assert term_pattern(".NET") == r"\.NET(?!\w)"


class TestCertificationFilter:
    """Test acronym shape, blocklist and allowlist."""

    @pytest.fixture
    def cert_filter(self):
        return CertificationFilter()

    @pytest.mark.parametrize("token", ["PMP", "CISSP", "PRINCE2", "PMI-ACP", "AWS Certified", "SAFe"])
    def test_accepts(self, cert_filter, token):
        assert cert_filter.accept(token) is True

    @pytest.mark.parametrize("token", ["siemens", "SIEMENS", "SAP", "IBM", "Pmp", "TOOLONGCERT", "123", "AB", ""])
    def test_rejects(self, cert_filter, token):
        assert cert_filter.accept(token) is False

    def test_length_bounds_are_configurable(self):
        cert_filter = CertificationFilter(min_len=2, max_len=3, blocklist=[], allowlist=[])
        assert cert_filter.accept("AB") is True
        assert cert_filter.accept("ABCD") is False

    def test_filter(self, cert_filter):
        assert cert_filter.filter(["PMP", "siemens", "SAP", "ITIL"]) == ["PMP", "ITIL"]


class TestTermClusterCurator:
    """Test category assignment and noise discarding for term clusters."""

    def make_curator(self, lexicon=None, companies=None):
        lexicon = lexicon or KeywordLexicon()
        cert_filter = CertificationFilter(
            blocklist=lexicon.company_blocklist,
            allowlist=lexicon.certification_allowlist,
        )
        return TermClusterCurator(lexicon, cert_filter, companies=companies)

    def test_clean_certification_cluster(self):
        curated = self.make_curator().curate(TermCluster(
            cluster_id=4,
            terms=["pmp", "cissp", "ccna", "togaf"],
            display=["PMP", "CISSP", "CCNA", "TOGAF"],
        ))
        assert curated.category == KeywordCategory.CERTIFICATION
        assert "PMP" in curated.keywords

    def test_lowercase_company_never_emitted_as_certification(self):
        lexicon = KeywordLexicon(company_blocklist=set())
        curated = self.make_curator(lexicon).curate(TermCluster(
            cluster_id=1,
            terms=["pmp", "cissp", "itil", "siemens"],
            display=["PMP", "CISSP", "ITIL", "siemens"],
        ))
        assert curated.category == KeywordCategory.CERTIFICATION
        assert "siemens" not in curated.keywords
        assert curated.keywords == ["PMP", "CISSP", "ITIL"]

    def test_corpus_companies_are_noise(self):
        curated = self.make_curator(companies=["Kubix GmbH"]).curate(TermCluster(
            cluster_id=2,
            terms=["docker", "kubernetes", "kubix"],
            display=["Docker", "Kubernetes", "KUBIX"],
        ))
        assert curated.category == KeywordCategory.TECH_STACK
        assert curated.keywords == ["Docker", "Kubernetes"]

    def test_expansion_adopts_tech_shaped_terms(self):
        curated = self.make_curator().curate(TermCluster(
            cluster_id=3,
            terms=["docker", "kubernetes", "helm", "argocd"],
            display=["Docker", "Kubernetes", "Helm", "ArgoCD"],
        ))
        assert curated.category == KeywordCategory.TECH_STACK
        assert "ArgoCD" in curated.keywords
        assert "Helm" not in curated.keywords

    def test_noise_cluster_discarded(self):
        curated = self.make_curator().curate(TermCluster(
            cluster_id=5,
            terms=["team", "experience", "skills", "python"],
            display=["team", "experience", "skills", "Python"],
        ))
        assert curated.category is None
        assert curated.discarded_reason == "noise"

    def test_cluster_without_seeds_discarded(self):
        curated = self.make_curator().curate(TermCluster(
            cluster_id=6,
            terms=["patient", "station", "schicht"],
            display=["Patient", "Station", "Schicht"],
        ))
        assert curated.category is None
        assert curated.discarded_reason == "no_seed_overlap"


class TestKeywordLexicon:
    """Test lexicon loading."""

    def test_from_dict_replaces_listed_categories(self):
        lexicon = KeywordLexicon.from_dict({"seeds": {"benefit": ["Dienstwagen"]}})
        assert lexicon.seeds[KeywordCategory.BENEFIT] == ["Dienstwagen"]
        assert "Python" in lexicon.seeds[KeywordCategory.TECH_STACK]

    def test_unknown_key(self):
        with pytest.raises(ConfigError):
            KeywordLexicon.from_dict({"colours": []})

    def test_unknown_category(self):
        with pytest.raises(ConfigError):
            KeywordLexicon.from_dict({"seeds": {"hobbies": ["chess"]}})

    def test_from_file(self, tmp_path):
        path = tmp_path / "lexicon.json"
        path.write_text(json.dumps({"company_blocklist": ["ACME"]}), encoding="utf-8")
        lexicon = KeywordLexicon.from_file(str(path))
        assert lexicon.is_company("acme")
        assert not lexicon.is_company("SAP")


class TestKeywordExtractor:
    """Test keyword discovery over a fitted vocabulary."""

    def test_extract_merges_seeds(self, corpus_records):
        embedder = TextEmbedder()
        embedder.fit_transform(corpus_records)
        extractor = KeywordExtractor(term_clusters=6)

        keywords = extractor.extract(corpus_records, embedder, KMeansClusterer(n_init=3))

        texts = {(k.category, k.text.lower()) for k in keywords}
        assert (KeywordCategory.TECH_STACK, "python") in texts
        assert (KeywordCategory.CERTIFICATION, "pmp") in texts
        assert len(texts) == len(keywords)
        assert [k.keyword_id for k in keywords] == list(range(1, len(keywords) + 1))
        assert extractor.curated

    def test_extract_is_stable(self, corpus_records):
        embedder = TextEmbedder()
        embedder.fit_transform(corpus_records)

        first = KeywordExtractor(term_clusters=6).extract(corpus_records, embedder, KMeansClusterer(n_init=3))
        second = KeywordExtractor(term_clusters=6).extract(corpus_records, embedder, KMeansClusterer(n_init=3))
        assert first == second

    def test_extract_without_vocabulary(self):
        records = [JobRecord(job_id="a")]
        embedder = TextEmbedder()
        embedder.fit_transform(records)

        extractor = KeywordExtractor()
        keywords = extractor.extract(records, embedder, KMeansClusterer())

        assert keywords
        assert all(k.source_cluster_id is None for k in keywords)
        seeds = extractor.seed_keywords()
        assert {(k.category, k.text.lower()) for k in keywords} == {(k.category, k.text.lower()) for k in seeds}

    def test_seed_keywords_respect_certification_filter(self):
        lexicon = KeywordLexicon.from_dict({"seeds": {"certification": ["PMP", "siemens"]}})
        keywords = KeywordExtractor(lexicon=lexicon).seed_keywords()
        certs = [k.text for k in keywords if k.category == KeywordCategory.CERTIFICATION]
        assert certs == ["PMP"]


class TestKeywordTagger:
    """Test tagging and relevance scores."""

    def test_relevance_is_share_of_occurrences(self):
        keywords = keywords_for(("Python", TECH), ("SQL", TECH))
        record = JobRecord(job_id="a", title="Developer", description="Python, Python and SQL")

        job_keywords, report = KeywordTagger().tag([record], keywords)

        scores = {jk.keyword_id: jk.relevance_score for jk in job_keywords}
        assert scores == {1: pytest.approx(0.6667), 2: pytest.approx(0.3333)}
        assert record.keywords == {"Python", "SQL"}
        assert record.keywords_by_category == {"tech_stack": ["Python", "SQL"]}
        assert report.stage == "tag"
        assert report.details["coverage"] == 1.0

    def test_malformed_record_uses_description(self):
        keywords = keywords_for(("Python", TECH), ("Java", TECH))
        record = JobRecord(job_id="a", title="", description="Java backend", is_malformed=True)

        KeywordTagger().tag([record], keywords)

        assert record.keywords == {"Java"}

    def test_retag_overwrites_previous_keywords(self):
        keywords = keywords_for(("Python", TECH))
        record = JobRecord(job_id="a", title="Koch", description="Kantine", keywords={"Stale"})

        job_keywords, report = KeywordTagger().tag([record], keywords)

        assert record.keywords == set()
        assert job_keywords == []
        assert report.flagged == 1
        assert report.warnings

    def test_labeled_sample_quality(self, labeled_sample):
        records, labels = labeled_sample
        keywords = KeywordExtractor().seed_keywords()

        KeywordTagger().tag(records, keywords)
        scores = evaluate(records, labels)

        assert scores["coverage"] > 0.8
        assert scores["precision"] > 0.95

    def test_evaluate_without_labels(self):
        assert evaluate([JobRecord(job_id="a")], {}) == {"coverage": 0.0, "precision": 0.0}
