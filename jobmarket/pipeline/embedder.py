"""
TF-IDF text embedding for job descriptions.

Preprocessing: lowercase, markup stripped, tokenized (tech symbols such as
C++, C# and .NET survive), English + German stop words and domain noise
removed, lemmatized with simplemma.

The vocabulary and IDF weights are fit once per run over the whole corpus.
There is no incremental update: embedding documents against a vocabulary
fit on a different corpus raises VocabularyMismatchError, and a re-run on
an updated corpus refits from scratch.
"""

import re
import time
import hashlib
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

import numpy as np
import simplemma
from bs4 import BeautifulSoup
from scipy.sparse import csr_matrix
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS, TfidfVectorizer
from sklearn.preprocessing import normalize

from ..errors import VocabularyMismatchError
from ..models import JobRecord, StageReport

logger = logging.getLogger(__name__)


GERMAN_STOP_WORDS = {
    "aber", "alle", "allem", "allen", "aller", "alles", "als", "also", "am", "an", "ander",
    "andere", "anderen", "auch", "auf", "aus", "bei", "bin", "bis", "bist", "da", "damit",
    "dann", "das", "dass", "dein", "deine", "dem", "den", "der", "des", "dich", "die", "dies",
    "diese", "diesem", "diesen", "dieser", "dieses", "dir", "doch", "dort", "du", "durch",
    "ein", "eine", "einem", "einen", "einer", "eines", "er", "es", "euch", "euer", "für",
    "gegen", "hat", "hatte", "haben", "hier", "ich", "ihr", "ihre", "ihrem", "ihren", "ihrer",
    "im", "in", "ist", "ja", "jede", "jedem", "jeden", "jeder", "kann", "kein", "keine",
    "können", "man", "mehr", "mein", "mich", "mir", "mit", "muss", "nach", "nicht", "noch",
    "nur", "ob", "oder", "ohne", "sehr", "sein", "seine", "sich", "sie", "sind", "so",
    "sowie", "über", "um", "und", "uns", "unser", "unsere", "unter", "viel", "vom", "von",
    "vor", "war", "was", "weil", "wenn", "werden", "wie", "wir", "wird", "wo", "zu", "zum",
    "zur", "zwischen",
}

# Words present in nearly every posting that carry no signal about the job
NOISE_WORDS = {
    "experience", "experiences", "skill", "skills", "knowledge", "ability", "abilities",
    "candidate", "candidates", "role", "position", "team", "teams", "company", "job",
    "work", "working", "year", "years", "strong", "excellent", "good", "great", "looking",
    "join", "opportunity", "responsibility", "responsibilities", "requirement",
    "requirements", "preferred", "plus", "erfahrung", "erfahrungen", "kenntnis",
    "kenntnisse", "fähigkeit", "fähigkeiten", "aufgabe", "aufgaben", "profil", "stelle",
    "unternehmen", "bewerbung", "suchen", "bieten", "m", "w", "d", "gn", "mwd",
}

STOP_WORDS = frozenset(ENGLISH_STOP_WORDS) | GERMAN_STOP_WORDS | NOISE_WORDS

# Letters incl. umlauts, with + # . allowed inside or after (c++, c#, .net, node.js)
TOKEN_RE = re.compile(r"\.?[a-zA-ZäöüÄÖÜß][a-zA-ZäöüÄÖÜß0-9+#.\-]*")
SYMBOL_RE = re.compile(r"[+#.\-]")


@lru_cache(maxsize=65536)
def lemmatize(token: str) -> str:
    return simplemma.lemmatize(token, lang=("de", "en")).lower()


class TextPreprocessor:
    """Turns raw description text into a space-joined token string."""

    def __init__(self, stop_words=STOP_WORDS, use_lemmatizer: bool = True):
        self.stop_words = frozenset(stop_words)
        self.use_lemmatizer = use_lemmatizer

    def tokens(self, text: Optional[str]) -> List[Tuple[str, str]]:
        """
        Tokenize text.

        Returns:
            List of (normalized token, surface form) pairs
        """
        if not text:
            return []
        if "<" in text and ">" in text:
            text = BeautifulSoup(text, "html.parser").get_text(" ")

        result = []
        for match in TOKEN_RE.finditer(text):
            surface = match.group(0).rstrip(".-")
            if not surface:
                continue
            token = surface.lower()
            if token in self.stop_words:
                continue
            has_symbol = bool(SYMBOL_RE.search(token))
            if len(token) < 2 and not has_symbol:
                continue
            # Acronyms and symbol terms keep their spelling
            if self.use_lemmatizer and not has_symbol and not surface.isupper():
                token = lemmatize(token)
                if token in self.stop_words:
                    continue
            result.append((token, surface))
        return result

    def preprocess(self, text: Optional[str]) -> str:
        return " ".join(token for token, _ in self.tokens(text))


@dataclass
class Embeddings:
    """Document vectors for one corpus."""

    ids: List[str]
    vectors: object  # scipy.sparse CSR matrix, one L2-normalized row per document
    fingerprint: str
    zero_rows: int = 0
    report: Optional[StageReport] = None

    @property
    def dimension(self) -> int:
        return self.vectors.shape[1]


def document_text(record: JobRecord) -> str:
    """Description, or the title when the description is empty."""
    if record.description and record.description.strip():
        return record.description
    return record.title or ""


def corpus_fingerprint(records: List[JobRecord]) -> str:
    """Order-independent hash of job ids and their document text."""
    lines = sorted(
        f"{r.job_id}:{hashlib.sha1(document_text(r).encode('utf-8')).hexdigest()}"
        for r in records
    )
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


class TextEmbedder:
    """TF-IDF embedder over unigrams and bigrams with a fixed vocabulary cap."""

    def __init__(self, max_features: int = 725, min_df: int = 2, max_df: float = 0.95,
                 ngram_range: Tuple[int, int] = (1, 2), preprocessor: Optional[TextPreprocessor] = None):
        self.max_features = max_features
        self.min_df = min_df
        self.max_df = max_df
        self.ngram_range = tuple(ngram_range)
        self.preprocessor = preprocessor or TextPreprocessor()

        self.vectorizer: Optional[TfidfVectorizer] = None
        self.fingerprint: Optional[str] = None
        self.used_fallback = False
        self._doc_matrix = None
        self._surface_forms: Dict[str, Counter] = defaultdict(Counter)

    @property
    def is_fitted(self) -> bool:
        return self.vectorizer is not None

    def _make_vectorizer(self, min_df, max_df) -> TfidfVectorizer:
        return TfidfVectorizer(
            max_features=self.max_features,
            min_df=min_df,
            max_df=max_df,
            ngram_range=self.ngram_range,
            norm="l2",
            lowercase=False,
            token_pattern=r"\S+",
        )

    def _documents(self, records: List[JobRecord], collect_forms: bool = False) -> List[str]:
        docs = []
        for record in records:
            pairs = self.preprocessor.tokens(document_text(record))
            if collect_forms:
                for token, surface in pairs:
                    self._surface_forms[token][surface] += 1
            docs.append(" ".join(token for token, _ in pairs))
        return docs

    def fit_transform(self, records: List[JobRecord]) -> Embeddings:
        """
        Fit vocabulary and IDF on the corpus and embed it.

        Args:
            records: Whole deduplicated corpus

        Returns:
            Embeddings with one row per record, in input order
        """
        started = time.monotonic()
        self._surface_forms = defaultdict(Counter)
        docs = self._documents(records, collect_forms=True)
        self.used_fallback = False

        vectorizer = self._make_vectorizer(self.min_df, self.max_df)
        try:
            matrix = vectorizer.fit_transform(docs)
        except ValueError as e:
            # Small corpora: document frequency bounds prune every term
            logger.warning(
                f"TF-IDF with min_df={self.min_df}, max_df={self.max_df} failed ({e}); "
                f"retrying with min_df=1, max_df=1.0"
            )
            self.used_fallback = True
            vectorizer = self._make_vectorizer(1, 1.0)
            try:
                matrix = vectorizer.fit_transform(docs)
            except ValueError:
                logger.warning("No vocabulary could be built; all documents are empty after preprocessing")
                vectorizer = None
                matrix = csr_matrix((len(docs), 0), dtype=np.float64)

        self.vectorizer = vectorizer
        self.fingerprint = corpus_fingerprint(records)
        self._doc_matrix = matrix.tocsr()

        return self._package(records, self._doc_matrix, started, stage="embed")

    def transform(self, records: List[JobRecord], fingerprint: Optional[str] = None) -> Embeddings:
        """
        Embed records with the fitted vocabulary.

        Only valid for the corpus the vocabulary was fit on.

        Raises:
            VocabularyMismatchError: When unfitted or the corpus differs
        """
        actual = fingerprint or corpus_fingerprint(records)
        if self.fingerprint is None or actual != self.fingerprint:
            raise VocabularyMismatchError(self.fingerprint, actual)

        started = time.monotonic()
        if self.vectorizer is None:
            matrix = csr_matrix((len(records), 0), dtype=np.float64)
        else:
            matrix = self.vectorizer.transform(self._documents(records)).tocsr()
        return self._package(records, matrix, started, stage="embed")

    def _package(self, records: List[JobRecord], matrix, started: float, stage: str) -> Embeddings:
        row_nnz = np.diff(matrix.indptr)
        zero_rows = int(np.sum(row_nnz == 0))

        report = StageReport(
            stage=stage,
            records_in=len(records),
            records_out=len(records),
            flagged=zero_rows,
            duration_seconds=round(time.monotonic() - started, 4),
            details={"dimension": float(matrix.shape[1]), "zero_vectors": float(zero_rows)},
        )
        if zero_rows:
            report.warnings.append(f"{zero_rows} documents have no vocabulary term (zero vector)")
        if self.used_fallback:
            report.warnings.append("document frequency bounds relaxed to min_df=1, max_df=1.0")

        logger.info(
            f"Embedded {len(records)} documents into {matrix.shape[1]} dimensions "
            f"(zero_vectors={zero_rows}, fallback={self.used_fallback})"
        )
        return Embeddings(
            ids=[r.job_id for r in records],
            vectors=matrix,
            fingerprint=self.fingerprint,
            zero_rows=zero_rows,
            report=report,
        )

    def vocabulary(self) -> List[str]:
        if self.vectorizer is None:
            return []
        return list(self.vectorizer.get_feature_names_out())

    def display_form(self, term: str) -> str:
        """Most frequent original spelling of a (possibly bigram) term."""
        words = []
        for part in term.split(" "):
            forms = self._surface_forms.get(part)
            words.append(forms.most_common(1)[0][0] if forms else part)
        return " ".join(words)

    def term_vectors(self):
        """
        Term embeddings for keyword discovery.

        Returns:
            (matrix, terms): transposed term-document matrix with L2-normalized
            rows, and the vocabulary in row order
        """
        if self._doc_matrix is None:
            raise VocabularyMismatchError(None, None)
        terms = self.vocabulary()
        if not terms:
            return None, []
        matrix = normalize(self._doc_matrix.T.tocsr(), norm="l2")
        return matrix, terms

    def top_terms(self, centroid, n: int = 10) -> List[str]:
        """Highest weighted vocabulary terms of a centroid."""
        terms = self.vocabulary()
        if not terms:
            return []
        weights = np.asarray(centroid, dtype=float).ravel()
        order = np.argsort(-weights, kind="stable")[:n]
        return [terms[i] for i in order if weights[i] > 0]
