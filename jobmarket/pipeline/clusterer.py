"""
Centroid-based clustering of job (or term) vectors.

KMeans with a fixed seed and several initializations per candidate k. When
k is not fixed it is chosen over a range by silhouette score, penalized
where the inertia drop flattens (elbow). Scores within a small tolerance of
the best prefer the smaller k.

Empty clusters after convergence are re-seeded from the point farthest from
every current centroid so cluster ids stay 0..k-1.
"""

import time
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field
from sklearn.cluster import KMeans
from sklearn.metrics import silhouette_score
from sklearn.metrics.pairwise import euclidean_distances

from ..models import Cluster, StageReport

logger = logging.getLogger(__name__)


class KCandidate(BaseModel):
    k: int
    inertia: float
    silhouette: Optional[float] = None
    score: float


class ClusteringResult(BaseModel):
    clusters: List[Cluster] = Field(default_factory=list)
    assignments: Dict[str, int] = Field(default_factory=dict)
    k: int = 0
    inertia: float = 0.0
    silhouette: Optional[float] = None
    candidates: List[KCandidate] = Field(default_factory=list)
    reseeded: int = 0
    report: Optional[StageReport] = None


def to_dense(vectors) -> np.ndarray:
    if hasattr(vectors, "toarray"):
        return vectors.toarray()
    array = np.asarray(vectors, dtype=float)
    if array.ndim == 1:
        array = array.reshape(-1, 1) if array.size else array.reshape(0, 0)
    return array


def distinct_points(X: np.ndarray) -> int:
    if X.shape[0] == 0:
        return 0
    return int(np.unique(X, axis=0).shape[0])


class KMeansClusterer:
    """Deterministic KMeans with k selection and empty-cluster recovery."""

    def __init__(self, k_range: Tuple[int, int] = (3, 15), n_init: int = 10, random_state: int = 42,
                 max_iter: int = 300, tol: float = 1e-4, silhouette_sample_size: int = 5000,
                 k_tolerance: float = 0.01, elbow_threshold: float = 0.02, elbow_penalty: float = 0.05,
                 max_reseeds: int = 10):
        """
        Args:
            k_range: Inclusive range of candidate cluster counts
            n_init: KMeans initializations per k (lowest inertia kept)
            random_state: Seed for initialization and silhouette sampling
            silhouette_sample_size: Silhouette is estimated on a sample above this size
            k_tolerance: Scores this close to the best count as a tie (smaller k wins)
            elbow_threshold: Normalized inertia drop below which k is penalized
            elbow_penalty: Amount subtracted from the silhouette in that case
            max_reseeds: Upper bound on empty-cluster recovery rounds
        """
        self.k_range = (int(k_range[0]), int(k_range[1]))
        self.n_init = n_init
        self.random_state = random_state
        self.max_iter = max_iter
        self.tol = tol
        self.silhouette_sample_size = silhouette_sample_size
        self.k_tolerance = k_tolerance
        self.elbow_threshold = elbow_threshold
        self.elbow_penalty = elbow_penalty
        self.max_reseeds = max_reseeds

    def _kmeans(self, k: int) -> KMeans:
        return KMeans(
            n_clusters=k,
            n_init=self.n_init,
            random_state=self.random_state,
            max_iter=self.max_iter,
            tol=self.tol,
        )

    def _silhouette(self, X: np.ndarray, labels: np.ndarray) -> Optional[float]:
        if len(set(labels.tolist())) < 2 or len(set(labels.tolist())) >= X.shape[0]:
            return None
        sample_size = self.silhouette_sample_size if X.shape[0] > self.silhouette_sample_size else None
        return float(silhouette_score(X, labels, sample_size=sample_size, random_state=self.random_state))

    def select_k(self, vectors, deadline=None) -> Tuple[int, List[KCandidate]]:
        """
        Choose k over k_range.

        Args:
            vectors: Dense or sparse matrix
            deadline: Optional StageDeadline checked before each candidate

        Returns:
            (k, candidates) where candidates holds inertia/silhouette/score per k
        """
        X = to_dense(vectors)
        distinct = distinct_points(X)
        k_min, k_max = self.k_range
        if distinct <= k_min:
            return max(distinct, 0), []
        # Silhouette needs at most n - 1 clusters
        k_max = min(k_max, distinct - 1)
        if k_max < k_min:
            return k_min, []

        candidates: List[KCandidate] = []
        base_inertia = None
        prev_inertia = None
        for k in range(k_min, k_max + 1):
            if deadline is not None:
                deadline.check()
            model = self._kmeans(k).fit(X)
            inertia = float(model.inertia_)
            silhouette = self._silhouette(X, model.labels_)
            score = silhouette if silhouette is not None else -1.0

            if base_inertia is None:
                base_inertia = inertia
            elif base_inertia > 0:
                drop = (prev_inertia - inertia) / base_inertia
                if drop < self.elbow_threshold:
                    score -= self.elbow_penalty
            prev_inertia = inertia

            candidates.append(KCandidate(k=k, inertia=round(inertia, 6), silhouette=silhouette, score=round(score, 6)))
            logger.debug(f"k={k}: inertia={inertia:.4f} silhouette={silhouette} score={score:.4f}")

        best = max(c.score for c in candidates)
        chosen = min(c.k for c in candidates if c.score >= best - self.k_tolerance)
        logger.info(f"Selected k={chosen} from {k_min}..{k_max} (best score {best:.4f})")
        return chosen, candidates

    def fit(self, vectors, ids: Sequence[str], k: Optional[int] = None, deadline=None) -> ClusteringResult:
        """
        Cluster vectors.

        Args:
            vectors: Dense or sparse matrix, one row per id
            ids: Identifier per row (job ids or terms)
            k: Fixed cluster count; selected over k_range when None
            deadline: Optional StageDeadline checked between k candidates

        Returns:
            ClusteringResult where every id has exactly one cluster in 0..k-1
        """
        started = time.monotonic()
        X = to_dense(vectors)
        ids = list(ids)
        if X.shape[0] != len(ids):
            raise ValueError(f"Got {X.shape[0]} vectors for {len(ids)} ids")

        if not ids:
            return ClusteringResult(report=self._report(0, 0, 0, started))

        distinct = distinct_points(X)
        candidates: List[KCandidate] = []
        if k is None:
            k, candidates = self.select_k(X, deadline=deadline)
        k = max(1, min(int(k), distinct))

        if k == 1:
            centers = X.mean(axis=0, keepdims=True)
            labels = np.zeros(X.shape[0], dtype=int)
            reseeded = 0
        else:
            model = self._kmeans(k).fit(X)
            centers = np.array(model.cluster_centers_, dtype=float)
            labels = self._assign(X, centers)
            centers, labels, reseeded = self._recover_empty(X, centers, labels)

        inertia = float(((X - centers[labels]) ** 2).sum())
        silhouette = self._silhouette(X, labels) if k > 1 else None

        clusters = []
        for cluster_id in range(k):
            members = [ids[i] for i in np.flatnonzero(labels == cluster_id)]
            clusters.append(Cluster(
                cluster_id=cluster_id,
                centroid=[round(float(v), 6) for v in centers[cluster_id]],
                member_ids=members,
            ))

        result = ClusteringResult(
            clusters=clusters,
            assignments={ids[i]: int(labels[i]) for i in range(len(ids))},
            k=k,
            inertia=round(inertia, 6),
            silhouette=silhouette,
            candidates=candidates,
            reseeded=reseeded,
        )
        result.report = self._report(len(ids), k, reseeded, started, silhouette)
        logger.info(f"Clustered {len(ids)} vectors into k={k} (inertia={inertia:.4f}, reseeded={reseeded})")
        return result

    @staticmethod
    def _assign(X: np.ndarray, centers: np.ndarray) -> np.ndarray:
        return np.argmin(euclidean_distances(X, centers, squared=True), axis=1)

    def _recover_empty(self, X: np.ndarray, centers: np.ndarray, labels: np.ndarray):
        """Re-seed empty clusters from the farthest point, then reassign."""
        k = centers.shape[0]
        reseeded = 0
        for _ in range(self.max_reseeds):
            counts = np.bincount(labels, minlength=k)
            empty = np.flatnonzero(counts == 0)
            if empty.size == 0:
                break
            for cluster_id in empty:
                nearest = euclidean_distances(X, centers, squared=True).min(axis=1)
                # Never take the last member of another cluster
                counts = np.bincount(labels, minlength=k)
                movable = counts[labels] > 1
                if not movable.any():
                    break
                farthest = int(np.argmax(np.where(movable, nearest, -1.0)))
                centers[cluster_id] = X[farthest]
                labels[farthest] = cluster_id
                reseeded += 1
                logger.warning(f"Cluster {cluster_id} was empty; re-seeded from point {farthest}")

            labels = self._assign(X, centers)
            # One Lloyd update for non-empty clusters, then a consistent final assignment
            for cluster_id in range(k):
                mask = labels == cluster_id
                if mask.any():
                    centers[cluster_id] = X[mask].mean(axis=0)
            labels = self._assign(X, centers)
        else:
            counts = np.bincount(labels, minlength=k)
            if (counts == 0).any():
                logger.warning(f"{int((counts == 0).sum())} clusters still empty after {self.max_reseeds} re-seeds")
        return centers, labels, reseeded

    @staticmethod
    def _report(n: int, k: int, reseeded: int, started: float, silhouette: Optional[float] = None) -> StageReport:
        report = StageReport(
            stage="cluster",
            records_in=n,
            records_out=n,
            flagged=reseeded,
            duration_seconds=round(time.monotonic() - started, 4),
            details={"k": float(k), "reseeded": float(reseeded)},
        )
        if silhouette is not None:
            report.details["silhouette"] = round(silhouette, 4)
        if reseeded:
            report.warnings.append(f"{reseeded} empty clusters re-seeded")
        return report
