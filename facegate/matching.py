"""
Match Search

Ranks enrolled identities against a probe embedding and returns the top-K.

Ranking sits behind the Matcher interface:
- LinearScanMatcher scores every stored identity on each query
- FlatIndexMatcher keeps an exact FAISS inner-product index in memory

Both produce the same ordering: similarity descending, lower identity id
first on ties.
"""
import logging
import operator
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

import faiss
import numpy as np

from facegate.config import MATCHER_BACKEND, TOP_K_MATCHES
from facegate.embedding_store import EmbeddingStore, Identity
from facegate.errors import ValidationError
from facegate.similarity import EmbeddingLike, SimilarityEngine, check_threshold

logger = logging.getLogger(__name__)

# Slack below the k-th float32 index score still rescored in float64
RESCORE_MARGIN = 1e-4


@dataclass(frozen=True, eq=False)
class MatchResult:
    """One ranked identity for a probe."""
    identity: Identity
    similarity: float
    verified: bool


def rank_key(result: MatchResult):
    return (-result.similarity, result.identity.id)


class Matcher:
    """
    Ranking capability used by MatchSearch.

    ``add``/``remove``/``load`` let index-backed implementations follow the
    store; the linear scan reads the store directly and ignores them.
    """

    async def load(self, identities: Iterable[Identity]) -> None:
        pass

    def add(self, identity: Identity) -> None:
        pass

    def remove(self, identity_id: int) -> None:
        pass

    async def rank(self, probe: np.ndarray, k: int, threshold: float) -> List[MatchResult]:
        raise NotImplementedError


class LinearScanMatcher(Matcher):
    """Brute-force O(N) scan of the embedding store."""

    def __init__(self, store: EmbeddingStore, engine: SimilarityEngine):
        self._store = store
        self._engine = engine

    async def rank(self, probe: np.ndarray, k: int, threshold: float) -> List[MatchResult]:
        identities = await self._store.list_all()

        # Score everything before truncating so ties resolve on id, not scan order
        results = []
        for identity in identities:
            comparison = self._engine.compare(probe, identity.embedding, threshold=threshold)
            results.append(MatchResult(
                identity=identity,
                similarity=comparison.similarity,
                verified=comparison.verified
            ))

        results.sort(key=rank_key)
        return results[:k]


class FlatIndexMatcher(Matcher):
    """
    FAISS-backed matcher.

    Uses IndexFlatIP (Inner Product) with normalized vectors for exact
    cosine similarity, wrapped in IndexIDMap2 so vectors are keyed by
    identity id and can be removed.

    Thread-safe implementation with a re-entrant lock.
    """

    def __init__(self, store: EmbeddingStore, engine: SimilarityEngine):
        self._store = store
        self._engine = engine
        self._lock = threading.RLock()
        self._index = self._create_new_index()

    def _create_new_index(self) -> faiss.IndexIDMap2:
        return faiss.IndexIDMap2(faiss.IndexFlatIP(self._engine.dimension))

    @staticmethod
    def _normalize(vectors: np.ndarray) -> np.ndarray:
        """L2-normalize rows; zero rows stay zero."""
        vectors = np.asarray(vectors, dtype=np.float32)
        vectors = vectors.reshape(-1, vectors.shape[-1])
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return np.ascontiguousarray(vectors / norms, dtype=np.float32)

    @property
    def count(self) -> int:
        """Number of indexed vectors."""
        with self._lock:
            return self._index.ntotal

    async def load(self, identities: Iterable[Identity]) -> None:
        """Rebuild the index from scratch."""
        identities = list(identities)
        index = self._create_new_index()

        if identities:
            vectors = self._normalize(np.stack([i.embedding for i in identities]))
            ids = np.array([i.id for i in identities], dtype=np.int64)
            index.add_with_ids(vectors, ids)

        with self._lock:
            self._index = index

        logger.info(f"Flat index rebuilt with {len(identities)} vectors")

    def add(self, identity: Identity) -> None:
        with self._lock:
            self._index.add_with_ids(
                self._normalize(identity.embedding),
                np.array([identity.id], dtype=np.int64)
            )
        logger.debug(f"Indexed identity {identity.id}")

    def remove(self, identity_id: int) -> None:
        with self._lock:
            removed = self._index.remove_ids(np.array([identity_id], dtype=np.int64))
        if removed:
            logger.debug(f"Removed identity {identity_id} from index")

    async def rank(self, probe: np.ndarray, k: int, threshold: float) -> List[MatchResult]:
        with self._lock:
            total = self._index.ntotal
            if total == 0:
                return []
            # Search the whole index so ties can be ordered by id
            scores, ids = self._index.search(self._normalize(probe), total)

        scored = [
            (int(identity_id), float(score))
            for score, identity_id in zip(scores[0], ids[0])
            if identity_id >= 0
        ]
        scored.sort(key=lambda x: (-x[1], x[0]))

        # Index scores are float32; everything near the k-th score is rescored exactly
        if len(scored) > k:
            cutoff = scored[k - 1][1] - RESCORE_MARGIN
            scored = [x for x in scored if x[1] >= cutoff]

        identities = await self._store.get_many([identity_id for identity_id, _ in scored])

        results = []
        for identity_id, _ in scored:
            identity = identities.get(identity_id)
            if identity is None:
                # Removed between the index search and the row fetch
                continue
            comparison = self._engine.compare(probe, identity.embedding, threshold=threshold)
            results.append(MatchResult(
                identity=identity,
                similarity=comparison.similarity,
                verified=comparison.verified
            ))

        results.sort(key=rank_key)
        return results[:k]


def build_matcher(
    store: EmbeddingStore,
    engine: SimilarityEngine,
    backend: str = MATCHER_BACKEND
) -> Matcher:
    if backend == "linear":
        return LinearScanMatcher(store, engine)
    if backend == "flat":
        return FlatIndexMatcher(store, engine)
    raise ValueError(f"Unknown matcher backend '{backend}' (expected 'linear' or 'flat')")


class MatchSearch:
    """Top-K search over the embedding store."""

    def __init__(self, engine: SimilarityEngine, matcher: Matcher):
        self._engine = engine
        self.matcher = matcher

    async def search(
        self,
        probe: EmbeddingLike,
        k: int = TOP_K_MATCHES,
        threshold: Optional[float] = None
    ) -> List[MatchResult]:
        """
        Find the identities most similar to a probe.

        Args:
            probe: Query embedding of length D
            k: Maximum number of results
            threshold: Override for the verification threshold

        Returns:
            Up to ``k`` MatchResults, highest similarity first. Empty when
            nothing is enrolled.

        Raises:
            DimensionMismatch: Probe length differs from D (checked before scanning)
            ValidationError: ``k`` is not a positive integer
        """
        try:
            index = operator.index(k)
        except TypeError:
            index = None
        if isinstance(k, bool) or index is None or index < 1:
            raise ValidationError(f"k must be a positive integer, got {k!r}")
        k = index

        threshold = self._engine.threshold if threshold is None else check_threshold(threshold)
        vector = self._engine.validate(probe)

        return await self.matcher.rank(vector, k, threshold)
