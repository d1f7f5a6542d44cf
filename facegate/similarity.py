"""
Similarity Engine

Cosine similarity between two face embeddings plus the threshold decision
used everywhere a "same person?" question is answered.
"""
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from facegate.config import EMBEDDING_DIM, VERIFICATION_THRESHOLD
from facegate.errors import DimensionMismatch, ValidationError

EmbeddingLike = Union[np.ndarray, Sequence[float]]


@dataclass(frozen=True)
class Comparison:
    """Outcome of comparing two embeddings."""
    similarity: float
    verified: bool
    threshold: float

    def to_dict(self) -> dict:
        return {
            "similarity": round(self.similarity, 6),
            "verified": self.verified,
            "threshold": self.threshold
        }


def check_threshold(threshold: float) -> float:
    try:
        threshold = float(threshold)
    except (TypeError, ValueError):
        raise ValidationError(f"Threshold must be a number, got {threshold!r}")
    if not 0.0 <= threshold <= 1.0:
        raise ValidationError(f"Threshold must be within [0, 1], got {threshold}")
    return threshold


class SimilarityEngine:
    """
    Compares fixed-length embeddings with cosine similarity.

    The raw cosine lies in [-1, 1]; it is clamped into [0, 1] so that
    opposite vectors score 0 and floating-point overshoot never exceeds 1.
    Holds no mutable state and is safe to share between callers.
    """

    def __init__(
        self,
        dimension: int = EMBEDDING_DIM,
        threshold: float = VERIFICATION_THRESHOLD
    ):
        if dimension < 1:
            raise ValueError(f"Embedding dimension must be positive, got {dimension}")
        self.dimension = dimension
        self.threshold = check_threshold(threshold)

    def validate(self, embedding: EmbeddingLike) -> np.ndarray:
        """
        Coerce an embedding into a 1-D float64 vector of length D.

        Raises:
            DimensionMismatch: If the vector length is not D
            ValidationError: If the input is not a flat numeric vector
        """
        try:
            vector = np.asarray(embedding, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Embedding must be a sequence of numbers: {e}")

        if vector.ndim != 1:
            raise ValidationError(f"Embedding must be one-dimensional, got shape {vector.shape}")
        if vector.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, vector.shape[0])
        if not np.all(np.isfinite(vector)):
            raise ValidationError("Embedding contains NaN or infinite values")

        return vector

    def similarity(self, a: EmbeddingLike, b: EmbeddingLike) -> float:
        """Clamped cosine similarity of two embeddings."""
        va = self.validate(a)
        vb = self.validate(b)

        norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if norm == 0.0:
            return 0.0

        cosine = float(np.dot(va, vb)) / norm
        return max(0.0, min(1.0, cosine))

    def compare(
        self,
        a: EmbeddingLike,
        b: EmbeddingLike,
        threshold: Optional[float] = None
    ) -> Comparison:
        """
        Compare two embeddings.

        Args:
            a: First embedding
            b: Second embedding
            threshold: Override for the configured verification threshold

        Returns:
            Comparison with similarity in [0, 1] and the verified decision
        """
        threshold = self.threshold if threshold is None else check_threshold(threshold)
        similarity = self.similarity(a, b)
        return Comparison(
            similarity=similarity,
            verified=similarity >= threshold,
            threshold=threshold
        )
