from __future__ import annotations

from typing import Sequence

import numpy as np

from .exceptions import DimensionMismatch, InvalidEmbedding
from .types import CacheEntry, MatchResult, Member

DEFAULT_THRESHOLD = 0.85
# Scores are rounded before comparison so exact ties and the inclusive
# threshold boundary do not depend on float noise.
SIMILARITY_DECIMALS = 9
_MIN_NORM = 1e-12


def normalize_embedding(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    try:
        arr = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidEmbedding(f"Embedding is not numeric: {exc}") from exc

    if arr.ndim != 1 or arr.size == 0:
        raise InvalidEmbedding(f"Embedding must be a non-empty 1D vector, got shape {arr.shape}.")
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbedding("Embedding contains NaN or infinite values.")

    norm = float(np.linalg.norm(arr))
    if norm <= _MIN_NORM:
        raise InvalidEmbedding("Embedding has zero norm.")
    return arr / norm


def validate_threshold(value: float) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"threshold must be within [0, 1], got {value}")
    return value


def stack_normalized(members: Sequence[Member]) -> np.ndarray:
    """Stack member embeddings into a row-normalized matrix."""
    if not members:
        return np.empty((0, 0), dtype=np.float64)

    dimension = int(np.asarray(members[0].embedding).size)
    rows: list[np.ndarray] = []
    for member in members:
        row = normalize_embedding(member.embedding)
        if row.size != dimension:
            raise DimensionMismatch(
                f"Member {member.id} has a {row.size}-dim embedding; roster uses {dimension}."
            )
        rows.append(row)
    return np.vstack(rows)


class FaceMatcher:
    def __init__(self, threshold: float = DEFAULT_THRESHOLD) -> None:
        self.threshold = validate_threshold(threshold)

    def match(
        self,
        probe: Sequence[float] | np.ndarray,
        roster: Sequence[Member],
        threshold: float | None = None,
    ) -> MatchResult:
        query = normalize_embedding(probe)
        if not roster:
            return MatchResult(None, 0.0)
        return self._select(query, stack_normalized(roster), tuple(roster), threshold)

    def match_entry(
        self,
        probe: Sequence[float] | np.ndarray,
        entry: CacheEntry,
        threshold: float | None = None,
    ) -> MatchResult:
        query = normalize_embedding(probe)
        if entry.count == 0:
            return MatchResult(None, 0.0)
        return self._select(query, entry.matrix, entry.members, threshold)

    def _select(
        self,
        query: np.ndarray,
        matrix: np.ndarray,
        members: Sequence[Member],
        threshold: float | None,
    ) -> MatchResult:
        if matrix.shape[1] != query.size:
            raise DimensionMismatch(
                f"Probe has {query.size} dimensions; roster embeddings have {matrix.shape[1]}."
            )
        required = self.threshold if threshold is None else validate_threshold(threshold)

        scores = np.round(matrix @ query, SIMILARITY_DECIMALS)
        best = float(scores.max())
        tied = np.flatnonzero(scores == best)
        # Lowest member id wins a tie, independent of roster order.
        winner = min((members[int(i)] for i in tied), key=lambda m: str(m.id))

        confidence = min(1.0, max(0.0, best))
        if confidence >= required:
            return MatchResult(winner, confidence)
        return MatchResult(None, confidence)
