from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity

from personalization.constants import SIMILARITY_MAX, SIMILARITY_MIN
from personalization.errors import ConfigurationError, ValidationError


def coerce_embedding(value: object, post_id: str | None = None) -> list[float]:
    """Validate a raw embedding payload and return it as a list of floats.

    Raises ValidationError for anything that is not a non-empty sequence of
    finite numbers.
    """
    label = post_id or "<unknown>"
    if value is None:
        raise ValidationError(f"embedding missing for {label}")
    if isinstance(value, np.ndarray):
        value = value.tolist()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValidationError(f"embedding for {label} is not a sequence")
    if len(value) == 0:
        raise ValidationError(f"embedding for {label} is empty")

    out: list[float] = []
    for v in value:
        if isinstance(v, bool) or not isinstance(v, (int, float, np.floating, np.integer)):
            raise ValidationError(f"embedding for {label} has non-numeric component")
        f = float(v)
        if not math.isfinite(f):
            raise ValidationError(f"embedding for {label} has non-finite component")
        out.append(f)
    return out


def check_dimensions(embeddings: Iterable[Sequence[float]]) -> int:
    """Return the shared dimensionality, or 0 when there are no embeddings.

    Raises ConfigurationError when two embeddings disagree.
    """
    dim = 0
    for emb in embeddings:
        n = len(emb)
        if dim == 0:
            dim = n
        elif n != dim:
            raise ConfigurationError(
                f"embedding dimensionality mismatch: expected {dim}, got {n}"
            )
    return dim


def as_matrix(embeddings: Sequence[Sequence[float]]) -> NDArray[np.float64]:
    return np.asarray(embeddings, dtype=np.float64)


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty, zero or sized differently."""
    if len(a) == 0 or len(b) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64).reshape(1, -1)
    vb = np.asarray(b, dtype=np.float64).reshape(1, -1)
    if not np.any(va) or not np.any(vb):
        return 0.0
    sim = float(cosine_similarity(va, vb)[0, 0])
    return float(np.clip(sim, SIMILARITY_MIN, SIMILARITY_MAX))


def cosine_matrix(
    rows: NDArray[np.float64], cols: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Pairwise cosine similarity; zero vectors score 0 against everything."""
    sims = cosine_similarity(rows, cols)
    return np.clip(sims, SIMILARITY_MIN, SIMILARITY_MAX)
