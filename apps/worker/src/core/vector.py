"""Conversions between Python float lists and pgvector literals, plus centroid math."""
import math
from typing import Any, Sequence

from src.core.errors import VectorDimensionError, VectorFormatError


def to_vector_literal(values: Sequence[float]) -> str:
    """pgvector accepts '[1.0,2.0,3.0]' style literals; non-finite components become 0."""
    parts = []
    for v in values:
        f = float(v)
        parts.append(repr(f if math.isfinite(f) else 0.0))
    return f"[{','.join(parts)}]"


def parse_vector(value: Any) -> list[float]:
    """
    Accepts a bracketed literal or an already materialized sequence
    (pgvector hands back numpy arrays); raises VectorFormatError otherwise.
    """
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed.startswith("[") or not trimmed.endswith("]"):
            raise VectorFormatError(f"Invalid vector format: {trimmed[:32]}")

        inner = trimmed[1:-1].strip()
        if not inner:
            return []
        try:
            return [float(part.strip()) for part in inner.split(",")]
        except ValueError as e:
            raise VectorFormatError(f"Invalid vector component in: {trimmed[:32]}") from e

    if value is None or isinstance(value, (bytes, dict)):
        raise VectorFormatError(f"Invalid vector value type: {type(value).__name__}")

    try:
        return [float(n) for n in value]
    except TypeError as e:
        raise VectorFormatError(f"Invalid vector value type: {type(value).__name__}") from e


def mean_vector(current: Sequence[float], current_size: int, next_vector: Sequence[float]) -> list[float]:
    """Running mean: folds next_vector into a centroid that already averages current_size vectors."""
    if current_size <= 0:
        return list(next_vector)
    if len(current) != len(next_vector):
        raise VectorDimensionError(len(current), len(next_vector))

    denom = current_size + 1
    return [(c * current_size + n) / denom for c, n in zip(current, next_vector)]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise VectorDimensionError(len(a), len(b))

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Same convention as pgvector's <=> operator: 1 - cosine similarity."""
    return 1.0 - cosine_similarity(a, b)
