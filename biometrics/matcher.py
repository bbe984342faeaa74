from typing import NamedTuple, Sequence

import numpy as np

from backend.errors import DescriptorLengthError
from database.models import DESCRIPTOR_LENGTH

# Accepted false-accept / false-reject trade-off for 128-d dlib descriptors.
MATCH_THRESHOLD = 0.6


class Candidate(NamedTuple):
    id: str
    descriptor: Sequence[float]


class Match(NamedTuple):
    id: str
    distance: float


def as_descriptor(values: Sequence[float]) -> np.ndarray:
    descriptor = np.asarray(values, dtype=np.float64).reshape(-1)
    if descriptor.shape[0] != DESCRIPTOR_LENGTH:
        raise DescriptorLengthError(
            f"Face descriptor has {descriptor.shape[0]} values, expected {DESCRIPTOR_LENGTH}. "
            "Please contact admin."
        )
    return descriptor


def descriptor_distance(d1: Sequence[float], d2: Sequence[float]) -> float:
    """Euclidean distance; mismatched lengths are a data error, not a non-match."""
    return float(np.linalg.norm(as_descriptor(d1) - as_descriptor(d2)))


def best_match(query: Sequence[float], candidates: Sequence[Candidate]) -> Match | None:
    """
    Nearest candidate by Euclidean distance, only if it beats MATCH_THRESHOLD.
    Ties keep the first candidate in scan order.
    """
    best: Match | None = None
    for candidate in candidates:
        dist = descriptor_distance(query, candidate.descriptor)
        if best is None or dist < best.distance:
            best = Match(candidate.id, dist)

    if best is not None and best.distance < MATCH_THRESHOLD:
        return best
    return None
