"""Embedding vectors, their JSON payloads and distances.

Markers store their embeddings as a serialized JSON list of vectors. Payloads
are parsed lazily by the caller; a malformed payload is logged and read as no
embeddings at all, never as an error.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)

# Type aliases for embedding structures
Embedding = list[float]
Embeddings = list[Embedding]

# Distance value meaning "not computed"
UNKNOWN_DIST = -1.0


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute the Euclidean distance between two vectors of equal length."""
    if len(a) != len(b):
        msg = f"embedding dimensions differ ({len(a)} != {len(b)})"
        raise ValueError(msg)

    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def min_distance(embeddings: Sequence[Sequence[float]], reference: Sequence[float] | None) -> float:
    """Smallest distance between any of ``embeddings`` and ``reference``.

    Vectors whose length differs from the reference are skipped. Returns
    ``UNKNOWN_DIST`` when nothing could be compared.
    """
    if reference is None or len(reference) == 0:
        return UNKNOWN_DIST

    dist = UNKNOWN_DIST

    for e in embeddings:
        if len(e) != len(reference):
            continue

        d = euclidean_distance(e, reference)
        if dist < 0 or d < dist:
            dist = d

    return dist


def parse_embeddings(raw: str | bytes | None) -> Embeddings:
    """Parse a serialized embeddings payload.

    Accepts a list of vectors, or a single flat vector which is wrapped.
    Returns an empty list for empty or malformed payloads.
    """
    if not raw:
        return []

    try:
        data: Any = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("failed parsing embeddings json: %s", e)
        return []

    if not isinstance(data, list) or not data:
        if data:
            logger.error("failed parsing embeddings json: expected a list, got %s", type(data).__name__)
        return []

    # Single vector
    if all(isinstance(v, (int, float)) for v in data):
        data = [data]

    result: Embeddings = []
    try:
        for vector in data:
            result.append([float(v) for v in vector])
    except (TypeError, ValueError) as e:
        logger.error("failed parsing embeddings json: %s", e)
        return []

    return result


def dump_embeddings(embeddings: Sequence[Sequence[float]] | None) -> str | None:
    """Serialize embeddings for storage, ``None`` when there are none."""
    if not embeddings:
        return None

    return json.dumps([[float(v) for v in e] for e in embeddings], separators=(",", ":"))
