"""Utility modules for FaceSense."""

from face_sense.utils.embeddings import (
    UNKNOWN_DIST,
    Embedding,
    Embeddings,
    dump_embeddings,
    euclidean_distance,
    min_distance,
    parse_embeddings,
)
from face_sense.utils.text import clip, slugify, title

__all__ = [
    "UNKNOWN_DIST",
    "Embedding",
    "Embeddings",
    "clip",
    "dump_embeddings",
    "euclidean_distance",
    "min_distance",
    "parse_embeddings",
    "slugify",
    "title",
]
