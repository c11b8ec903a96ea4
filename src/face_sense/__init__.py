"""FaceSense: identity resolution and deduplication for face markers."""

__version__ = "0.1.0"
