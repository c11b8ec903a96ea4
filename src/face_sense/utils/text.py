"""Name normalization helpers."""

from __future__ import annotations

import re
import unicodedata


def clip(s: str, size: int) -> str:
    """Strip whitespace and clip to at most ``size`` characters."""
    s = s.strip()

    if len(s) <= size:
        return s

    return s[:size].rstrip()


def title(s: str) -> str:
    """Title-case a name, keeping existing capitals ("McDonald", "O'Brien")."""
    words = []
    for word in s.split():
        words.append(word[:1].upper() + word[1:])
    return " ".join(words)


def slugify(name: str) -> str:
    """Normalize a name into a lookup slug.

    Examples:
        "Jane Doe" -> "jane-doe"
        "  JANE   doe " -> "jane-doe"
        "Zoë" -> "zoe"
    """
    name = unicodedata.normalize("NFKD", name)
    name = name.encode("ascii", "ignore").decode("ascii")
    name = name.lower().strip()
    name = re.sub(r"[^a-z0-9]+", "-", name)
    return name.strip("-")
