"""Enumerations for the FaceSense data model."""

from enum import Enum

from sqlalchemy import Enum as SQLEnum


class MarkerType(str, Enum):
    """What a marker outlines."""

    UNKNOWN = ""
    FACE = "face"
    LABEL = "label"


class Src(str, Enum):
    """Provenance of a field value. Compare with ``src_priority``, not by order."""

    DEFAULT = ""  # Nothing known
    AUTO = "auto"  # Matched automatically
    IMAGE = "image"  # Found by the detector in the image
    MARKER = "marker"  # Subject named from a marker
    MANUAL = "manual"  # Set or confirmed by a user


class SubjectType(str, Enum):
    """What kind of identity a subject is."""

    PERSON = "person"
    PET = "pet"
    OTHER = "other"


# Total order of provenance tags, lowest to highest confidence.
SRC_PRIORITY: dict[Src, int] = {
    Src.DEFAULT: 0,
    Src.AUTO: 1,
    Src.IMAGE: 2,
    Src.MARKER: 3,
    Src.MANUAL: 4,
}


def src_priority(src: Src | str | None) -> int:
    """Rank of a provenance tag; unknown tags rank as ``Src.DEFAULT``."""
    if src is None:
        return SRC_PRIORITY[Src.DEFAULT]
    try:
        return SRC_PRIORITY[Src(src)]
    except ValueError:
        return SRC_PRIORITY[Src.DEFAULT]


def db_enum(enum_cls: type[Enum]) -> SQLEnum:
    """Store enum values (not member names) in a plain string column."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
