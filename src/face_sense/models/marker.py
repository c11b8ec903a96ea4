"""Marker model for detected image regions."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, SmallInteger, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from face_sense.models.base import Base
from face_sense.models.enums import MarkerType, Src, db_enum
from face_sense.utils.embeddings import UNKNOWN_DIST, Embeddings, parse_embeddings

if TYPE_CHECKING:
    from face_sense.models.face import Face


# Column defaults also applied to transient instances, before the first INSERT.
_MARKER_DEFAULTS: dict[str, Any] = {
    "marker_type": MarkerType.UNKNOWN,
    "marker_src": Src.DEFAULT,
    "marker_name": "",
    "subject_src": Src.DEFAULT,
    "face_dist": UNKNOWN_DIST,
    "x": 0.0,
    "y": 0.0,
    "w": 0.0,
    "h": 0.0,
    "size": -1,
    "score": 0,
    "marker_invalid": False,
}


def valid_position(x: float, y: float) -> bool:
    """Markers are centered inside the normalized frame, never on an axis."""
    return x != 0 and y != 0 and -1 <= x <= 1 and -1 <= y <= 1


class Marker(Base):
    """A single detected region in one file.

    Geometry (``x``, ``y`` center, ``w``, ``h`` size) is normalized.
    ``marker_src`` is the provenance of the geometry, ``subject_src`` the
    provenance of the subject link.

    Embeddings are stored serialized and parsed on first access. The parsed
    value is memoized per instance and dropped as soon as ``embeddings_json``
    holds a different payload.
    """

    __tablename__ = "markers"
    __table_args__ = (Index("ix_markers_file_position", "file_id", "x", "y"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[int] = mapped_column(Integer, index=True)
    marker_type: Mapped[MarkerType] = mapped_column(db_enum(MarkerType), default=MarkerType.UNKNOWN)
    marker_src: Mapped[Src] = mapped_column(db_enum(Src), default=Src.DEFAULT)
    marker_name: Mapped[str] = mapped_column(String(255), default="")
    subject_uid: Mapped[str | None] = mapped_column(String(42), index=True)
    subject_src: Mapped[Src] = mapped_column(db_enum(Src), default=Src.DEFAULT)
    face_id: Mapped[str | None] = mapped_column(String(42), index=True)
    face_dist: Mapped[float] = mapped_column(Float, default=UNKNOWN_DIST)
    embeddings_json: Mapped[str | None] = mapped_column(Text)
    landmarks_json: Mapped[str | None] = mapped_column(Text)
    x: Mapped[float] = mapped_column(Float, default=0.0)
    y: Mapped[float] = mapped_column(Float, default=0.0)
    w: Mapped[float] = mapped_column(Float, default=0.0)
    h: Mapped[float] = mapped_column(Float, default=0.0)
    size: Mapped[int] = mapped_column(Integer, default=-1)
    score: Mapped[int] = mapped_column(SmallInteger, default=0)
    marker_invalid: Mapped[bool] = mapped_column(Boolean, default=False)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # In-memory caches, not mapped. Loaded rows start with the class defaults.
    _embeddings_memo = None  # (payload, parsed)
    _face = None
    _subject = None

    def __init__(self, **kwargs: Any) -> None:
        for key, value in _MARKER_DEFAULTS.items():
            kwargs.setdefault(key, value)
        super().__init__(**kwargs)

    @property
    def embeddings(self) -> Embeddings:
        """Parsed embeddings, empty when missing or malformed."""
        raw = self.embeddings_json

        if not raw:
            return []

        memo = self._embeddings_memo
        if memo is not None and memo[0] is raw:
            return memo[1]

        parsed = parse_embeddings(raw)
        self._embeddings_memo = (raw, parsed)
        return parsed

    @property
    def is_face(self) -> bool:
        return self.marker_type == MarkerType.FACE

    def valid_position(self) -> bool:
        return valid_position(self.x, self.y)

    def has_face(self, face: Face | None, dist: float) -> bool:
        """Whether the marker already carries the best matching face."""
        if not self.face_id:
            return False
        elif face is None:
            return True
        elif self.face_id == face.id:
            return True
        elif self.face_dist < 0:
            return False
        elif dist < 0:
            return True

        return self.face_dist <= dist

    def __repr__(self) -> str:
        return f"Marker({self.id!r}, file={self.file_id!r}, type={self.marker_type.value!r})"
