"""Face model for persistent face clusters."""

from __future__ import annotations

import base64
import hashlib
import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pgvector.sqlalchemy import Vector  # type: ignore[import-untyped]
from sqlalchemy import DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from face_sense.models.base import Base
from face_sense.models.enums import Src, db_enum


def face_id_for(embedding: Sequence[float]) -> str:
    """Content-derived face ID: base32 SHA-1 of the serialized embedding."""
    payload = json.dumps([round(float(v), 6) for v in embedding], separators=(",", ":"))
    digest = hashlib.sha1(payload.encode("utf-8")).digest()
    return base64.b32encode(digest).decode("ascii")


class Face(Base):
    """A cluster anchor unifying many markers that show the same person.

    The reference embedding is the midpoint of the samples the face was
    created from. Faces are shared by reference: any number of markers point
    at one face through ``Marker.face_id``.

    Collision log: when a marker with a different subject lands within the
    face's radius, ``collisions`` is incremented and ``collision_radius``
    shrinks so the face stops matching that region of the embedding space.
    """

    __tablename__ = "faces"

    id: Mapped[str] = mapped_column(String(42), primary_key=True)
    face_src: Mapped[Src] = mapped_column(db_enum(Src), default=Src.DEFAULT)
    subject_uid: Mapped[str | None] = mapped_column(String(42), index=True)

    embedding: Mapped[list[Any] | None] = mapped_column(Vector())
    """Reference embedding (cluster midpoint)."""

    samples: Mapped[int] = mapped_column(Integer, default=0)
    sample_radius: Mapped[float] = mapped_column(Float, default=0.0)
    """Largest distance between a sample and the reference embedding."""

    collisions: Mapped[int] = mapped_column(Integer, default=0)
    collision_radius: Mapped[float] = mapped_column(Float, default=0.0)
    """Markers closer than this are not considered collisions again (0 = none yet)."""

    collision_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("face_src", Src.DEFAULT)
        kwargs.setdefault("samples", 0)
        kwargs.setdefault("sample_radius", 0.0)
        kwargs.setdefault("collisions", 0)
        kwargs.setdefault("collision_radius", 0.0)
        super().__init__(**kwargs)

    def reference_embedding(self) -> list[float]:
        """The reference embedding as a list, empty if missing."""
        if self.embedding is None:
            return []
        return [float(v) for v in self.embedding]

    def match_radius(self, match_dist: float) -> float:
        """Max distance at which a marker matches this face."""
        radius = match_dist + self.sample_radius
        if self.collision_radius > 0:
            radius = min(radius, self.collision_radius)
        return radius

    def __repr__(self) -> str:
        return f"Face({self.id!r}, subject={self.subject_uid!r})"
