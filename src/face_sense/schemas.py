"""Pydantic schemas for detector output and manual marker edits.

The detector is an external collaborator: whatever it runs, it hands over one
``DetectedFace`` per region. Users edit markers through ``MarkerForm``.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, field_validator

from face_sense.models.enums import MarkerType, Src
from face_sense.models.marker import Marker
from face_sense.utils.embeddings import UNKNOWN_DIST, dump_embeddings


class DetectedFace(BaseModel):
    """A face region reported by the detector."""

    x: float = Field(ge=-1.0, le=1.0, description="Normalized horizontal center")
    y: float = Field(ge=-1.0, le=1.0, description="Normalized vertical center")
    w: float = Field(ge=0.0, le=1.0, description="Normalized width")
    h: float = Field(ge=0.0, le=1.0, description="Normalized height")
    embeddings: list[list[float]] = Field(  # pyright: ignore[reportUnknownVariableType]
        default_factory=list,
        description="Zero or more embedding vectors for this region",
    )
    landmarks: list[dict[str, Any]] = Field(  # pyright: ignore[reportUnknownVariableType]
        default_factory=list,
        description="Landmark points relative to the region, opaque to resolution",
    )
    size: int = Field(default=-1, description="Face size in pixels, -1 if unknown")
    score: int = Field(default=0, description="Detector quality score")

    def embeddings_json(self) -> str | None:
        return dump_embeddings(self.embeddings)

    def landmarks_json(self) -> str | None:
        if not self.landmarks:
            return None
        return json.dumps(self.landmarks, separators=(",", ":"))


class MarkerForm(BaseModel):
    """Fields a user may change on a marker."""

    marker_invalid: bool = False
    marker_name: str = ""
    subject_src: Src = Src.DEFAULT

    @field_validator("marker_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return v.strip()


def new_face_marker(detected: DetectedFace, file_id: int, subject_uid: str | None = None) -> Marker:
    """Create an unsaved face marker from detector output."""
    return Marker(
        file_id=file_id,
        subject_uid=subject_uid or None,
        marker_src=Src.IMAGE,
        marker_type=MarkerType.FACE,
        x=detected.x,
        y=detected.y,
        w=detected.w,
        h=detected.h,
        matched_at=None,
        face_dist=UNKNOWN_DIST,
        embeddings_json=detected.embeddings_json(),
        landmarks_json=detected.landmarks_json(),
        size=detected.size,
        score=detected.score,
    )
