"""Database models for FaceSense."""

from face_sense.models.base import Base
from face_sense.models.enums import SRC_PRIORITY, MarkerType, Src, SubjectType, src_priority
from face_sense.models.face import Face, face_id_for
from face_sense.models.marker import Marker, valid_position
from face_sense.models.subject import Subject, generate_subject_uid

__all__ = [
    "SRC_PRIORITY",
    "Base",
    "Face",
    "Marker",
    "MarkerType",
    "Src",
    "Subject",
    "SubjectType",
    "face_id_for",
    "generate_subject_uid",
    "src_priority",
    "valid_position",
]
