"""Subject model for named identities."""

from __future__ import annotations

import secrets
import string
from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from face_sense.models.base import Base
from face_sense.models.enums import Src, SubjectType, db_enum

_UID_ALPHABET = string.ascii_lowercase + string.digits


def generate_subject_uid() -> str:
    """Random subject UID: "j" followed by 15 lowercase alphanumerics."""
    return "j" + "".join(secrets.choice(_UID_ALPHABET) for _ in range(15))


class Subject(Base):
    """A named identity, independent of any single detection.

    Subjects are created lazily the first time a name without a UID shows up
    and are found by UID or slug afterwards.
    """

    __tablename__ = "subjects"

    subject_uid: Mapped[str] = mapped_column(String(42), primary_key=True, default=generate_subject_uid)
    subject_slug: Mapped[str] = mapped_column(String(160), unique=True, index=True)
    subject_name: Mapped[str] = mapped_column(String(160), default="")
    subject_type: Mapped[SubjectType] = mapped_column(db_enum(SubjectType), default=SubjectType.PERSON)
    subject_src: Mapped[Src] = mapped_column(db_enum(Src), default=Src.DEFAULT)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"Subject({self.subject_uid!r}, {self.subject_name!r})"
