"""Subject store: create-or-find by name, find by UID, rename.

Failures of this store surface as ``CollaboratorError`` to the marker
resolver.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from face_sense.config import settings
from face_sense.errors import CollaboratorError
from face_sense.models.enums import Src, SubjectType
from face_sense.models.subject import Subject
from face_sense.resolution import store
from face_sense.utils.text import clip, slugify, title

logger = logging.getLogger(__name__)


class SubjectService:
    """Lookup and lazy creation of subjects.

    Usage:
        async with async_session_factory() as session:
            subjects = SubjectService(session)
            subj = await subjects.first_or_create("Jane Doe")
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find(self, subject_uid: str | None) -> Subject | None:
        """Find a subject by UID."""
        if not subject_uid:
            return None

        stmt = select(Subject).where(Subject.subject_uid == subject_uid).limit(1)
        result = await store.execute(self._session, stmt, "subject store: find", error=CollaboratorError)
        return result.scalar_one_or_none()

    async def find_by_name(self, name: str) -> Subject | None:
        """Find a subject by name, compared through its slug."""
        slug = slugify(name)
        if not slug:
            return None

        stmt = select(Subject).where(Subject.subject_slug == slug).limit(1)
        result = await store.execute(
            self._session, stmt, "subject store: find by name", error=CollaboratorError
        )
        return result.scalar_one_or_none()

    async def first_or_create(
        self,
        name: str,
        subject_type: SubjectType = SubjectType.PERSON,
        src: Src = Src.MARKER,
    ) -> Subject | None:
        """Return the subject with this name, creating it when missing.

        Returns None for names that normalize to nothing.
        """
        name = title(clip(name, settings.marker_name_max_length))
        slug = slugify(name)

        if not slug:
            logger.debug("subject: ignored empty name %r", name)
            return None

        if existing := await self.find_by_name(name):
            return existing

        subj = Subject(
            subject_slug=slug,
            subject_name=name,
            subject_type=subject_type,
            subject_src=src,
        )
        self._session.add(subj)
        await store.flush(self._session, "subject store: create", error=CollaboratorError)

        logger.info("subject: added %s %r", subj.subject_uid, subj.subject_name)
        return subj

    async def update_name(self, subj: Subject, name: str) -> None:
        """Rename a subject and refresh its slug."""
        name = title(clip(name, settings.marker_name_max_length))
        slug = slugify(name)

        if not slug or name == subj.subject_name:
            return

        values = {"subject_name": name, "subject_slug": slug}
        stmt = (
            update(Subject)
            .where(Subject.subject_uid == subj.subject_uid)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await store.execute(self._session, stmt, "subject store: rename", error=CollaboratorError)
        store.assign(subj, values)

        logger.info("subject: renamed %s to %r", subj.subject_uid, name)
