"""Marker resolution: deduplication, face assignment and subject propagation.

This module ties markers, faces and subjects together:

1. Ingest (update_or_create_marker)
   - Persisted markers are saved directly
   - New markers are compared against markers on the same file within a small
     position window; the higher provenance wins, equal or lower existing
     markers are overwritten in place

2. Face assignment (set_face)
   - Manual subjects never get overwritten by a face bound to a different
     subject; a collision is reported to the face instead
   - Anonymous faces adopt the marker's subject
   - Missing distances are computed from the marker embeddings

3. Subject synchronization (sync_subject)
   - Manual names rename subjects, automatic names never do
   - Manual subjects mint a face when the marker is good enough
   - A subject bound via a face spreads to every automatically matched
     marker of the same face

4. Clearing (clear_face, clear_subject)

Each marker transition is persisted as one UPDATE. If a step fails, the
marker's in-memory state goes back to its last persisted values and the error
propagates; the caller owns the transaction and decides whether to roll back
and re-queue.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import false, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from face_sense.config import settings
from face_sense.errors import FaceSenseError, InvalidGeometry, NilFace, NotAFaceMarker
from face_sense.models.enums import Src, SubjectType, src_priority
from face_sense.models.face import Face
from face_sense.models.marker import Marker
from face_sense.models.subject import Subject
from face_sense.resolution import store
from face_sense.resolution.faces import FaceService
from face_sense.resolution.subjects import SubjectService
from face_sense.schemas import MarkerForm
from face_sense.utils.embeddings import UNKNOWN_DIST, min_distance
from face_sense.utils.text import clip, title

logger = logging.getLogger(__name__)

# First key of the PostgreSQL advisory locks taken per file during ingest.
_FILE_LOCK_NAMESPACE = 0x4653

# Columns written by save() for persisted markers.
_SAVE_FIELDS = (
    "file_id",
    "marker_type",
    "marker_src",
    "marker_name",
    "subject_uid",
    "subject_src",
    "face_id",
    "face_dist",
    "embeddings_json",
    "landmarks_json",
    "x",
    "y",
    "w",
    "h",
    "size",
    "score",
    "marker_invalid",
    "matched_at",
)


def _now() -> datetime:
    return datetime.now(UTC)


class MarkerResolver:
    """Reconciles markers with faces and subjects.

    Usage:
        async with async_session_factory() as session, session.begin():
            resolver = MarkerResolver(session)
            marker = await resolver.update_or_create_marker(candidate)
            await resolver.set_face(marker, face)
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        faces: FaceService | None = None,
        subjects: SubjectService | None = None,
        dedup_tolerance: float | None = None,
        min_size: int | None = None,
        min_score: int | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            session: Database session for queries.
            faces: Face service (default: one on the same session).
            subjects: Subject store (default: one on the same session).
            dedup_tolerance: Position window for duplicates (default from settings).
            min_size: Minimum marker size for new faces (default from settings).
            min_score: Minimum marker score for new faces (default from settings).
        """
        self._session = session
        self._faces = faces or FaceService(session)
        self._subjects = subjects or SubjectService(session)
        self._dedup_tolerance = (
            dedup_tolerance if dedup_tolerance is not None else settings.marker_dedup_tolerance
        )
        self._min_size = min_size if min_size is not None else settings.face_cluster_min_size
        self._min_score = min_score if min_score is not None else settings.face_cluster_min_score

    # ── Persistence ──────────────────────────────────────────────────────────

    async def _updates(self, marker: Marker, values: dict[str, Any], step: str) -> None:
        """Write several marker columns in one statement."""
        if marker.id is None:
            store.assign(marker, values)
            return

        stmt = (
            update(Marker)
            .where(Marker.id == marker.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await store.execute(self._session, stmt, step)
        store.assign(marker, values)

    async def save(self, marker: Marker) -> None:
        """Update the existing row or insert a new one.

        Raises:
            InvalidGeometry: If the position is zero or out of range.
        """
        if not marker.valid_position():
            raise InvalidGeometry(marker.x, marker.y)

        if marker.id is None:
            await self.create(marker)
            return

        values = {key: getattr(marker, key) for key in _SAVE_FIELDS}
        await self._updates(marker, values, "save marker")

    async def create(self, marker: Marker) -> None:
        """Insert a new row.

        Raises:
            InvalidGeometry: If the position is zero or out of range.
        """
        if not marker.valid_position():
            raise InvalidGeometry(marker.x, marker.y)

        self._session.add(marker)
        await store.flush(self._session, "create marker")

    async def matched(self, marker: Marker) -> None:
        """Update the match timestamp."""
        await self._updates(marker, {"matched_at": _now()}, "update match timestamp")

    async def find_marker(self, marker_id: int) -> Marker | None:
        """Return an existing marker if it exists."""
        stmt = select(Marker).where(Marker.id == marker_id).limit(1)
        result = await store.execute(self._session, stmt, "find marker")
        return result.scalar_one_or_none()

    # ── Ingest ───────────────────────────────────────────────────────────────

    async def _lock_file(self, file_id: int) -> None:
        """Serialize ingestion for one file until the current transaction ends.

        PostgreSQL takes a transaction-scoped advisory lock. Other backends
        run an UPDATE that matches no rows, which on SQLite takes the database
        write lock.
        """
        if self._session.get_bind().dialect.name == "postgresql":
            stmt = select(func.pg_advisory_xact_lock(_FILE_LOCK_NAMESPACE, file_id))
        else:
            stmt = (
                update(Marker)
                .where(false())
                .values(file_id=file_id)
                .execution_options(synchronize_session=False)
            )

        await store.execute(self._session, stmt, "lock file")

    async def update_or_create_marker(self, marker: Marker) -> Marker:
        """Update a marker, merge it into a near-duplicate, or insert it.

        A near-duplicate is a marker on the same file whose center is within
        the dedup tolerance on both axes. If its geometry source ranks higher
        than the candidate's, the candidate is dropped. Otherwise the candidate's
        geometry, score, payloads and source are written onto it; its subject
        link is taken over unless the existing subject source ranks higher.

        The file stays locked until the caller commits or rolls back, so
        concurrent ingests of the same file see each other's markers.

        Returns:
            The marker that represents this region after the call.

        Raises:
            InvalidGeometry: If the candidate position is zero or out of range.
        """
        if marker.id is not None:
            await self.save(marker)
            logger.debug("faces: saved marker %d for file %d", marker.id, marker.file_id)
            return marker

        if not marker.valid_position():
            raise InvalidGeometry(marker.x, marker.y)

        await self._lock_file(marker.file_id)

        d = self._dedup_tolerance
        stmt = (
            select(Marker)
            .where(
                Marker.file_id == marker.file_id,
                Marker.x > marker.x - d,
                Marker.x < marker.x + d,
                Marker.y > marker.y - d,
                Marker.y < marker.y + d,
            )
            .order_by(Marker.id)
            .limit(1)
        )
        result = await store.execute(self._session, stmt, "find near-duplicate marker")
        existing = result.scalar_one_or_none()

        if existing is None:
            await self.create(marker)
            logger.debug("faces: added marker %d for file %d", marker.id, marker.file_id)
            return marker

        if src_priority(marker.marker_src) < src_priority(existing.marker_src):
            logger.debug(
                "faces: kept marker %d for file %d, source %s outranks %s",
                existing.id,
                existing.file_id,
                existing.marker_src.value or "default",
                marker.marker_src.value or "default",
            )
            return existing

        values: dict[str, Any] = {
            "x": marker.x,
            "y": marker.y,
            "w": marker.w,
            "h": marker.h,
            "size": marker.size,
            "score": marker.score,
            "landmarks_json": marker.landmarks_json,
            "embeddings_json": marker.embeddings_json,
            "marker_src": marker.marker_src,
        }

        if src_priority(existing.subject_src) <= src_priority(marker.subject_src):
            values["subject_uid"] = marker.subject_uid
            values["subject_src"] = marker.subject_src

        await self._updates(existing, values, "update existing marker")
        logger.debug("faces: updated existing marker %d for file %d", existing.id, existing.file_id)

        return existing

    # ── Manual edits ─────────────────────────────────────────────────────────

    async def save_form(self, marker: Marker, form: MarkerForm) -> bool:
        """Apply a user edit and save the marker.

        Confirmed (valid) markers get at least the confirmed score. A manual
        name binds the marker to the subject of that name and propagates it
        to related markers.

        Returns:
            True if the marker changed.
        """
        changed = False

        with store.restore_on_error(marker):
            if marker.marker_invalid != form.marker_invalid:
                store.assign(marker, {"marker_invalid": form.marker_invalid})
                changed = True

            if not marker.marker_invalid and marker.score < settings.marker_score_confirmed:
                store.assign(marker, {"score": settings.marker_score_confirmed})
                changed = True

            if form.subject_src == Src.MANUAL and form.marker_name:
                name = title(clip(form.marker_name, settings.marker_name_max_length))
                store.assign(marker, {"subject_src": Src.MANUAL, "marker_name": name})

                await self.sync_subject(marker, update_related=True)
                changed = True

            if changed:
                await self.save(marker)

        return changed

    # ── Faces ────────────────────────────────────────────────────────────────

    async def set_face(self, marker: Marker, face: Face | None, dist: float = UNKNOWN_DIST) -> bool:
        """Assign a face to a marker.

        Args:
            marker: A face marker.
            face: The face to assign.
            dist: Distance between marker and face, negative to compute it
                from the marker embeddings.

        Returns:
            True if the face, subject or subject source of the marker changed.

        Raises:
            NilFace: If no face was given.
            NotAFaceMarker: If the marker is not a face marker.
        """
        if face is None:
            raise NilFace("face is nil")
        elif not marker.is_face:
            raise NotAFaceMarker(f"marker {marker.id} is not a face marker")

        # A manually set subject conflicts with a face bound to someone else.
        if (
            marker.subject_src == Src.MANUAL
            and face.subject_uid
            and marker.subject_uid
            and face.subject_uid != marker.subject_uid
        ):
            if await self._faces.report_collision(face, marker.embeddings):
                logger.info(
                    "faces: marker %s (subject %s) collision with %s (subject %s), source %s",
                    marker.id,
                    marker.subject_uid,
                    face.id,
                    face.subject_uid,
                    marker.subject_src.value,
                )
            return False

        with store.restore_on_error(marker):
            # Face learns the subject from the marker, never the other way round.
            if not face.subject_uid and marker.subject_uid:
                await self._faces.adopt_subject(face, marker.subject_uid)

            if marker.subject_uid == face.subject_uid and marker.face_id == face.id:
                await self.matched(marker)
                return False

            face_id = marker.face_id
            subject_uid = marker.subject_uid
            subject_src = marker.subject_src

            if dist < 0:
                dist = min_distance(marker.embeddings, face.reference_embedding())

            staged: dict[str, Any] = {"face_id": face.id, "face_dist": dist}
            if face.subject_uid and face.subject_uid != marker.subject_uid:
                staged["subject_uid"] = face.subject_uid
                staged["subject_src"] = Src.AUTO

            store.assign(marker, staged)
            marker._face = face

            await self.sync_subject(marker, update_related=False)

            updated = (
                marker.face_id != face_id
                or marker.subject_uid != subject_uid
                or marker.subject_src != subject_src
            )

            await self._updates(
                marker,
                {
                    "face_id": marker.face_id,
                    "face_dist": marker.face_dist,
                    "subject_uid": marker.subject_uid,
                    "subject_src": marker.subject_src,
                    "matched_at": _now(),
                },
                "set face",
            )

        return updated

    async def get_face(self, marker: Marker) -> Face | None:
        """Return the marker's face, minting one for manual subjects if possible.

        Markers below the minimum size or score get no new face; that is a
        normal outcome, not an error. A minted face that already exists with
        another subject is reported as a collision and not returned.
        """
        cached = marker._face
        if cached is not None and cached.id == marker.face_id:
            return cached

        if not marker.face_id and marker.subject_src == Src.MANUAL:
            if marker.size < self._min_size or marker.score < self._min_score:
                logger.debug(
                    "faces: skipped adding face for low-quality marker %s, size %d, score %d",
                    marker.id,
                    marker.size,
                    marker.score,
                )
                return None

            face = self._faces.new_face(marker.subject_uid, Src.MANUAL, marker.embeddings)

            if face is None:
                logger.debug("faces: skipped adding face for marker %s without embeddings", marker.id)
                return None

            face = await self._faces.create(face)

            # An existing face with the same embedding may belong to someone else.
            if face.subject_uid and marker.subject_uid and face.subject_uid != marker.subject_uid:
                if await self._faces.report_collision(face, marker.embeddings):
                    logger.info(
                        "faces: marker %s (subject %s) collision with existing %s (subject %s)",
                        marker.id,
                        marker.subject_uid,
                        face.id,
                        face.subject_uid,
                    )
                return None

            await self._updates(marker, {"face_id": face.id}, "bind face")
            marker._face = face

            exclude = [marker.id] if marker.id is not None else []
            try:
                await self.match_markers(face, exclude_ids=exclude)
            except FaceSenseError as e:
                logger.error("faces: %s (match markers)", e)

            return face

        marker._face = await self._faces.find(marker.face_id)
        return marker._face

    async def clear_face(self, marker: Marker) -> bool:
        """Remove the face from a marker.

        Subjects that were matched automatically go with the face, manually
        set subjects stay.

        Returns:
            True if a face was removed.
        """
        if not marker.face_id:
            await self.matched(marker)
            return False

        values: dict[str, Any] = {
            "face_id": None,
            "face_dist": UNKNOWN_DIST,
            "matched_at": _now(),
        }

        if marker.subject_src == Src.AUTO:
            values["subject_uid"] = None

        await self._updates(marker, values, "clear face")
        marker._face = None

        if marker.subject_uid is None:
            marker._subject = None

        return True

    async def match_marker(self, marker: Marker) -> bool:
        """Assign the closest matching face to a marker without one.

        Returns:
            True if the marker changed.
        """
        if not marker.is_face or marker.marker_invalid or marker.face_id:
            return False

        match = await self._faces.best_match(marker.embeddings)

        if match is None:
            await self.matched(marker)
            return False

        face, dist = match
        return await self.set_face(marker, face, dist)

    async def match_markers(
        self,
        face: Face,
        *,
        faceless_only: bool = True,
        exclude_ids: Collection[int] = (),
    ) -> int:
        """Assign a face to every marker within its match radius.

        Returns:
            Number of markers that changed.
        """
        matches = await self._faces.find_matches(
            face, faceless_only=faceless_only, exclude_ids=exclude_ids
        )

        updated = 0
        for marker, dist in matches:
            if not faceless_only and marker.has_face(face, dist):
                continue

            if await self.set_face(marker, face, dist):
                updated += 1

        await self._faces.matched(face)

        if updated:
            logger.info("faces: matched %d markers with %s", updated, face.id)

        return updated

    # ── Subjects ─────────────────────────────────────────────────────────────

    async def get_subject(self, marker: Marker) -> Subject | None:
        """Return the marker's subject, creating one from the marker name if needed."""
        cached = marker._subject
        if cached is not None and cached.subject_uid == marker.subject_uid:
            return cached

        if not marker.subject_uid and marker.marker_name:
            subj = await self._subjects.first_or_create(
                marker.marker_name, SubjectType.PERSON, Src.MARKER
            )

            if subj is None:
                logger.debug("marker: invalid subject %r", marker.marker_name)
                return None

            await self._updates(
                marker, {"subject_uid": subj.subject_uid, "subject_src": Src.MANUAL}, "bind subject"
            )
            marker._subject = subj
            return subj

        marker._subject = await self._subjects.find(marker.subject_uid)
        return marker._subject

    async def sync_subject(self, marker: Marker, *, update_related: bool) -> None:
        """Keep marker, subject, face and related markers consistent.

        Args:
            marker: The marker whose subject is authoritative.
            update_related: Also move automatically matched markers of the same
                face to this subject.
        """
        if not marker.is_face:
            return

        with store.restore_on_error(marker):
            subj = await self.get_subject(marker)

            if subj is None:
                return

            # Manual names win, automatic names never replace an existing one.
            if (
                marker.marker_name
                and subj.subject_name != marker.marker_name
                and (not subj.subject_name or marker.subject_src == Src.MANUAL)
            ):
                await self._subjects.update_name(subj, marker.marker_name)

            if not marker.face_id and marker.subject_src == Src.MANUAL:
                await self.get_face(marker)

            if not marker.face_id or not marker.subject_uid:
                return

            face = marker._face
            if face is None or face.id != marker.face_id:
                face = await self._faces.find(marker.face_id)

            if face is not None and not face.subject_uid:
                await self._faces.adopt_subject(face, marker.subject_uid)

            if not update_related:
                return

            stmt = (
                update(Marker)
                .where(
                    Marker.id != marker.id,
                    Marker.face_id == marker.face_id,
                    Marker.subject_src == Src.AUTO,
                    Marker.subject_uid.is_distinct_from(marker.subject_uid),
                )
                .values(subject_uid=marker.subject_uid, subject_src=Src.AUTO)
                .execution_options(synchronize_session="fetch")
            )
            result = await store.execute(self._session, stmt, "update related markers")

            logger.debug(
                "marker: matched %s with %s, %d related markers updated",
                subj.subject_name,
                marker.face_id,
                result.rowcount,  # type: ignore[attr-defined]
            )

    async def clear_subject(self, marker: Marker, src: Src) -> None:
        """Remove the subject from a marker and report it to the face.

        Args:
            marker: The marker to clear.
            src: Source recorded for the now empty subject link.
        """
        face = marker._face
        if face is None or face.id != marker.face_id:
            face = await self._faces.find(marker.face_id)

        if face is not None and await self._faces.report_collision(face, marker.embeddings):
            logger.debug("faces: collision with %s", face.id)

        await self._updates(
            marker,
            {
                "marker_name": "",
                "face_id": None,
                "face_dist": UNKNOWN_DIST,
                "subject_uid": None,
                "subject_src": src,
            },
            "clear subject",
        )

        marker._face = None
        marker._subject = None
