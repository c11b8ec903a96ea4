"""Face cluster service: creation, lookup, collision reporting, match sweeps.

Faces are shared by many markers and owned by none of them, so everything here
works with face IDs and re-fetches rows instead of trusting an in-memory copy
held by some marker.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from datetime import UTC, datetime

import numpy as np
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from face_sense.config import settings
from face_sense.errors import CollaboratorError
from face_sense.models.enums import MarkerType, Src
from face_sense.models.face import Face, face_id_for
from face_sense.models.marker import Marker
from face_sense.resolution import store
from face_sense.utils.embeddings import euclidean_distance, min_distance

logger = logging.getLogger(__name__)


def embeddings_midpoint(embeddings: Sequence[Sequence[float]]) -> tuple[list[float], float, int]:
    """Midpoint of all embeddings sharing the first vector's dimension.

    Returns:
        Tuple of (midpoint, radius, samples), where radius is the largest
        distance between a sample and the midpoint.
    """
    if not embeddings:
        return [], 0.0, 0

    dim = len(embeddings[0])
    samples = np.asarray([e for e in embeddings if len(e) == dim], dtype=np.float64)
    midpoint = samples.mean(axis=0)
    radius = float(np.linalg.norm(samples - midpoint, axis=1).max())

    return [float(v) for v in midpoint], radius, len(samples)


class FaceService:
    """Service for face clusters.

    Usage:
        async with async_session_factory() as session:
            faces = FaceService(session)
            face = await faces.find(face_id)
            reported = await faces.report_collision(face, marker.embeddings)
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        match_dist: float | None = None,
        collision_dist: float | None = None,
    ) -> None:
        """Initialize the face service.

        Args:
            session: Database session for queries.
            match_dist: Max distance for matching markers (default from settings).
            collision_dist: Collision radius shrink step (default from settings).
        """
        self._session = session
        self._match_dist = match_dist if match_dist is not None else settings.face_match_dist
        self._collision_dist = (
            collision_dist if collision_dist is not None else settings.face_collision_dist
        )

    @property
    def match_dist(self) -> float:
        return self._match_dist

    async def find(self, face_id: str | None) -> Face | None:
        """Find a face by ID."""
        if not face_id:
            return None

        stmt = select(Face).where(Face.id == face_id).limit(1)
        result = await store.execute(self._session, stmt, "find face")
        return result.scalar_one_or_none()

    def new_face(
        self,
        subject_uid: str | None,
        src: Src,
        embeddings: Sequence[Sequence[float]],
    ) -> Face | None:
        """Build an unsaved face from sample embeddings, None without samples."""
        midpoint, radius, samples = embeddings_midpoint(embeddings)

        if not midpoint:
            return None

        return Face(
            id=face_id_for(midpoint),
            face_src=src,
            subject_uid=subject_uid or None,
            embedding=midpoint,
            samples=samples,
            sample_radius=radius,
        )

    async def create(self, face: Face) -> Face:
        """Insert a face, or return the existing row with the same ID."""
        if existing := await self.find(face.id):
            return existing

        self._session.add(face)
        await store.flush(self._session, "create face")

        logger.info("faces: added %s (subject %s, %d samples)", face.id, face.subject_uid, face.samples)
        return face

    async def adopt_subject(self, face: Face, subject_uid: str) -> bool:
        """Bind a subject to a face that has none yet.

        A subject already bound to the face is authoritative and stays. Returns
        True if the face adopted ``subject_uid``.
        """
        stmt = (
            update(Face)
            .where(Face.id == face.id, Face.subject_uid.is_(None))
            .values(subject_uid=subject_uid)
            .execution_options(synchronize_session=False)
        )
        result = await store.execute(self._session, stmt, "update known face")

        if result.rowcount:  # type: ignore[attr-defined]
            store.assign(face, {"subject_uid": subject_uid})
            logger.debug("faces: %s adopted subject %s", face.id, subject_uid)
            return True

        # Someone else bound a subject first, pick it up.
        current = await store.execute(
            self._session, select(Face.subject_uid).where(Face.id == face.id), "find face subject"
        )
        store.assign(face, {"subject_uid": current.scalar_one_or_none()})
        return False

    async def report_collision(self, face: Face, embeddings: Sequence[Sequence[float]]) -> bool:
        """Record that markers of another subject landed within this face's radius.

        Anonymous faces never collide. The collision radius shrinks just below
        the closest colliding embedding, so the same collision is only
        recorded once.

        Returns:
            True if a new collision was recorded.

        Raises:
            CollaboratorError: If the face has no ID or reference embedding, or
                the collision could not be stored.
        """
        if not face.subject_uid:
            return False
        elif not face.id:
            raise CollaboratorError("report collision", ValueError("invalid face id"))

        reference = face.reference_embedding()

        if not reference:
            raise CollaboratorError("report collision", ValueError(f"face {face.id} has no embedding"))
        elif not embeddings:
            return False

        radius = face.match_radius(self._match_dist)
        collision_radius: float | None = None

        for e in embeddings:
            if len(e) != len(reference):
                continue

            d = euclidean_distance(e, reference)

            if d > radius:
                continue

            r = max(d - self._collision_dist, self._collision_dist)
            if collision_radius is None or r < collision_radius:
                collision_radius = r

        if collision_radius is None:
            return False

        collision_at = datetime.now(UTC)
        stmt = (
            update(Face)
            .where(Face.id == face.id)
            .values(
                collisions=Face.collisions + 1,
                collision_radius=collision_radius,
                collision_at=collision_at,
            )
            .execution_options(synchronize_session=False)
        )
        await store.execute(self._session, stmt, "report collision", error=CollaboratorError)
        store.assign(
            face,
            {
                "collisions": face.collisions + 1,
                "collision_radius": collision_radius,
                "collision_at": collision_at,
            },
        )

        logger.info(
            "faces: collision %d recorded for %s (subject %s), radius %.4f",
            face.collisions,
            face.id,
            face.subject_uid,
            collision_radius,
        )
        return True

    async def matched(self, face: Face) -> None:
        """Update the face's match timestamp."""
        matched_at = datetime.now(UTC)
        stmt = (
            update(Face)
            .where(Face.id == face.id)
            .values(matched_at=matched_at)
            .execution_options(synchronize_session=False)
        )
        await store.execute(self._session, stmt, "update face match timestamp")
        store.assign(face, {"matched_at": matched_at})

    async def best_match(self, embeddings: Sequence[Sequence[float]]) -> tuple[Face, float] | None:
        """Closest face whose match radius covers one of the embeddings."""
        if not embeddings:
            return None

        stmt = select(Face).where(Face.embedding.is_not(None)).order_by(Face.id)
        result = await store.execute(self._session, stmt, "find faces")

        best: tuple[Face, float] | None = None
        for face in result.scalars():
            d = min_distance(embeddings, face.reference_embedding())
            if d < 0 or d > face.match_radius(self._match_dist):
                continue
            if best is None or d < best[1]:
                best = (face, d)

        return best

    async def find_matches(
        self,
        face: Face,
        *,
        faceless_only: bool = True,
        exclude_ids: Collection[int] = (),
    ) -> list[tuple[Marker, float]]:
        """Face markers within this face's match radius.

        Args:
            face: The face to match.
            faceless_only: Only consider markers without a face.
            exclude_ids: Marker IDs to leave out.

        Returns:
            List of (marker, distance) sorted by distance (closest first).
        """
        reference = face.reference_embedding()
        if not reference:
            return []

        stmt = select(Marker).where(
            Marker.marker_type == MarkerType.FACE,
            Marker.marker_invalid.is_(False),
            Marker.embeddings_json.is_not(None),
        )
        if faceless_only:
            stmt = stmt.where(Marker.face_id.is_(None))
        if exclude_ids:
            stmt = stmt.where(Marker.id.not_in(list(exclude_ids)))

        result = await store.execute(self._session, stmt.order_by(Marker.id), "find markers")
        radius = face.match_radius(self._match_dist)

        matches: list[tuple[Marker, float]] = []
        for marker in result.scalars():
            d = min_distance(marker.embeddings, reference)
            if 0 <= d <= radius:
                matches.append((marker, d))

        matches.sort(key=lambda m: m[1])
        return matches
