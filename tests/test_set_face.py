"""Tests for assigning faces to markers."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from face_sense.errors import CollaboratorError, NilFace, NotAFaceMarker
from face_sense.models import Face, Marker, MarkerType, Src
from face_sense.resolution import FaceService, MarkerResolver, SubjectService

MakeMarker = Callable[..., Marker]
MakeFace = Callable[..., Face]
Persist = Callable[..., Any]


class TestValidation:
    @pytest.mark.asyncio
    async def test_nil_face(self, resolver: MarkerResolver, make_marker: MakeMarker) -> None:
        marker = make_marker()

        with pytest.raises(NilFace):
            await resolver.set_face(marker, None)

        assert marker.face_id is None

    @pytest.mark.asyncio
    async def test_not_a_face_marker(
        self, resolver: MarkerResolver, make_marker: MakeMarker, make_face: MakeFace
    ) -> None:
        marker = make_marker(marker_type=MarkerType.LABEL)

        with pytest.raises(NotAFaceMarker):
            await resolver.set_face(marker, make_face())

        assert marker.face_id is None


class TestDistance:
    @pytest.mark.asyncio
    async def test_distance_from_matching_dimensions(
        self,
        db_session: AsyncSession,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(embeddings=[[1.0, 1.0, 1.0, 1.0], [3.0, 4.0, 0.0]])
        face = make_face(embedding=[0.0, 0.0, 0.0])
        await persist(marker, face)

        assert await resolver.set_face(marker, face)

        await db_session.refresh(marker)
        assert marker.face_id == face.id
        assert marker.face_dist == pytest.approx(5.0)
        assert marker.matched_at is not None

    @pytest.mark.asyncio
    async def test_nothing_comparable_leaves_distance_unknown(
        self,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(embeddings=[[1.0, 2.0]])
        face = make_face(embedding=[0.0, 0.0, 0.0])
        await persist(marker, face)

        assert await resolver.set_face(marker, face)
        assert marker.face_id == face.id
        assert marker.face_dist == -1

    @pytest.mark.asyncio
    async def test_given_distance_is_kept(
        self,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(embeddings=[[3.0, 4.0, 0.0]])
        face = make_face(embedding=[0.0, 0.0, 0.0])
        await persist(marker, face)

        await resolver.set_face(marker, face, 0.25)
        assert marker.face_dist == pytest.approx(0.25)


class TestSubjects:
    @pytest.mark.asyncio
    async def test_anonymous_face_adopts_marker_subject(
        self,
        db_session: AsyncSession,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(subject_uid="jaaaaaaaaaaaaaaa", subject_src=Src.IMAGE)
        face = make_face()
        await persist(marker, face)

        assert await resolver.set_face(marker, face, 0.1)

        await db_session.refresh(face)
        assert face.subject_uid == "jaaaaaaaaaaaaaaa"
        assert marker.subject_uid == "jaaaaaaaaaaaaaaa"
        assert marker.subject_src == Src.IMAGE

    @pytest.mark.asyncio
    async def test_marker_adopts_face_subject_automatically(
        self,
        db_session: AsyncSession,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker()
        face = make_face(subject_uid="jbbbbbbbbbbbbbbb")
        await persist(marker, face)

        assert await resolver.set_face(marker, face, 0.1)

        await db_session.refresh(marker)
        assert marker.subject_uid == "jbbbbbbbbbbbbbbb"
        assert marker.subject_src == Src.AUTO

    @pytest.mark.asyncio
    async def test_automatic_subject_is_replaced_by_face_subject(
        self,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(subject_uid="jaaaaaaaaaaaaaaa", subject_src=Src.AUTO)
        face = make_face(subject_uid="jbbbbbbbbbbbbbbb")
        await persist(marker, face)

        assert await resolver.set_face(marker, face, 0.1)
        assert marker.subject_uid == "jbbbbbbbbbbbbbbb"
        assert marker.subject_src == Src.AUTO


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_assignment_only_touches_match_time(
        self,
        db_session: AsyncSession,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(embeddings=[[0.1, 0.0, 0.0]])
        face = make_face(subject_uid="jbbbbbbbbbbbbbbb")
        await persist(marker, face)

        first_matched = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        second_matched = datetime(2026, 1, 1, 12, 5, tzinfo=UTC)

        with patch("face_sense.resolution.markers._now", return_value=first_matched):
            assert await resolver.set_face(marker, face, 0.3)
        assert marker.matched_at == first_matched
        state = (marker.face_id, marker.face_dist, marker.subject_uid, marker.subject_src)

        with patch("face_sense.resolution.markers._now", return_value=second_matched):
            assert not await resolver.set_face(marker, face, 0.05)

        assert marker.matched_at == second_matched

        await db_session.refresh(marker)
        assert (marker.face_id, marker.face_dist, marker.subject_uid, marker.subject_src) == state
        # SQLite hands back naive datetimes
        assert marker.matched_at is not None
        assert marker.matched_at.replace(tzinfo=None) == second_matched.replace(tzinfo=None)


class TestManualConflict:
    @pytest.mark.asyncio
    async def test_manual_subject_is_never_overwritten(
        self,
        db_session: AsyncSession,
        subjects: SubjectService,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        faces = FaceService(db_session)
        resolver = MarkerResolver(db_session, faces=faces, subjects=subjects)

        marker = make_marker(
            subject_uid="jaaaaaaaaaaaaaaa",
            subject_src=Src.MANUAL,
            embeddings=[[0.1, 0.0, 0.0]],
        )
        face = make_face(subject_uid="jbbbbbbbbbbbbbbb")
        await persist(marker, face)

        with patch.object(faces, "report_collision", AsyncMock(return_value=True)) as report:
            assert not await resolver.set_face(marker, face, 0.1)

        report.assert_awaited_once_with(face, marker.embeddings)

        await db_session.refresh(marker)
        assert marker.subject_uid == "jaaaaaaaaaaaaaaa"
        assert marker.subject_src == Src.MANUAL
        assert marker.face_id is None

    @pytest.mark.asyncio
    async def test_conflict_is_recorded_on_the_face(
        self,
        db_session: AsyncSession,
        resolver: MarkerResolver,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        marker = make_marker(
            subject_uid="jaaaaaaaaaaaaaaa",
            subject_src=Src.MANUAL,
            embeddings=[[0.1, 0.0, 0.0]],
        )
        face = make_face(subject_uid="jbbbbbbbbbbbbbbb")
        await persist(marker, face)

        assert not await resolver.set_face(marker, face)

        await db_session.refresh(face)
        assert face.collisions == 1
        assert face.collision_radius == pytest.approx(0.09)
        assert face.collision_at is not None


class TestRestoreOnError:
    @pytest.mark.asyncio
    async def test_failed_subject_lookup_restores_marker(
        self,
        db_session: AsyncSession,
        faces: FaceService,
        make_marker: MakeMarker,
        make_face: MakeFace,
        persist: Persist,
    ) -> None:
        subjects = SubjectService(db_session)
        resolver = MarkerResolver(db_session, faces=faces, subjects=subjects)

        marker = make_marker(subject_uid="jaaaaaaaaaaaaaaa", subject_src=Src.AUTO)
        face = make_face()
        await persist(marker, face)

        failing = AsyncMock(side_effect=CollaboratorError("subject store: find"))
        with (
            patch.object(subjects, "find", failing),
            pytest.raises(CollaboratorError, match="subject store: find"),
        ):
            await resolver.set_face(marker, face, 0.1)

        assert marker.face_id is None
        assert marker.face_dist == -1
        assert marker.subject_uid == "jaaaaaaaaaaaaaaa"

        await db_session.refresh(marker)
        assert marker.face_id is None
