"""Shared pytest fixtures for FaceSense tests."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from face_sense.models import (
    Base,
    Face,
    Marker,
    MarkerType,
    Src,
    Subject,
    face_id_for,
)
from face_sense.resolution import FaceService, MarkerResolver, SubjectService
from face_sense.utils.embeddings import dump_embeddings
from face_sense.utils.text import slugify

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# In-memory SQLite unless a test database is configured
TEST_DATABASE_URL = os.environ.get("FACE_SENSE_TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine.

    This creates all tables at the start and drops them at the end.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup: drop all tables after tests
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(
    test_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session, rolled back at the end of the test."""
    async_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_factory() as session:
        yield session
        # Rollback to ensure test isolation
        await session.rollback()


@pytest.fixture
def faces(db_session: AsyncSession) -> FaceService:
    return FaceService(db_session)


@pytest.fixture
def subjects(db_session: AsyncSession) -> SubjectService:
    return SubjectService(db_session)


@pytest.fixture
def resolver(
    db_session: AsyncSession,
    faces: FaceService,
    subjects: SubjectService,
) -> MarkerResolver:
    return MarkerResolver(db_session, faces=faces, subjects=subjects)


@pytest.fixture
def make_marker() -> Callable[..., Marker]:
    """Factory fixture for creating face Marker instances."""

    def _make(
        *,
        file_id: int = 1,
        x: float = 0.5,
        y: float = 0.5,
        w: float = 0.2,
        h: float = 0.2,
        size: int = 120,
        score: int = 50,
        marker_type: MarkerType = MarkerType.FACE,
        marker_src: Src = Src.IMAGE,
        marker_name: str = "",
        subject_uid: str | None = None,
        subject_src: Src = Src.DEFAULT,
        face_id: str | None = None,
        face_dist: float = -1.0,
        embeddings: list[list[float]] | None = None,
        **kwargs: Any,
    ) -> Marker:
        return Marker(
            file_id=file_id,
            x=x,
            y=y,
            w=w,
            h=h,
            size=size,
            score=score,
            marker_type=marker_type,
            marker_src=marker_src,
            marker_name=marker_name,
            subject_uid=subject_uid,
            subject_src=subject_src,
            face_id=face_id,
            face_dist=face_dist,
            embeddings_json=dump_embeddings(embeddings),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_face() -> Callable[..., Face]:
    """Factory fixture for creating Face instances."""

    def _make(
        *,
        embedding: list[float] | None = None,
        subject_uid: str | None = None,
        face_src: Src = Src.MANUAL,
        sample_radius: float = 0.0,
    ) -> Face:
        embedding = embedding if embedding is not None else [0.0, 0.0, 0.0]
        return Face(
            id=face_id_for(embedding),
            embedding=embedding,
            subject_uid=subject_uid,
            face_src=face_src,
            samples=1,
            sample_radius=sample_radius,
        )

    return _make


@pytest.fixture
def make_subject() -> Callable[..., Subject]:
    """Factory fixture for creating Subject instances."""

    def _make(
        *,
        name: str = "Jane Doe",
        subject_src: Src = Src.MARKER,
    ) -> Subject:
        return Subject(
            subject_slug=slugify(name) or "unnamed",
            subject_name=name,
            subject_src=subject_src,
        )

    return _make


@pytest.fixture
def persist(db_session: AsyncSession) -> Callable[..., Any]:
    """Add instances to the session and flush them."""

    async def _persist(*instances: Any) -> None:
        db_session.add_all(instances)
        await db_session.flush()

    return _persist
