"""Persistence helpers shared by the resolution services.

Multi-field transitions are written as one UPDATE statement. In-memory
attributes are only changed after that statement succeeded, and they are set
as committed values so a later flush never replays a partial state.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.sql import Executable

from face_sense.errors import CollaboratorError, StorageError


async def execute(
    session: AsyncSession,
    stmt: Executable,
    step: str,
    *,
    error: type[StorageError | CollaboratorError] = StorageError,
) -> Result[Any]:
    """Execute a statement, wrapping driver errors with the failed step."""
    try:
        return await session.execute(stmt)
    except SQLAlchemyError as e:
        raise error(step, e) from e


async def flush(
    session: AsyncSession,
    step: str,
    *,
    error: type[StorageError | CollaboratorError] = StorageError,
) -> None:
    """Flush pending changes, wrapping driver errors with the failed step."""
    try:
        await session.flush()
    except SQLAlchemyError as e:
        raise error(step, e) from e


def assign(obj: Any, values: Mapping[str, Any]) -> None:
    """Apply already persisted values to an instance without dirtying it.

    Objects not persisted yet get regular attribute sets, so the values end
    up in their INSERT.
    """
    if not inspect(obj).persistent:
        for key, value in values.items():
            setattr(obj, key, value)
        return

    for key, value in values.items():
        set_committed_value(obj, key, value)


# Marker fields touched by resolution passes.
MARKER_STATE_FIELDS = (
    "marker_name",
    "marker_invalid",
    "score",
    "subject_uid",
    "subject_src",
    "face_id",
    "face_dist",
    "matched_at",
)


@contextmanager
def restore_on_error(marker: Any) -> Iterator[None]:
    """Put the marker's in-memory state back if the block fails."""
    snapshot = {key: getattr(marker, key) for key in MARKER_STATE_FIELDS}
    face, subject = marker._face, marker._subject

    try:
        yield
    except Exception:
        assign(marker, snapshot)
        marker._face = face
        marker._subject = subject
        raise
