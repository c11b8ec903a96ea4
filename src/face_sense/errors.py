"""Error taxonomy for marker, face and subject resolution.

Validation errors (``InvalidGeometry``, ``NotAFaceMarker``, ``NilFace``) are
raised before anything is written. ``StorageError`` and ``CollaboratorError``
wrap the underlying exception as ``__cause__`` and name the sub-step that
failed, e.g. ``"update related markers"``.
"""

from __future__ import annotations


class FaceSenseError(Exception):
    """Base class for all FaceSense errors."""


class InvalidGeometry(FaceSenseError, ValueError):
    """Marker position is zero or outside the normalized range."""

    def __init__(self, x: float, y: float) -> None:
        super().__init__(f"marker: invalid position x={x:.4f} y={y:.4f}")
        self.x = x
        self.y = y


class NotAFaceMarker(FaceSenseError, ValueError):
    """Operation requires a marker of type face."""


class NilFace(FaceSenseError, ValueError):
    """A required face argument was not given."""


class StorageError(FaceSenseError):
    """A persistence call failed."""

    def __init__(self, step: str, cause: BaseException | None = None) -> None:
        message = f"storage: {step} failed"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)
        self.step = step


class CollaboratorError(FaceSenseError):
    """The collision reporter or the subject store failed."""

    def __init__(self, step: str, cause: BaseException | None = None) -> None:
        message = f"{step} failed"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)
        self.step = step
