"""Identity resolution for face markers.

Submodules:
- store: single-statement updates and in-memory state handling
- subjects: subject store (create-or-find, lookup, rename)
- faces: face clusters, collision reporting, match candidates
- markers: deduplication, face assignment, subject propagation
"""

from face_sense.resolution.faces import FaceService
from face_sense.resolution.markers import MarkerResolver
from face_sense.resolution.subjects import SubjectService

__all__ = [
    "FaceService",
    "MarkerResolver",
    "SubjectService",
]
