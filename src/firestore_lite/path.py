"""
Resource paths for documents and collections.

A path is an immutable tuple of segments. Document paths have an even number
of segments, collection paths an odd number.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from .errors import InvalidPathError

DOCUMENT_ID = "__name__"
DEFAULT_DATABASE_ID = "(default)"


class ResourcePath:
    """Immutable, slash-separated path relative to a database root."""

    __slots__ = ("_segments",)

    def __init__(self, segments: Iterable[str] = ()) -> None:
        self._segments: Tuple[str, ...] = tuple(segments)

    @classmethod
    def parse(cls, path: str) -> "ResourcePath":
        if not isinstance(path, str) or not path:
            raise InvalidPathError("Path must be a non-empty string.", path=path)
        if "//" in path:
            raise InvalidPathError(
                f'Paths must not contain //, but got "{path}".',
                path=path,
            )
        return cls(s for s in path.split("/") if s)

    @classmethod
    def from_name(cls, name: str) -> "ResourcePath":
        """Strip the ``projects/{p}/databases/{d}/documents`` prefix of a resource name."""
        parts = name.split("/")
        if len(parts) < 5 or parts[0] != "projects" or parts[2] != "databases":
            raise InvalidPathError(f"Not a valid resource name: {name!r}", path=name)
        if len(parts) > 4 and parts[4] != "documents":
            raise InvalidPathError(f"Not a document resource name: {name!r}", path=name)
        return cls(parts[5:])

    def append(self, other: "str | ResourcePath") -> "ResourcePath":
        if isinstance(other, ResourcePath):
            return ResourcePath(self._segments + other._segments)
        return ResourcePath(self._segments + ResourcePath.parse(other)._segments)

    def parent(self) -> Optional["ResourcePath"]:
        if not self._segments:
            return None
        return ResourcePath(self._segments[:-1])

    @property
    def segments(self) -> Tuple[str, ...]:
        return self._segments

    @property
    def id(self) -> Optional[str]:
        return self._segments[-1] if self._segments else None

    @property
    def is_document(self) -> bool:
        return len(self._segments) > 0 and len(self._segments) % 2 == 0

    @property
    def is_collection(self) -> bool:
        return len(self._segments) % 2 == 1

    @property
    def relative_name(self) -> str:
        return "/".join(self._segments)

    def to_name(self, project_id: str, database_id: str = DEFAULT_DATABASE_ID) -> str:
        root = f"projects/{project_id}/databases/{database_id}/documents"
        return f"{root}/{self.relative_name}" if self._segments else root

    def is_prefix_of(self, other: "ResourcePath") -> bool:
        n = len(self._segments)
        return other._segments[:n] == self._segments

    def __len__(self) -> int:
        return len(self._segments)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ResourcePath) and other._segments == self._segments

    def __lt__(self, other: "ResourcePath") -> bool:
        return self._segments < other._segments

    def __hash__(self) -> int:
        return hash(self._segments)

    def __repr__(self) -> str:
        return f"ResourcePath({self.relative_name!r})"


EMPTY_PATH = ResourcePath()


def document_path(path: str) -> ResourcePath:
    parsed = ResourcePath.parse(path)
    if not parsed.is_document:
        raise InvalidPathError(
            f'Value for argument "documentPath" must point to a document, but was "{path}". '
            "Your path does not contain an even number of components.",
            path=path,
        )
    return parsed


def collection_path(path: str) -> ResourcePath:
    parsed = ResourcePath.parse(path)
    if not parsed.is_collection:
        raise InvalidPathError(
            f'Value for argument "collectionPath" must point to a collection, but was "{path}". '
            "Your path does not contain an odd number of components.",
            path=path,
        )
    return parsed
