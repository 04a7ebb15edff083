"""
Read results.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class DocumentSnapshot:
    """Contents of one document at ``read_time``; ``exists`` is False for misses."""

    def __init__(
        self,
        reference: Any,
        data: Optional[Dict[str, Any]],
        *,
        read_time: Optional[datetime] = None,
        create_time: Optional[datetime] = None,
        update_time: Optional[datetime] = None,
    ) -> None:
        self._reference = reference
        self._data = data
        self.read_time = read_time
        self.create_time = create_time
        self.update_time = update_time

    @property
    def reference(self) -> Any:
        return self._reference

    @property
    def id(self) -> str:
        return self._reference.id

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return dict(self._data) if self._data is not None else None

    def get(self, field_path: str, default: Any = None) -> Any:
        """Read a (possibly dotted) field; returns ``default`` when absent."""
        if self._data is None:
            return default
        cursor: Any = self._data
        for part in field_path.split("."):
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        return cursor

    def __repr__(self) -> str:
        state = "exists" if self.exists else "missing"
        return f"DocumentSnapshot({self._reference.path!r}, {state})"
