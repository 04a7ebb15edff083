"""
Conversion between Python values and the REST ``Value`` JSON encoding.
"""

from __future__ import annotations

import base64
import math
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Tuple

from .path import ResourcePath
from .utils import format_timestamp, parse_timestamp

_SIMPLE_FIELD = re.compile(r"^[_a-zA-Z][_a-zA-Z0-9]*$")


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float


def quote_field_path(segments: Tuple[str, ...]) -> str:
    """Render field path segments, backquoting any that are not simple names."""
    out = []
    for s in segments:
        if _SIMPLE_FIELD.match(s):
            out.append(s)
        else:
            out.append("`" + s.replace("\\", "\\\\").replace("`", "\\`") + "`")
    return ".".join(out)


def expand_update_data(data: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Turn ``{"a.b": 1, "c": 2}`` into nested data plus the update mask.

    Raises ValueError if one path is a prefix of another, which would make the
    mask ambiguous.
    """
    nested: Dict[str, Any] = {}
    paths: List[Tuple[str, ...]] = []
    for key, value in data.items():
        if not isinstance(key, str) or not key or any(not p for p in key.split(".")):
            raise ValueError(f"Invalid field path: {key!r}")
        segments = tuple(key.split("."))
        paths.append(segments)
        cursor = nested
        for seg in segments[:-1]:
            cursor = cursor.setdefault(seg, {})
            if not isinstance(cursor, dict):
                raise ValueError(f"Field path {key!r} conflicts with another update")
        cursor[segments[-1]] = value

    ordered = sorted(paths)
    for a, b in zip(ordered, ordered[1:]):
        if b[: len(a)] == a:
            raise ValueError(
                f"Field {quote_field_path(a)!r} was specified multiple times "
                f"(as a prefix of {quote_field_path(b)!r})"
            )
    return nested, [quote_field_path(p) for p in paths]


class Serializer:
    """Encodes native values for one database; decodes references back to refs."""

    def __init__(
        self,
        project_id: str,
        database_id: str,
        reference_factory: Callable[[ResourcePath], Any],
    ) -> None:
        self._project_id = project_id
        self._database_id = database_id
        self._reference_factory = reference_factory

    # ---------- encode ----------

    def encode_value(self, value: Any) -> Dict[str, Any]:
        if value is None:
            return {"nullValue": None}
        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return {"booleanValue": value}
        if isinstance(value, int):
            return {"integerValue": str(value)}
        if isinstance(value, float):
            if math.isnan(value):
                return {"doubleValue": "NaN"}
            if math.isinf(value):
                return {"doubleValue": "Infinity" if value > 0 else "-Infinity"}
            return {"doubleValue": value}
        if isinstance(value, str):
            return {"stringValue": value}
        if isinstance(value, (bytes, bytearray)):
            return {"bytesValue": base64.b64encode(bytes(value)).decode("ascii")}
        if isinstance(value, datetime):
            return {"timestampValue": format_timestamp(value)}
        if isinstance(value, GeoPoint):
            return {"geoPointValue": {"latitude": value.latitude, "longitude": value.longitude}}
        path = getattr(value, "resource_path", None)
        if isinstance(path, ResourcePath) and path.is_document:
            return {"referenceValue": path.to_name(self._project_id, self._database_id)}
        if isinstance(value, Mapping):
            return {"mapValue": {"fields": self.encode_fields(value)}}
        if isinstance(value, (list, tuple)):
            return {"arrayValue": {"values": [self.encode_value(v) for v in value]}}
        raise TypeError(f"Cannot encode value of type {type(value).__name__}")

    def encode_fields(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in data.items():
            if not isinstance(key, str):
                raise TypeError(f"Field names must be strings, got {key!r}")
            out[key] = self.encode_value(value)
        return out

    def document_name(self, path: ResourcePath) -> str:
        return path.to_name(self._project_id, self._database_id)

    # ---------- decode ----------

    def decode_value(self, value: Mapping[str, Any]) -> Any:
        if "nullValue" in value:
            return None
        if "booleanValue" in value:
            return bool(value["booleanValue"])
        if "integerValue" in value:
            return int(value["integerValue"])
        if "doubleValue" in value:
            return float(value["doubleValue"])
        if "stringValue" in value:
            return value["stringValue"]
        if "bytesValue" in value:
            return base64.b64decode(value["bytesValue"])
        if "timestampValue" in value:
            return parse_timestamp(value["timestampValue"])
        if "geoPointValue" in value:
            gp = value["geoPointValue"]
            return GeoPoint(gp.get("latitude", 0.0), gp.get("longitude", 0.0))
        if "referenceValue" in value:
            return self._reference_factory(ResourcePath.from_name(value["referenceValue"]))
        if "mapValue" in value:
            return self.decode_fields(value["mapValue"].get("fields", {}))
        if "arrayValue" in value:
            return [self.decode_value(v) for v in value["arrayValue"].get("values", [])]
        raise ValueError(f"Unsupported wire value: {value!r}")

    def decode_fields(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: self.decode_value(v) for k, v in fields.items()}
