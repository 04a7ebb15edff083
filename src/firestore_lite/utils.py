"""
Utility functions for the Firestore client.

Request tags, document ids, timestamp helpers and NDJSON reading.
"""

import json
import random
import string
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

_TAG_ALPHABET = string.ascii_letters + string.digits


def request_tag() -> str:
    """Short random id used to correlate log lines of one logical operation."""
    return "".join(random.choice(_TAG_ALPHABET) for _ in range(5))


def auto_id() -> str:
    """Generate a 20-character document id, as the server-side SDKs do."""
    return "".join(random.choice(_TAG_ALPHABET) for _ in range(20))


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as an RFC 3339 UTC string with microsecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; nanosecond digits are truncated to micros."""
    if value is None or isinstance(value, datetime):
        return value
    text = value.replace("Z", "+00:00")
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        tz = rest[len(digits) :]
        text = f"{head}.{digits[:6].ljust(6, '0')}{tz}"
    return datetime.fromisoformat(text)


def iter_ndjson(path: Union[str, Path]) -> Iterator[Dict[str, Any]]:
    """Yield one JSON object per non-blank line."""
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON ({e.msg})") from e
