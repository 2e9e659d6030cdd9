"""Marshalling between the logical model and relational columns.

List/set fields are stored as JSON arrays of strings in TEXT columns. Reading
anything else back means the row was written by something that does not honour
the schema, so it is reported as an invariant violation instead of being
silently coerced.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .exceptions import InvariantViolationError


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_ms(value: datetime) -> datetime:
    """UTC, cut down to whole milliseconds: the finest precision every backend stores."""
    value = ensure_utc(value)
    return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


def to_epoch_ms(value: datetime) -> int:
    return (ensure_utc(value) - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return EPOCH + timedelta(milliseconds=int(value))
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise InvariantViolationError(f"Malformed stored timestamp: {value!r}") from e


def unique(values: Iterable[str]) -> List[str]:
    """De-duplicate while keeping first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def encode_list(values: Optional[Iterable[str]]) -> str:
    return json.dumps(list(values or []))


def decode_list(raw: Optional[str], field: str = "value") -> List[str]:
    if raw is None:
        raise InvariantViolationError(f"Missing JSON list for {field}")
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvariantViolationError(f"Malformed JSON list for {field}: {raw!r}") from e
    if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
        raise InvariantViolationError(f"Expected a JSON list of strings for {field}, got {raw!r}")
    return decoded
