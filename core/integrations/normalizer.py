"""
SyncHub Transform Engine — Declarative Field Mapping.

Maps provider payloads onto normalized entities:
- Path lookup with dot segments and list indexes ("items[0].price")
- Named coercions (string, number, boolean, date, datetime, currency, json, array)
- Per-connector custom coercions
- Dotted targets build nested values ("metadata.livemode")

Pure functions: no wall clock and no I/O, so the same record and
definition always produce the same entity.
"""
from __future__ import annotations
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping, Optional
import json
import math
import re

from core.integrations.entities import NormalizedEntity, build_entity
from core.integrations.errors import TransformError
from core.integrations.types import FieldMapping, TransformDefinition


class _Missing:
    """Marker for a source path that is absent (distinct from JSON null)."""

    _instance: Optional[_Missing] = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

Coercion = Callable[[Any], Any]

_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[(\d+)\]")
_NUMERIC_PREFIX = re.compile(r"-?(?:\d+\.?\d*|\.\d+)")
_TRUTHY = frozenset({"true", "1", "yes", "on"})


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def _split_path(path: str) -> list[str | int]:
    parts: list[str | int] = []
    for match in _PATH_TOKEN.finditer(path):
        if match.group(1) is not None:
            parts.append(int(match.group(1)))
        else:
            parts.append(match.group(0))
    return parts


def get_path(data: Any, path: str) -> Any:
    """Resolve ``path`` against ``data``. Returns MISSING when any step is absent."""
    current = data
    for part in _split_path(path):
        if isinstance(current, Mapping):
            if part in current:
                current = current[part]
            elif isinstance(part, int) and str(part) in current:
                current = current[str(part)]
            else:
                return MISSING
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def set_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at a dotted ``path``, creating intermediate dicts."""
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        nested = current.get(part)
        # Copy on write so values lifted from the source record stay untouched
        nested = dict(nested) if isinstance(nested, dict) else {}
        current[part] = nested
        current = nested
    current[parts[-1]] = value


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

def _numeric_text(value: str) -> str | None:
    cleaned = re.sub(r"[^0-9.\-]", "", value)
    match = _NUMERIC_PREFIX.match(cleaned)
    return match.group(0) if match else None


def to_string(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def to_number(value: Any) -> int | float:
    """Lenient number parse. Unparseable input becomes 0."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        text = _numeric_text(value)
        if text is None:
            return 0
        number = float(text)
        if not math.isfinite(number):
            return 0
        return int(number) if number.is_integer() and "." not in text else number
    return 0


def to_boolean(value: Any) -> bool:
    """Truthy strings by keyword, everything else by JavaScript truthiness."""
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    if isinstance(value, (int, float, Decimal)):
        return value != 0 and not math.isnan(value)
    # Objects and arrays are truthy even when empty
    return True


def to_currency(value: Any) -> int:
    """Major units to integer minor units, rounding half up."""
    if isinstance(value, bool):
        amount = Decimal(int(value))
    elif isinstance(value, str):
        text = _numeric_text(value)
        amount = Decimal(text) if text is not None else Decimal(0)
    elif isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            return 0
        amount = Decimal(repr(value))
    else:
        return 0
    try:
        return int(math.floor(amount * 100 + Decimal("0.5")))
    except InvalidOperation:
        return 0


def _from_epoch(number: float) -> datetime | None:
    # Values below 1e11 are unix seconds, larger ones milliseconds
    seconds = number if abs(number) < 1e11 else number / 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601, RFC 2822 or unix timestamps into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return _from_epoch(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if re.fullmatch(r"-?\d+(\.\d+)?", text):
            return _from_epoch(float(text))
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            try:
                dt = parsedate_to_datetime(value)
            except (TypeError, ValueError, IndexError):
                return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_date(value: Any) -> datetime | None:
    """Like to_datetime, truncated to midnight UTC."""
    dt = to_datetime(value)
    if dt is None:
        return None
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def to_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def to_array(value: Any) -> list[Any] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        if not text:
            return []
        return [part.strip() for part in text.split(",") if part.strip()]
    return [value]


COERCIONS: dict[str, Coercion] = {
    "string": to_string,
    "number": to_number,
    "boolean": to_boolean,
    "date": to_date,
    "datetime": to_datetime,
    "currency": to_currency,
    "json": to_json,
    "array": to_array,
}


def coerce(
    value: Any,
    name: str | None,
    custom: Mapping[str, Coercion] | None = None,
    field: str | None = None,
) -> Any:
    """Apply a named coercion. Unparseable dates become None."""
    if name is None:
        return value
    fn = (custom or {}).get(name) or COERCIONS.get(name)
    if fn is None:
        raise TransformError(f"Unknown coercion {name!r}", field=field)
    try:
        result = fn(value)
    except TransformError:
        raise
    except Exception as e:
        raise TransformError(f"Coercion {name!r} failed for {field}: {e}", field=field) from e
    return result


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

def apply_field_mappings(
    record: Mapping[str, Any],
    mappings: tuple[FieldMapping, ...] | list[FieldMapping],
    coercions: Mapping[str, Coercion] | None = None,
) -> dict[str, Any]:
    """Build the target dict for one record.

    Absent sources fall back to the mapping default; with no default the
    target is omitted entirely.
    """
    result: dict[str, Any] = {}
    for fm in mappings:
        value = get_path(record, fm.source)
        if value is not MISSING:
            value = coerce(value, fm.coerce, coercions, field=fm.target)
        if value is MISSING:
            if fm.default is None:
                continue
            value = fm.default
        set_path(result, fm.target, value)
    return result


def transform(
    record: Mapping[str, Any],
    definition: TransformDefinition,
    coercions: Mapping[str, Coercion] | None = None,
    *,
    record_id: str | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> NormalizedEntity:
    """Map one provider record to its normalized entity.

    Raises TransformError when a coercion fails or the mapped fields do
    not validate against the entity model.
    """
    try:
        fields = apply_field_mappings(record, definition.mappings, coercions)
    except TransformError as e:
        e.record_id = e.record_id or record_id
        raise
    if overrides:
        for key, value in overrides.items():
            set_path(fields, key, value)
    return build_entity(definition.entity, fields, record_id=record_id)
