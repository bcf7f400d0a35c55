import re
from datetime import datetime, timezone
from typing import Any, List, Optional

# Largest id every supported backend stores (signed 64-bit)
MAX_RECORD_ID = 2 ** 63 - 1


def clean_str(val: Any, max_len: Optional[int] = 255) -> Optional[str]:
    """
    Collapse whitespace, trim, enforce max length (None = no limit).
    Returns None if empty after cleaning. Non-strings (numbers from JSON) are stringified first.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]


def clean_actor(val: Any) -> Optional[str]:
    """Free-form actor id: whitespace-collapsed, never shortened."""
    return clean_str(val, None)


def parse_datetime(val: Any) -> Optional[datetime]:
    """
    Accept ISO-8601 strings (date or datetime, 'Z' suffix allowed) or datetimes.
    Returns a naive UTC datetime; raises ValueError on garbage.
    """
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        dt = val
    else:
        s = str(val).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """Naive datetimes are UTC by convention; render them with a 'Z' suffix."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"


def parse_positive_int(val: Any, default: int, max_value: Optional[int] = None) -> int:
    try:
        v = int(val)
    except (TypeError, ValueError):
        return default
    if v < 1:
        return default
    if max_value is not None:
        v = min(v, max_value)
    return v


def is_record_id(val: Any) -> bool:
    return isinstance(val, int) and not isinstance(val, bool) and 0 < val <= MAX_RECORD_ID


def parse_id(val: Any) -> Optional[int]:
    """Integer record id from JSON/path input; bools, non-digits and out-of-range values are rejected."""
    if isinstance(val, bool):
        return None
    if isinstance(val, int):
        return val if is_record_id(val) else None
    s = str(val or "").strip()
    if not s.isdigit() or len(s) > 19:
        return None
    rid = int(s)
    return rid if is_record_id(rid) else None


def parse_id_list(val: Any) -> List[int]:
    """Raises ValueError naming the first bad entry."""
    if not isinstance(val, list):
        raise ValueError("ids must be a list")
    out = []
    for raw in val:
        rid = parse_id(raw)
        if rid is None:
            raise ValueError(f"invalid id: {raw!r}")
        out.append(rid)
    return out
