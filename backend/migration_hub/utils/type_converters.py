"""
Type converters — shared value conversion utilities for source payloads.
Version: 1.0.0
"""
import html
import re
from typing import Any, Dict, List, Optional

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")

# grams per unit
_WEIGHT_FACTORS = {
    "GRAMS": 1.0,
    "KILOGRAMS": 1000.0,
    "POUNDS": 453.592,
    "OUNCES": 28.3495,
}


def to_float(value: Any) -> Optional[float]:
    """Convert value to float, returning None if missing or unparsable."""
    if value is None or value == "":
        return None
    try:
        val = float(value)
    except (ValueError, TypeError):
        return None
    if val != val or val in (float("inf"), float("-inf")):
        return None
    return val


def to_int(value: Any) -> Optional[int]:
    """Convert value to int, returning None if invalid."""
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def non_negative_int(value: Any) -> int:
    """Quantities: unparsable or negative values become 0."""
    parsed = to_int(value)
    if parsed is None:
        parsed = to_int(to_float(value))
    return max(0, parsed or 0)


def to_text(value: Any) -> str:
    """Strings pass through, numbers are rendered; anything else becomes ''."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def to_optional_text(value: Any) -> Optional[str]:
    return to_text(value).strip() or None


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def text_list(value: Any) -> List[str]:
    """Tags and similar: non-empty strings only."""
    return [t for t in (to_text(v).strip() for v in as_list(value)) if t]


def strip_html(value: Any) -> str:
    """Drop tags, decode entities and collapse whitespace."""
    value = to_text(value)
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    return _WS_RE.sub(" ", text).strip()


def weight_to_grams(value: Any, unit: Any) -> Optional[float]:
    """Normalize a weight to grams; zero or unknown weights become None."""
    weight = to_float(value)
    if not weight:
        return None
    factor = _WEIGHT_FACTORS.get((to_text(unit) or "GRAMS").upper())
    if factor is None:
        return None
    return round(weight * factor, 3)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "untitled"
