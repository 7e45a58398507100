"""Normalization functions for fleet CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re

_TRUTHY_TOKENS = frozenset({"yes", "true", "1"})
_LEADING_INT_RE = re.compile(r"^[+-]?\d+")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: label_key  (for enum label lookups)
# ---------------------------------------------------------------------------

def label_key(value: str | None) -> str | None:
    """Casefold and drop whitespace so 'Tractor Head' and 'tractorhead' collide."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", "", v).casefold()


# ---------------------------------------------------------------------------
# Rule 4: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool:
    """Return True only for 'yes', 'true' or '1' (case-insensitive)."""
    v = trim(value)
    if v is None:
        return False
    return v.lower() in _TRUTHY_TOKENS


# ---------------------------------------------------------------------------
# Rule 5: parse_year
# ---------------------------------------------------------------------------

def parse_year(value: str | None) -> int | None:
    """Parse the leading integer of a free-text model field.

    '2019' → 2019, '2019 Actros' → 2019, '4X2' → 4, 'Actros' → None, '' → None.
    """
    v = trim(value)
    if v is None:
        return None
    m = _LEADING_INT_RE.match(v)
    if not m:
        return None
    return int(m.group(0))


# ---------------------------------------------------------------------------
# Rule 6: category codes
# ---------------------------------------------------------------------------

def normalize_tractor_category(value: str | None) -> str | None:
    """Upper-case axle codes: '4x2' → '4X2'."""
    v = normalize_space(value)
    if v is None:
        return None
    return v.upper()


def normalize_trailer_category(value: str | None) -> str | None:
    return trim(value)
