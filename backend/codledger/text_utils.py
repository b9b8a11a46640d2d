from __future__ import annotations

import unicodedata
from typing import Optional


def normalize_location(value: Optional[str]) -> str:
    """
    Canonical comparison key for city and zone names.

    - None -> ""
    - trims and collapses inner whitespace
    - case-insensitive (casefold)
    - strips diacritics so "Asunción" and "ASUNCION " compare equal
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split()).casefold()
