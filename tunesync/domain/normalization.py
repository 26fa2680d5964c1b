from __future__ import annotations

import re
import unicodedata
from typing import Optional

from .entities import Track


_FEAT_PATTERN = re.compile(r"\b(feat\.?|ft\.)\b", re.IGNORECASE)
_PARENS_CHARS_PATTERN = re.compile(r"[\(\)\[\]\{\}]")
_PARENS_CONTENT_PATTERN = re.compile(r"\s*[\(\[\{][^\)\]\}]*[\)\]\}]\s*")
# Keep all unicode word characters and spaces; strip punctuation/symbols. Then remove underscores separately.
_NON_WORD_SPACE_PATTERN = re.compile(r"[^\w\s]", re.UNICODE)
_MULTISPACE_PATTERN = re.compile(r"\s+")
_ISRC_SEPARATORS = re.compile(r"[\s\-]")


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def normalize_string(value: Optional[str]) -> str:
    value = value or ""
    value = _strip_diacritics(value)
    value = value.lower()
    value = value.replace("&", " and ")
    value = _FEAT_PATTERN.sub(" ", value)
    # Remove parenthetical/bracketed content entirely
    while True:
        new_value = _PARENS_CONTENT_PATTERN.sub(" ", value)
        if new_value == value:
            break
        value = new_value
    value = _PARENS_CHARS_PATTERN.sub(" ", value)
    value = _NON_WORD_SPACE_PATTERN.sub(" ", value)
    value = value.replace("_", " ")
    value = _MULTISPACE_PATTERN.sub(" ", value).strip()
    return value


def normalize_isrc(value: Optional[str]) -> Optional[str]:
    """Upper-case an ISRC and drop the hyphens some catalogs print; None when empty."""
    if not value:
        return None
    cleaned = _ISRC_SEPARATORS.sub("", value).upper()
    return cleaned or None


def round_duration_ms(duration_ms: Optional[int], tolerance_ms: int = 2000) -> int:
    if not duration_ms or duration_ms < 0:
        return 0
    bucket = max(1, tolerance_ms)
    return int(round(duration_ms / bucket)) * bucket


def build_track_key(track: Track, tolerance_ms: int = 2000) -> str:
    """Stable identity key used to collapse duplicates within one catalog."""
    isrc = normalize_isrc(track.isrc)
    if isrc:
        return f"isrc:{isrc}"
    title_n = normalize_string(track.title) or (track.title or "").strip().lower()
    album_n = normalize_string(track.album)
    dur_r = round_duration_ms(track.duration_ms, tolerance_ms=tolerance_ms)
    return f"meta:{title_n}::{album_n}::{dur_r}"
