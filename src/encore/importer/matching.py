"""Name normalization, studio/live filtering and catalog de-duplication."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable
from difflib import SequenceMatcher

from encore.providers.models import ArtistCandidate, CatalogTrack

_FUZZY_THRESHOLD = 0.85

_LIVE_ALBUM_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\blive\s+(at|from|in|on)\b",
        r"^live\s*([\(\[]|$)",
        r"[\(\[]\s*live\b",
        r"\s-\s*live\b",
        r"\bunplugged\b",
        r"\bconcert\s+(at|in|from)\b",
        r"\bacoustic\s+(live\s+)?sessions?\b",
    )
]

_LIVE_TITLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"[\(\[]\s*live\b",
        r"\s-\s*live\b",
        r"\blive\s+(at|from|in|on|version|recording)\b",
        r"\bunplugged\b",
        r"\bacoustic\s+(version|session)s?\b",
        r"\bconcert\s+(version|recording)\b",
    )
]


def normalize(text: str) -> str:
    """Normalize a song title or artist name for matching.

    Steps:
    1. Unicode NFKD normalization, accents dropped
    2. Lowercase
    3. Remove feat./ft./featuring clauses (both in parens and inline)
    4. Remove content in parentheses/brackets
    5. Strip punctuation except spaces
    6. Collapse whitespace
    """
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower()
    text = re.sub(r"\s*[\(\[](feat\.?|ft\.?|featuring)\s+[^\)\]]*[\)\]]", "", text)
    text = re.sub(r"\s+(feat\.?|ft\.?|featuring)\s+.*$", "", text)
    text = re.sub(r"\s*[\(\[][^\)\]]*[\)\]]", "", text)
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def title_key(title: str) -> str:
    """Key under which two titles count as the same song."""
    key = normalize(re.sub(r"\s+-\s+.*$", "", title))
    return key or normalize(title) or title.strip().lower()


def _artist_key(name: str) -> str:
    key = normalize(name).replace("&", "and")
    return key[4:] if key.startswith("the ") else key


def is_name_match(a: str, b: str) -> bool:
    """Return True when two artist names plausibly refer to the same act."""
    ka, kb = _artist_key(a), _artist_key(b)
    if not ka or not kb:
        return False
    if ka == kb:
        return True
    return SequenceMatcher(None, ka, kb).ratio() >= _FUZZY_THRESHOLD


def best_candidate(name: str, candidates: list[ArtistCandidate]) -> ArtistCandidate:
    """Pick the first name-matching candidate, else the provider's top result."""
    for candidate in candidates:
        if is_name_match(name, candidate.name):
            return candidate
    return candidates[0]


def is_likely_live_album(name: str) -> bool:
    return any(p.search(name) for p in _LIVE_ALBUM_PATTERNS)


def is_likely_live_title(title: str) -> bool:
    return any(p.search(title) for p in _LIVE_TITLE_PATTERNS)


def _rank(track: CatalogTrack) -> tuple[int, int]:
    return (1 if track.isrc else 0, track.popularity or 0)


def dedupe_tracks(tracks: Iterable[CatalogTrack]) -> list[CatalogTrack]:
    """Collapse duplicates by ISRC, then by title key.

    When two tracks collide the one with an ISRC wins, then the more
    popular one.
    """
    by_isrc: dict[str, CatalogTrack] = {}
    rest: list[CatalogTrack] = []
    for track in tracks:
        if track.isrc:
            kept = by_isrc.get(track.isrc)
            if kept is None or _rank(track) > _rank(kept):
                by_isrc[track.isrc] = track
        else:
            rest.append(track)

    by_title: dict[str, CatalogTrack] = {}
    for track in [*by_isrc.values(), *rest]:
        key = title_key(track.name)
        kept = by_title.get(key)
        if kept is None or _rank(track) > _rank(kept):
            by_title[key] = track
    return list(by_title.values())
