"""
String similarity for duplicate detection.

Blends two measures:
  - normalized Levenshtein similarity (character edits, catches typos)
  - token Jaccard similarity (word overlap, catches reordered names)

Everything here is pure and stateless. No I/O, safe to call from any
number of tasks or worker processes at once.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Generic, Mapping, Optional, Sequence, TypeVar

from rapidfuzz.distance import Levenshtein

T = TypeVar("T")

DEFAULT_THRESHOLD = 0.7
DEFAULT_LEVENSHTEIN_WEIGHT = 0.6

# Similarity assigned when two records share an exact-match key
# (e.g. Google Place ID). Kept below 1.0 so it stays distinguishable
# from a textual exact match.
EXACT_KEY_SIMILARITY = 0.99

UNKNOWN_COMPARISON_STRING = "unknown"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_string(value: Optional[str]) -> str:
    """
    Canonicalize a string for comparison.

    Lowercases, drops anything that is not a-z, 0-9 or whitespace,
    collapses whitespace runs and trims. ``None`` becomes "".
    """
    if not value:
        return ""
    text = _NON_ALNUM_RE.sub("", value.lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def tokenize(value: Optional[str]) -> set[str]:
    """Normalized words of ``value`` as a set."""
    return {token for token in normalize_string(value).split(" ") if token}


# ---------------------------------------------------------------------------
# Measures
# ---------------------------------------------------------------------------

def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance; substitution, insertion and deletion all cost 1."""
    if not a:
        return len(b)
    if not b:
        return len(a)
    return Levenshtein.distance(a, b)


def levenshtein_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Normalized Levenshtein similarity in [0, 1].

    1 = identical after normalization (including both empty),
    0 = one side empty or maximally different.
    """
    norm_a = normalize_string(a)
    norm_b = normalize_string(b)

    if norm_a == norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0

    distance = levenshtein_distance(norm_a, norm_b)
    return 1 - distance / max(len(norm_a), len(norm_b))


def jaccard_similarity(a: set, b: set) -> float:
    """|A ∩ B| / |A ∪ B|. Two empty sets are vacuously identical."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def token_jaccard_similarity(a: Optional[str], b: Optional[str]) -> float:
    return jaccard_similarity(tokenize(a), tokenize(b))


def combined_similarity(
    a: Optional[str],
    b: Optional[str],
    levenshtein_weight: float = DEFAULT_LEVENSHTEIN_WEIGHT,
) -> float:
    """Weighted blend: ``lev * w + jaccard * (1 - w)``."""
    lev_sim = levenshtein_similarity(a, b)
    jac_sim = token_jaccard_similarity(a, b)
    return lev_sim * levenshtein_weight + jac_sim * (1 - levenshtein_weight)


# ---------------------------------------------------------------------------
# Pair scanning
# ---------------------------------------------------------------------------

@dataclass
class DuplicatePair(Generic[T]):
    """Two entities whose comparison strings scored at or above the threshold."""
    entity1: T
    entity2: T
    similarity: float


def _round_half_up(value: float, places: int = 2) -> float:
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def find_duplicate_pairs(
    entities: Sequence[T],
    get_comparison_string: Callable[[T], str],
    threshold: float = DEFAULT_THRESHOLD,
    get_exact_match_key: Optional[Callable[[T], Optional[str]]] = None,
    levenshtein_weight: float = DEFAULT_LEVENSHTEIN_WEIGHT,
) -> list[DuplicatePair[T]]:
    """
    Score every unordered pair and keep those at or above ``threshold``.

    When ``get_exact_match_key`` is given and both entities yield the same
    non-empty key, the pair scores EXACT_KEY_SIMILARITY without any text
    comparison. Scores are rounded to 2 places; the threshold is applied
    to the unrounded score. Result is sorted by similarity, highest first.

    O(n^2) comparisons. Callers cap the batch size and keep it off the
    event loop.
    """
    # Extract once per entity rather than once per pair
    strings = [get_comparison_string(e) for e in entities]
    keys = (
        [get_exact_match_key(e) for e in entities]
        if get_exact_match_key is not None
        else [None] * len(entities)
    )

    pairs: list[DuplicatePair[T]] = []
    for i in range(len(entities)):
        for j in range(i + 1, len(entities)):
            key_i, key_j = keys[i], keys[j]
            if key_i and key_j and key_i == key_j:
                similarity = EXACT_KEY_SIMILARITY
            else:
                similarity = combined_similarity(strings[i], strings[j], levenshtein_weight)

            if similarity >= threshold:
                pairs.append(DuplicatePair(
                    entity1=entities[i],
                    entity2=entities[j],
                    similarity=_round_half_up(similarity),
                ))

    # Stable: ties keep scan order
    pairs.sort(key=lambda pair: pair.similarity, reverse=True)
    return pairs


# ---------------------------------------------------------------------------
# Comparison strings per entity kind
# ---------------------------------------------------------------------------

def _join_present(parts: list[Any]) -> str:
    return " ".join(str(p) for p in parts if p) or UNKNOWN_COMPARISON_STRING


def _year_of(value: Any) -> Optional[int]:
    if isinstance(value, (datetime, date)):
        return value.year
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).year
        except ValueError:
            return None
    return None


def venue_comparison_string(venue: Mapping[str, Any]) -> str:
    """name, city, state."""
    return _join_present([venue.get("name"), venue.get("city"), venue.get("state")])


def event_comparison_string(event: Mapping[str, Any]) -> str:
    """name, venue name, start year (keeps recurring annual events apart)."""
    venue = event.get("venue") or {}
    return _join_present([
        event.get("name"),
        venue.get("name"),
        _year_of(event.get("startDate")),
    ])


def vendor_comparison_string(vendor: Mapping[str, Any]) -> str:
    return _join_present([vendor.get("businessName"), vendor.get("vendorType")])


def promoter_comparison_string(promoter: Mapping[str, Any]) -> str:
    return _join_present([promoter.get("companyName")])
