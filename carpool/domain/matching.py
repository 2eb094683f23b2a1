"""
Carpool Candidate Scoring
=========================

1. **Time window**    -- |host start - candidate start| in minutes must
   not exceed the configured window.
2. **Route similarity** -- 0-100.  Path similarity comes from the route
   estimator; when it cannot answer, ``string_route_similarity`` scores
   the origin/destination text:

   ============================================  =====
   both ends equal                                100
   both ends contain / are contained in the other  85
   same destination only                           70
   same origin only                                60
   otherwise: share of host words found            0-100
   ============================================  =====

3. **Capacity**       -- host + candidate passengers must fit the seat cap.

Survivors are ordered by similarity (desc) then time difference (asc).

Complexity
----------
Scoring is O(w) per candidate for w words; ranking is O(n log n).
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable

from .entities import CarpoolCandidate

EXACT_MATCH_SCORE = 100.0
CONTAINMENT_SCORE = 85.0
SAME_DESTINATION_SCORE = 70.0
SAME_ORIGIN_SCORE = 60.0

_WHITESPACE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


def _overlaps(a: str, b: str) -> bool:
    return bool(a and b) and (a in b or b in a)


def string_route_similarity(
    host_from: str, host_to: str, candidate_from: str, candidate_to: str
) -> float:
    """Deterministic text-based route similarity.  O(w)."""
    hf, ht = _normalize(host_from), _normalize(host_to)
    cf, ct = _normalize(candidate_from), _normalize(candidate_to)

    if hf == cf and ht == ct:
        return EXACT_MATCH_SCORE
    if _overlaps(hf, cf) and _overlaps(ht, ct):
        return CONTAINMENT_SCORE
    if ht == ct:
        return SAME_DESTINATION_SCORE
    if hf == cf:
        return SAME_ORIGIN_SCORE

    host_words = hf.split() + ht.split()
    if not host_words:
        return 0.0
    candidate_words = set(cf.split()) | set(ct.split())
    matches = sum(1 for word in host_words if word in candidate_words)

    return min(100.0, max(0.0, matches / len(host_words) * 100))


def time_difference_minutes(host_start: datetime, candidate_start: datetime) -> float:
    return abs((candidate_start - host_start).total_seconds()) / 60


def is_eligible(
    candidate: CarpoolCandidate,
    time_window_minutes: float,
    similarity_threshold: float,
) -> bool:
    return (
        candidate.time_difference <= time_window_minutes
        and candidate.route_similarity >= similarity_threshold
        and candidate.can_fit
    )


def rank_candidates(
    candidates: Iterable[CarpoolCandidate],
    time_window_minutes: float,
    similarity_threshold: float,
) -> list[CarpoolCandidate]:
    """Drop ineligible candidates and order the rest.  O(n log n)."""
    eligible = [
        c
        for c in candidates
        if is_eligible(c, time_window_minutes, similarity_threshold)
    ]
    eligible.sort(key=lambda c: (-c.route_similarity, c.time_difference))
    return eligible
