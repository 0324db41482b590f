"""Candidate vehicle ranking for a rider's pickup/drop pair.

Each candidate is scored from five components normalised to 0..100:

=============  ======  ===============================================
component      weight  normalisation
=============  ======  ===============================================
eta            0.35    100 at 0 min, linearly down to 0 at 30 min
reliability    0.25    as-is
crowd          0.20    100 - crowd %
motion         0.10    3 x speed (capped at 100), 40 when stationary
freshness      0.10    step function of the last update age
=============  ======  ===============================================

Candidates that already passed the pickup stop score ``-inf`` and always sort
after every other candidate.
"""
from __future__ import annotations

import math
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional


WEIGHTS = {
    "eta": 0.35,
    "reliability": 0.25,
    "crowd": 0.20,
    "motion": 0.10,
    "freshness": 0.10,
}

ETA_CAP_MIN = 30.0
DEFAULT_RELIABILITY = 50.0
DEFAULT_CROWD = 50.0
STATIONARY_MOTION_SCORE = 40.0
MOTION_PER_KMH = 3.0
PASSED_SCORE = float("-inf")

ON_TIME_STATUSES = {"ON_TIME", "ON TIME"}


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def freshness_score(age_s: float) -> int:
    if age_s < 5:
        return 100
    if age_s < 15:
        return 80
    if age_s < 30:
        return 50
    return 20


def is_passed(candidate: Mapping[str, Any]) -> bool:
    return bool(candidate.get("has_passed")) or candidate.get("status") == "PASSED"


def score_components(candidate: Mapping[str, Any], now: float) -> Dict[str, float]:
    eta = _num(candidate.get("eta_to_pickup_min"))
    eta = ETA_CAP_MIN if eta is None else max(0.0, min(ETA_CAP_MIN, eta))
    reliability = _num(candidate.get("reliability"))
    crowd = _num(candidate.get("crowd"))
    speed = _num(candidate.get("speed")) or 0.0
    last_updated = _num(candidate.get("last_updated")) or 0.0
    return {
        "eta": 100.0 - (eta / ETA_CAP_MIN) * 100.0,
        "reliability": DEFAULT_RELIABILITY if reliability is None else max(0.0, min(100.0, reliability)),
        "crowd": max(0.0, 100.0 - (DEFAULT_CROWD if crowd is None else crowd)),
        "motion": min(100.0, speed * MOTION_PER_KMH) if speed > 0 else STATIONARY_MOTION_SCORE,
        "freshness": float(freshness_score(max(0.0, now - last_updated))),
    }


def score_candidate(candidate: Mapping[str, Any], now: Optional[float] = None) -> float:
    """Weighted score in 0..100, or ``-inf`` for a vehicle past the pickup."""
    if is_passed(candidate):
        return PASSED_SCORE
    ts = time.time() if now is None else now
    components = score_components(candidate, ts)
    return round(sum(components[k] * w for k, w in WEIGHTS.items()), 2)


def _best_index(items: List[Dict[str, Any]], key: str, *, highest: bool) -> Optional[int]:
    best: Optional[int] = None
    best_val: Optional[float] = None
    for idx, item in enumerate(items):
        if is_passed(item):
            continue
        val = _num(item.get(key))
        if val is None:
            continue
        if best_val is None or (val > best_val if highest else val < best_val):
            best, best_val = idx, val
    return best


def rank(candidates: Iterable[Mapping[str, Any]], now: Optional[float] = None) -> List[Dict[str, Any]]:
    """Order ``candidates`` best-first and attach ``score``, ``rank`` and ``label``.

    The input mappings are not modified. Ties keep input order.
    """
    ts = time.time() if now is None else now
    scored = [dict(c, score=score_candidate(c, ts)) for c in candidates]
    if not scored:
        return []
    # sorted() is stable, so equal scores keep input order
    ordered = sorted(scored, key=lambda c: c["score"], reverse=True)

    labels: Dict[int, str] = {}
    if not is_passed(ordered[0]):
        labels[0] = "BEST CHOICE"
    for key, label, highest in (
        ("eta_to_pickup_min", "FASTEST", False),
        ("crowd", "LESS CROWDED", False),
        ("seats_remaining", "MOST SEATS", True),
    ):
        idx = _best_index(ordered, key, highest=highest)
        if idx is not None and idx not in labels:
            labels[idx] = label

    out: List[Dict[str, Any]] = []
    for idx, item in enumerate(ordered):
        label = labels.get(idx)
        if label is None:
            label = "ON TIME" if item.get("status") in ON_TIME_STATUSES else "AVAILABLE"
        item["rank"] = idx + 1
        item["label"] = label
        if item["score"] == PASSED_SCORE:
            item["score"] = None
        out.append(item)
    return out


__all__ = [
    "WEIGHTS",
    "ETA_CAP_MIN",
    "PASSED_SCORE",
    "freshness_score",
    "is_passed",
    "score_components",
    "score_candidate",
    "rank",
]
