"""Answer-consistency and response-latency profile for a finished play-through."""

from itertools import combinations
from typing import Optional

from domain import HistoryItem

IMPULSIVE_MS = 1500.0
ANALYTICAL_MS = 8000.0


def response_profile(items: list[HistoryItem]) -> Optional[str]:
    """impulsive / analytical / normal from mean response time in ms; None without timings."""
    times = [i.response_time for i in items if i.response_time is not None and i.response_time >= 0]
    if not times:
        return None
    mean = sum(times) / len(times)
    if mean < IMPULSIVE_MS:
        return "impulsive"
    if mean > ANALYTICAL_MS:
        return "analytical"
    return "normal"


def consistency_score(items: list[HistoryItem], catalog=None) -> float:
    """Share of comparable answer pairs that do not contradict each other.

    Two pairs are comparable when they concern the same attribute (a yes and
    a no contradict) or, with a catalog, two members of one exclusive group
    (two yeses contradict).
    """
    decided = [i for i in items if i.attribute_id is not None and i.answer.as_bool is not None]
    comparisons = 0
    contradictions = 0
    for a, b in combinations(decided, 2):
        if a.attribute_id == b.attribute_id:
            comparisons += 1
            if a.answer.as_bool != b.answer.as_bool:
                contradictions += 1
            continue
        if catalog is None:
            continue
        attr_a = catalog.attribute(a.attribute_id)
        attr_b = catalog.attribute(b.attribute_id)
        if attr_a and attr_b and attr_a.is_exclusive and attr_b.is_exclusive and attr_a.group == attr_b.group:
            comparisons += 1
            if a.answer.as_bool and b.answer.as_bool:
                contradictions += 1
    if comparisons == 0:
        return 1.0
    return round(1.0 - contradictions / comparisons, 4)
