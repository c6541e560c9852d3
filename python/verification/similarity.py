"""
Name similarity used by the watchlist providers.

similarity = round((max_len - levenshtein) / max_len * 100), rounded half up.
"""

import math

from rapidfuzz.distance import Levenshtein

from database.models import MatchType

EXACT_MATCH_THRESHOLD = 90


def name_similarity(name1: str, name2: str) -> int:
    """Edit-distance similarity between two names on a 0-100 scale.

    Two empty strings are identical (100).
    """
    longer = max(len(name1), len(name2))
    if longer == 0:
        return 100

    distance = Levenshtein.distance(name1, name2)
    # round() in Python is banker's rounding; scores must round half up
    return int(math.floor((longer - distance) / longer * 100 + 0.5))


def match_type_for(confidence: float) -> MatchType:
    """exact above the threshold, fuzzy otherwise"""
    return MatchType.EXACT if confidence > EXACT_MATCH_THRESHOLD else MatchType.FUZZY
