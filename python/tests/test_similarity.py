"""
Tests for name similarity and match type classification.
"""

import pytest

from database.models import MatchType
from verification.similarity import match_type_for, name_similarity


class TestNameSimilarity:
    """Levenshtein similarity on a 0-100 scale."""

    def test_identical_names(self):
        assert name_similarity("john smith", "john smith") == 100

    def test_empty_names_are_identical(self):
        assert name_similarity("", "") == 100

    def test_one_empty_name(self):
        assert name_similarity("", "abc") == 0

    def test_single_edit(self):
        """One deletion in ten characters."""
        assert name_similarity("jon smith", "john smith") == 90

    def test_symmetric(self):
        assert name_similarity("angela merkel", "angel merkle") == name_similarity("angel merkle", "angela merkel")
        assert name_similarity("kim jong", "kim jong un") == name_similarity("kim jong un", "kim jong")

    def test_rounds_half_up(self):
        """1 edit in 8 characters is 87.5%, reported as 88."""
        assert name_similarity("abcdefgh", "abcdefgx") == 88

    @pytest.mark.parametrize("first,second", [
        ("john smith", "alice walker"),
        ("vladimir putin", "xi jinping"),
    ])
    def test_unrelated_names_score_low(self, first, second):
        assert name_similarity(first, second) < 50


class TestMatchType:
    """exact is reserved for confidences above 90."""

    def test_above_threshold_is_exact(self):
        assert match_type_for(91) == MatchType.EXACT
        assert match_type_for(100) == MatchType.EXACT

    def test_threshold_itself_is_fuzzy(self):
        assert match_type_for(90) == MatchType.FUZZY

    def test_low_confidence_is_fuzzy(self):
        assert match_type_for(40) == MatchType.FUZZY
