"""
Unit Tests for Adaptive Difficulty

Tests the mastery-ratio difficulty levels and learning recommendations.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "tutor_personalization", "src"))

from tutor_personalization.difficulty import DifficultyAdapter, generate_recommendations
from tutor_personalization.user_profile import default_profile


class TestDifficultyAdapter:
    """Test suite for DifficultyAdapter."""

    @pytest.fixture
    def adapter(self):
        """Create adapter instance."""
        return DifficultyAdapter()

    def test_new_user_is_beginner(self, adapter):
        """No history: ratio 0 over 0 interactions."""
        assessment = adapter.calculate_adaptive_difficulty(0, 0, 0)

        assert assessment.level == "beginner"
        assert assessment.mastery_ratio == 0.0

    def test_advanced_requires_ratio_and_interactions(self, adapter):
        """High mastery with plenty of interactions is advanced."""
        assessment = adapter.calculate_adaptive_difficulty(9, 0, 51)

        assert assessment.level == "advanced"
        assert assessment.mastery_ratio == pytest.approx(0.9)
        assert "High mastery" in assessment.reason

    def test_high_ratio_few_interactions_is_intermediate(self, adapter):
        """Ratio alone does not unlock advanced."""
        assessment = adapter.calculate_adaptive_difficulty(9, 0, 30)
        assert assessment.level == "intermediate"

    def test_interaction_thresholds_are_strict(self, adapter):
        """Exactly 50 or 20 interactions does not qualify."""
        assert adapter.calculate_adaptive_difficulty(9, 0, 50).level == "intermediate"
        assert adapter.calculate_adaptive_difficulty(9, 0, 20).level == "beginner"

    def test_plus_one_biases_toward_beginner(self, adapter):
        """One mastered concept alone gives ratio 0.5, not 1.0."""
        assessment = adapter.calculate_adaptive_difficulty(1, 0, 100)

        assert assessment.mastery_ratio == pytest.approx(0.5)
        assert assessment.level == "intermediate"

    def test_struggles_lower_the_level(self, adapter):
        """Many struggling topics keep the learner at beginner."""
        assessment = adapter.calculate_adaptive_difficulty(2, 5, 100)
        assert assessment.level == "beginner"

    def test_assess_reads_profile(self, adapter):
        """assess() counts the profile's mastered and struggling lists."""
        profile = default_profile("u1", now_ms=0)
        profile.learning.mastered_concepts = ["a", "b", "c", "d"]
        profile.learning.struggling_topics = []
        profile.total_interactions = 25

        assessment = adapter.assess(profile)

        assert assessment.level == "intermediate"
        assert assessment.mastery_ratio == pytest.approx(0.8)


class TestRecommendations:
    """Test suite for generate_recommendations."""

    def test_no_recommendations_for_new_user(self):
        assert generate_recommendations(default_profile("u1", now_ms=0)) == []

    def test_all_recommendations(self):
        """Struggles, a long session and many mastered concepts each add one."""
        profile = default_profile("u1", now_ms=0)
        profile.learning.struggling_topics = ["a", "b", "c"]
        profile.learning.mastered_concepts = ["m1", "m2", "m3", "m4", "m5", "m6"]

        recs = generate_recommendations(profile, session_interactions=11)

        assert recs == ["review_fundamentals", "take_break", "advanced_concepts"]

    def test_thresholds_are_strict(self):
        profile = default_profile("u1", now_ms=0)
        profile.learning.struggling_topics = ["a", "b"]
        profile.learning.mastered_concepts = ["m1", "m2", "m3", "m4", "m5"]

        assert generate_recommendations(profile, session_interactions=10) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
