"""
Adaptive Difficulty and Learning Recommendations

Chooses a teaching difficulty from how many concepts a learner has mastered
versus struggled with, weighted by how long they have been interacting.
"""

from dataclasses import dataclass
from typing import List


@dataclass
class DifficultyAssessment:
    """Result of a difficulty calculation."""
    level: str  # "beginner", "intermediate", or "advanced"
    mastery_ratio: float
    reason: str


class DifficultyAdapter:
    """
    Algorithm:
    - mastery_ratio = mastered / (mastered + struggling + 1)
    - ratio > 0.7 with more than 50 interactions → advanced
    - ratio > 0.4 with more than 20 interactions → intermediate
    - otherwise beginner

    The +1 keeps the ratio defined for new users and biases them toward beginner.
    """

    DIFFICULTY_LEVELS = ["beginner", "intermediate", "advanced"]

    # Thresholds
    ADVANCED_RATIO = 0.7
    ADVANCED_MIN_INTERACTIONS = 50
    INTERMEDIATE_RATIO = 0.4
    INTERMEDIATE_MIN_INTERACTIONS = 20

    def calculate_adaptive_difficulty(
        self,
        mastered_count: int,
        struggling_count: int,
        total_interactions: int
    ) -> DifficultyAssessment:
        """
        Calculate difficulty level.

        Args:
            mastered_count: Number of mastered concepts
            struggling_count: Number of struggling topics
            total_interactions: Interactions recorded for the user

        Returns:
            DifficultyAssessment with level, ratio and reason
        """
        ratio = mastered_count / (mastered_count + struggling_count + 1)

        if ratio > self.ADVANCED_RATIO and total_interactions > self.ADVANCED_MIN_INTERACTIONS:
            return DifficultyAssessment(
                level="advanced",
                mastery_ratio=ratio,
                reason=f"High mastery (ratio={ratio:.2f}) over {total_interactions} interactions"
            )

        if ratio > self.INTERMEDIATE_RATIO and total_interactions > self.INTERMEDIATE_MIN_INTERACTIONS:
            return DifficultyAssessment(
                level="intermediate",
                mastery_ratio=ratio,
                reason=f"Moderate mastery (ratio={ratio:.2f}) over {total_interactions} interactions"
            )

        return DifficultyAssessment(
            level="beginner",
            mastery_ratio=ratio,
            reason=f"Building foundations (ratio={ratio:.2f}, interactions={total_interactions})"
        )

    def assess(self, profile) -> DifficultyAssessment:
        """Difficulty for a UserProfile."""
        return self.calculate_adaptive_difficulty(
            len(profile.learning.mastered_concepts),
            len(profile.learning.struggling_topics),
            profile.total_interactions,
        )


def generate_recommendations(profile, session_interactions: int = 0) -> List[str]:
    """
    Suggested next actions for a learner.

    Args:
        profile: UserProfile
        session_interactions: Interactions in the current session

    Returns:
        Any of review_fundamentals, take_break, advanced_concepts
    """
    recommendations = []
    if len(profile.learning.struggling_topics) > 2:
        recommendations.append("review_fundamentals")
    if session_interactions > 10:
        recommendations.append("take_break")
    if len(profile.learning.mastered_concepts) > 5:
        recommendations.append("advanced_concepts")
    return recommendations
