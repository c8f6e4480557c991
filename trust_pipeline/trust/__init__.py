"""
Trust scoring: venue and actor profiles, scorers and their persistence.
"""

from trust_pipeline.trust.actor_scorer import ActorTrustScorer
from trust_pipeline.trust.models import (
    ActorTrustProfile,
    Bonus,
    Indicator,
    ScamFlag,
    ScoreContribution,
    TrustLevel,
    VenueTrustProfile,
    composite_score,
)
from trust_pipeline.trust.venue_scorer import VenueTrustScorer

__all__ = [
    "ActorTrustProfile",
    "ActorTrustScorer",
    "Bonus",
    "Indicator",
    "ScamFlag",
    "ScoreContribution",
    "TrustLevel",
    "VenueTrustProfile",
    "VenueTrustScorer",
    "composite_score",
]
