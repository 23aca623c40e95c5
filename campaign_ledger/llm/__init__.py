"""LLM-backed scoring collaborators."""

from .collaborators import (
    CollaboratorUnavailable,
    FraudScorer,
    LLMFraudScorer,
    LLMPlausibilityVerifier,
    PlausibilityVerifier,
    call_with_timeout,
)
from .schemas import FraudAssessment, PlausibilityAssessment

__all__ = [
    "CollaboratorUnavailable",
    "FraudAssessment",
    "FraudScorer",
    "LLMFraudScorer",
    "LLMPlausibilityVerifier",
    "PlausibilityAssessment",
    "PlausibilityVerifier",
    "call_with_timeout",
]
