"""
Pydantic schemas for collaborator responses.

Models are asked for JSON; these schemas validate what comes back before any
score reaches a reject/accept decision.
"""

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FraudAssessment(BaseModel):
    """Fraud-scoring collaborator output.

    riskScore is on 0-1. Models sometimes answer on 0-100; values above 1 are
    read as percentages.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    risk_score: float = Field(..., alias="riskScore", ge=0.0, le=1.0)
    is_suspicious: bool = Field(False, alias="isSuspicious")
    reasons: list[str] = Field(default_factory=list)

    @field_validator("risk_score", mode="before")
    @classmethod
    def _normalize_percentage(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and 1.0 < value <= 100.0:
            return value / 100.0
        return value


class PlausibilityAssessment(BaseModel):
    """Plausibility collaborator output: does the reason belong to the category?"""

    model_config = ConfigDict(extra="ignore")

    score: float = Field(..., ge=0.0, le=1.0)
    explanation: str = ""


def strip_markdown_json(text: str) -> str:
    """Strip markdown code fences from an LLM response."""
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if match:
        return match.group(1).strip()
    return text.strip()


def parse_json_response(text: str) -> dict:
    """Parse a JSON object out of raw model text.

    Raises:
        ValueError: the text is not a JSON object
    """
    data = json.loads(strip_markdown_json(text))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
