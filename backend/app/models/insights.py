"""
Pydantic models for spending insights.
"""

from typing import Optional

from pydantic import BaseModel


class PatternInsight(BaseModel):
    """A weekend-vs-weekday spending difference for one category."""

    type: str = "pattern"
    category: str
    title: str
    description: str
    value: str


class TopCategory(BaseModel):
    category: str
    amount: float
    percentage: float


class SpendingInsights(BaseModel):
    """GET /api/insights/spending response."""

    patterns: list[PatternInsight]
    top_category: Optional[TopCategory] = None
