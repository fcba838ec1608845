"""
Spending insights API endpoints.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.auth import get_current_user
from app.models.insights import SpendingInsights
from app.services import expense_store
from app.services.spending_insights import (
    detect_weekend_weekday_patterns,
    find_top_spending_category,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/spending", response_model=SpendingInsights)
def get_spending_insights(user_id: str = Depends(get_current_user)) -> SpendingInsights:
    """Weekend/weekday patterns and the top category over the last 30 days."""
    try:
        expenses = expense_store.fetch_recent_expenses(user_id)
    except Exception as e:
        logger.error(f"Failed to load expenses for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load expenses")

    return SpendingInsights(
        patterns=detect_weekend_weekday_patterns(expenses),
        top_category=find_top_spending_category(expenses),
    )
