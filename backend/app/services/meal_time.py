"""
Meal-time classification in the business timezone (UTC+7).

Rules, on the local hour in UTC+7:
  06:00 - 10:59  breakfast
  11:00 - 15:59  lunch
  16:00 - 21:59  dinner
  otherwise      snack

Inputs without an offset are treated as UTC, so 2025-01-01T18:00:00 is
01:00 the next day in UTC+7 and classifies as a snack.
"""

from datetime import datetime
from typing import Union

from app.models.transaction import MealTime
from app.services.business_time import to_business_time


def classify_meal_time(value: Union[str, datetime]) -> MealTime:
    hour = to_business_time(value).hour

    if 6 <= hour < 11:
        return MealTime.BREAKFAST
    if 11 <= hour < 16:
        return MealTime.LUNCH
    if 16 <= hour < 22:
        return MealTime.DINNER
    return MealTime.SNACK
