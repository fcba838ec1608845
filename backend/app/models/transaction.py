"""
Pydantic models for email-derived transactions and the meals derived from them.

Models:
  Category            — closed spending-category vocabulary
  ParsedTransaction   — structured record produced by the extractor
  MealTime            — breakfast / lunch / dinner / snack
  NutritionEstimate   — output of the nutrition estimator
  DerivedMeal         — meals row auto-created from a Food transaction
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Category(str, Enum):
    FOOD = "Food"
    TRANSPORT = "Transport"
    SHOPPING = "Shopping"
    ENTERTAINMENT = "Entertainment"
    BILLS = "Bills"
    HEALTH = "Health"
    OTHER = "Other"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "Category":
        """Return the matching category, or OTHER for anything unrecognised."""
        if isinstance(value, cls):
            return value
        for category in cls:
            if category.value == value:
                return category
        return cls.OTHER


class ParsedTransaction(BaseModel):
    """
    A completed transaction extracted from a single notification email.

    amount is always the final total paid, never a subtotal or line item.
    Instances are frozen: a transaction is created once and never mutated.
    """

    model_config = {"frozen": True}

    transaction_type: str
    amount: float = Field(gt=0)
    currency: str = "VND"
    transaction_date: str
    merchant: str
    category: Category = Category.OTHER
    source: str = "email"
    email_subject: str = ""
    email_uid: Optional[str] = None
    email_account: Optional[str] = None

    def to_expense_row(self, user_id: str) -> dict:
        """Build the `expenses` insert payload for this transaction."""
        return {
            "user_id": user_id,
            "transaction_type": self.transaction_type,
            "amount": self.amount,
            "currency": self.currency,
            "transaction_date": self.transaction_date,
            "merchant": self.merchant,
            "source": self.source,
            "email_subject": self.email_subject,
            "category": self.category.value,
        }


class MealTime(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"


class NutritionEstimate(BaseModel):
    """Calorie and macro estimate for one food description."""

    calories: float = Field(ge=0)
    protein: float = Field(ge=0)
    carbs: float = Field(ge=0)
    fat: float = Field(ge=0)
    confidence: str = "medium"  # low | medium | high
    source: str = "llm"  # saved | llm | fallback
    reasoning: str = ""


class DerivedMeal(BaseModel):
    """
    meals row created automatically for a Food transaction.

    At most one DerivedMeal exists per transaction. Creation is best-effort
    and never affects whether the owning expense was persisted.
    """

    user_id: str
    name: str
    calories: float = Field(ge=0)
    protein: float = Field(ge=0)
    carbs: float = Field(ge=0)
    fat: float = Field(ge=0)
    confidence: str
    source: str = "email"
    meal_time: MealTime
    meal_date: str
    expense_id: Optional[str] = None
    llm_reasoning: Optional[str] = None
    notes: Optional[str] = None
