"""
Read-only spending analytics over the expenses table.

  detect_weekend_weekday_patterns  categories whose average weekend expense
                                   differs from the weekday one by > 30%
  find_top_spending_category       biggest category by total amount

Both look at the last 30 days only. Day-of-week is taken in the business
timezone (UTC+7), so a 23:30 UTC Friday expense counts as Saturday.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.models.insights import PatternInsight, TopCategory
from app.services.business_time import to_business_time

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30
PATTERN_THRESHOLD_PCT = 30

# (thousands separator, decimal separator, decimals)
_CURRENCY_FORMATS = {
    "VND": (".", ",", 0),
    "USD": (",", ".", 2),
    "EUR": (".", ",", 2),
    "GBP": (",", ".", 2),
    "JPY": (",", ".", 0),
}

CurrencyFormatter = Callable[[float, str], str]


def format_currency(amount: float, currency: str = "VND") -> str:
    """Locale-style number formatting, e.g. 150000 VND -> "150.000"."""
    thousands, decimal, decimals = _CURRENCY_FORMATS.get(currency, _CURRENCY_FORMATS["VND"])
    text = f"{amount:,.{decimals}f}"
    return text.replace(",", "\0").replace(".", decimal).replace("\0", thousands)


def _recent(expenses: list[dict], now: Optional[datetime]) -> list[tuple[dict, datetime]]:
    """Expenses from the last 30 days paired with their UTC+7 timestamp."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=WINDOW_DAYS)

    recent = []
    for expense in expenses:
        try:
            moment = to_business_time(expense["transaction_date"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping expense with bad transaction_date: {expense.get('id')}")
            continue
        if moment >= cutoff:
            recent.append((expense, moment))
    return recent


def detect_weekend_weekday_patterns(
    expenses: list[dict],
    format_currency: CurrencyFormatter = format_currency,
    now: Optional[datetime] = None,
) -> list[PatternInsight]:
    """
    Compare the mean weekend expense with the mean weekday expense per
    category. Categories without both kinds of day are not compared.
    """
    totals = {"weekend": defaultdict(float), "weekday": defaultdict(float)}
    counts = {"weekend": defaultdict(int), "weekday": defaultdict(int)}
    categories: list[str] = []

    for expense, moment in _recent(expenses, now):
        category = expense.get("category") or "Other"
        kind = "weekend" if moment.weekday() >= 5 else "weekday"
        totals[kind][category] += float(expense.get("amount") or 0)
        counts[kind][category] += 1
        if category not in categories:
            categories.append(category)

    insights = []
    for category in categories:
        if not counts["weekend"][category] or not counts["weekday"][category]:
            continue

        weekend_avg = totals["weekend"][category] / counts["weekend"][category]
        weekday_avg = totals["weekday"][category] / counts["weekday"][category]
        if weekday_avg == 0:
            continue
        diff = (weekend_avg - weekday_avg) / weekday_avg * 100

        if diff > PATTERN_THRESHOLD_PCT:
            insights.append(PatternInsight(
                category=category,
                title=f"You spend more on {category} on weekends",
                description=f"{diff:.0f}% higher average per day",
                value=format_currency(weekend_avg, "VND") + " avg",
            ))
        elif diff < -PATTERN_THRESHOLD_PCT:
            insights.append(PatternInsight(
                category=category,
                title=f"You spend more on {category} on weekdays",
                description=f"{abs(diff):.0f}% higher average per day",
                value=format_currency(weekday_avg, "VND") + " avg",
            ))

    return insights


def find_top_spending_category(
    expenses: list[dict],
    now: Optional[datetime] = None,
) -> Optional[TopCategory]:
    """
    Category with the highest total over the last 30 days, or None.

    Ties go to the category encountered first.
    """
    category_totals: dict[str, float] = {}
    for expense, _ in _recent(expenses, now):
        category = expense.get("category") or "Other"
        category_totals[category] = category_totals.get(category, 0.0) + float(
            expense.get("amount") or 0
        )

    if not category_totals:
        return None

    # sorted() is stable, so equal totals keep insertion order
    category, amount = sorted(category_totals.items(), key=lambda kv: kv[1], reverse=True)[0]
    total = sum(category_totals.values())
    percentage = amount / total * 100 if total else 0.0

    return TopCategory(category=category, amount=amount, percentage=percentage)
