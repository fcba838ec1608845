"""
Email sync orchestrator.

run_sync() drives one ingestion run for one user:

  1. Read every configured mailbox concurrently (MailboxReader.fetch) with
     the caller-supplied watermark. A mailbox that fails is logged and
     skipped; if all of them fail the run raises SyncError.
  2. Insert each parsed transaction into expenses. Unique-constraint
     conflicts are counted as duplicates, other errors as failed.
  3. For inserted Food expenses, estimate nutrition (single call for one
     item, one batch call for several) and insert the derived meals.
     Meal creation is best-effort and never changes new_expenses.

The returned SyncSummary lists every resolved message in `processed` so the
caller can persist the watermark after the run.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from app.models.email_sync import ProcessedEmail, SyncSummary
from app.models.mailbox import MailboxConfig, MailboxFetchResult
from app.models.transaction import (
    Category,
    DerivedMeal,
    NutritionEstimate,
    ParsedTransaction,
)
from app.services import expense_store, nutrition_estimator
from app.services.mailbox_reader import MailboxReader
from app.services.meal_time import classify_meal_time
from app.services.spending_insights import format_currency

logger = logging.getLogger(__name__)

MEAL_ESTIMATE_HINT = "Food orders from delivery/restaurant transactions"
MAX_MAILBOX_WORKERS = 4


class SyncError(Exception):
    """Every configured mailbox failed; nothing could be synced."""

    def __init__(self, message: str, failed_accounts: Optional[list[str]] = None):
        super().__init__(message)
        self.failed_accounts = failed_accounts or []


def _fetch_mailbox(
    config: MailboxConfig,
    watermark: set[str],
) -> tuple[Optional[MailboxFetchResult], Optional[Exception]]:
    try:
        return MailboxReader(config).fetch(watermark), None
    except Exception as e:
        logger.error(f"Mailbox {config.account} failed: {e}")
        return None, e


def _fetch_all(
    mailboxes: list[MailboxConfig],
    watermark: set[str],
) -> tuple[list[MailboxFetchResult], list[str]]:
    """Fetch all mailboxes concurrently; returns (results, failed_accounts)."""
    workers = min(MAX_MAILBOX_WORKERS, len(mailboxes))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        outcomes = list(executor.map(lambda m: _fetch_mailbox(m, watermark), mailboxes))

    results = []
    failed_accounts = []
    for config, (result, error) in zip(mailboxes, outcomes):
        if error is not None:
            failed_accounts.append(config.account)
        else:
            results.append(result)
    return results, failed_accounts


def _build_meal(
    user_id: str,
    transaction: ParsedTransaction,
    expense_id: Optional[str],
    estimate: NutritionEstimate,
) -> DerivedMeal:
    return DerivedMeal(
        user_id=user_id,
        name=transaction.merchant,
        calories=estimate.calories,
        protein=estimate.protein,
        carbs=estimate.carbs,
        fat=estimate.fat,
        confidence=estimate.confidence,
        meal_time=classify_meal_time(transaction.transaction_date),
        meal_date=transaction.transaction_date,
        expense_id=expense_id,
        llm_reasoning=estimate.reasoning or None,
        notes=(
            f"Auto-tracked from {transaction.merchant} "
            f"({format_currency(transaction.amount, transaction.currency)} {transaction.currency})"
        ),
    )


def create_meals(
    user_id: str,
    food_expenses: list[tuple[ParsedTransaction, Optional[str]]],
) -> int:
    """
    Estimate and insert meals for inserted Food expenses.

    Returns the number of meals created; any failure yields 0.
    """
    if not food_expenses:
        return 0

    merchants = [tx.merchant for tx, _ in food_expenses]
    try:
        if len(merchants) == 1:
            estimates = [nutrition_estimator.estimate(merchants[0], MEAL_ESTIMATE_HINT)]
        else:
            logger.info(f"Batch estimating {len(merchants)} Food expenses")
            estimates = nutrition_estimator.estimate_batch(merchants, MEAL_ESTIMATE_HINT)

        if len(estimates) != len(food_expenses):
            raise ValueError(
                f"Expected {len(food_expenses)} estimates, got {len(estimates)}"
            )

        meals = [
            _build_meal(user_id, tx, expense_id, est)
            for (tx, expense_id), est in zip(food_expenses, estimates)
        ]
        created = expense_store.insert_meals(meals)
    except Exception as e:
        logger.error(f"Meal creation failed for user {user_id}: {e}")
        return 0

    logger.info(f"Created {created} meal entries")
    return created


def run_sync(
    user_id: str,
    mailboxes: list[MailboxConfig],
    watermark: set[str],
) -> SyncSummary:
    """
    Run one sync for user_id over the given mailboxes.

    Raises SyncError only when mailboxes were configured and every one of
    them failed.
    """
    if not mailboxes:
        return SyncSummary(message="No email accounts configured")

    results, failed_accounts = _fetch_all(mailboxes, watermark)
    if not results:
        raise SyncError(
            f"All {len(mailboxes)} mailbox(es) failed",
            failed_accounts=failed_accounts,
        )

    summary = SyncSummary(accounts=len(mailboxes), failed_accounts=failed_accounts)
    food_expenses: list[tuple[ParsedTransaction, Optional[str]]] = []

    for result in results:
        for message in result.resolved:
            entry = ProcessedEmail(
                email_account=result.account,
                email_uid=message.uid,
                subject=message.subject or None,
            )
            tx = message.transaction
            if tx is None:
                summary.processed.append(entry)
                continue

            try:
                row = expense_store.insert_expense(user_id, tx)
            except expense_store.DuplicateExpenseError:
                logger.info(f"Duplicate expense for UID {message.uid} in {result.account}")
                summary.duplicates += 1
                summary.processed.append(entry)
                continue
            except Exception as e:
                # Not recorded: a transient store failure should be retried next run.
                logger.error(f"Failed to insert expense for UID {message.uid}: {e}")
                summary.failed += 1
                continue

            summary.new_expenses += 1
            expense_id = row.get("id")
            entry.expense_id = str(expense_id) if expense_id is not None else None
            summary.processed.append(entry)

            if tx.category == Category.FOOD:
                food_expenses.append((tx, entry.expense_id))

    summary.meals_created = create_meals(user_id, food_expenses)

    if summary.new_expenses == 0 and summary.duplicates == 0 and summary.failed == 0:
        summary.message = "No new expenses found"
    else:
        summary.message = (
            f"Synced {summary.new_expenses} new expenses "
            f"({summary.duplicates} duplicates skipped, {summary.failed} failed)"
        )

    logger.info(
        f"Sync for user {user_id}: {summary.new_expenses} new, "
        f"{summary.duplicates} duplicates, {summary.failed} failed, "
        f"{summary.meals_created} meals, {len(failed_accounts)} mailbox failures"
    )
    return summary
