"""
Supabase persistence for email sync: expenses, meals, processed-email
watermark and per-user sync status.

All queries go through the service-role client (supabase_admin) and are
always scoped by user_id explicitly.

Tables:
  expenses             — one row per ingested transaction
  meals                — meals derived from Food expenses
  processed_emails     — (user_id, email_account, email_uid) watermark
  user_email_settings  — per-user mailbox credentials and last_sync_at
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.db import supabase_admin
from app.models.email_sync import ProcessedEmail, SyncStatus
from app.models.mailbox import watermark_key
from app.models.transaction import DerivedMeal, ParsedTransaction

logger = logging.getLogger(__name__)

# PostgreSQL unique_violation
DUPLICATE_KEY_CODE = "23505"


class DuplicateExpenseError(Exception):
    """The expense row already exists (unique constraint violation)."""


def is_duplicate_error(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    if code == DUPLICATE_KEY_CODE:
        return True
    return DUPLICATE_KEY_CODE in str(exc) and "duplicate key" in str(exc).lower()


def load_watermark(user_id: str) -> set[str]:
    """Return the set of "account:uid" keys already processed for this user."""
    result = (
        supabase_admin.table("processed_emails")
        .select("email_account, email_uid")
        .eq("user_id", user_id)
        .execute()
    )
    return {
        watermark_key(row["email_account"], str(row["email_uid"]))
        for row in (result.data or [])
    }


def insert_expense(user_id: str, transaction: ParsedTransaction) -> dict:
    """
    Insert one expense and return the created row.

    Raises DuplicateExpenseError on a unique-constraint conflict; any other
    database error propagates unchanged.
    """
    try:
        result = (
            supabase_admin.table("expenses")
            .insert(transaction.to_expense_row(user_id))
            .execute()
        )
    except Exception as e:
        if is_duplicate_error(e):
            raise DuplicateExpenseError(str(e)) from e
        raise

    if not result.data:
        raise RuntimeError("Expense insert returned no data")
    return result.data[0]


def insert_meals(meals: list[DerivedMeal]) -> int:
    """
    Insert derived meals and return how many rows were created.

    A single meal is sent as one object, several as one batched list.
    """
    if not meals:
        return 0

    rows = [meal.model_dump(mode="json", exclude_none=True) for meal in meals]
    payload = rows[0] if len(rows) == 1 else rows
    result = supabase_admin.table("meals").insert(payload).execute()
    return len(result.data or [])


def record_processed_emails(user_id: str, processed: list[ProcessedEmail]) -> int:
    """
    Persist watermark entries. Best-effort: failures are logged, not raised.

    Returns the number of rows recorded.
    """
    if not processed:
        return 0

    rows = [
        {"user_id": user_id, **entry.model_dump(exclude_none=True)}
        for entry in processed
    ]
    try:
        supabase_admin.table("processed_emails").upsert(
            rows,
            on_conflict="user_id,email_account,email_uid",
            ignore_duplicates=True,
        ).execute()
    except Exception as e:
        logger.error(f"Failed to record {len(rows)} processed emails for user {user_id}: {e}")
        return 0
    return len(rows)


def update_last_sync(user_id: str, when: Optional[datetime] = None) -> None:
    when = when or datetime.now(timezone.utc)
    try:
        supabase_admin.table("user_email_settings").update(
            {"last_sync_at": when.isoformat()}
        ).eq("user_id", user_id).execute()
    except Exception as e:
        logger.warning(f"Failed to update last_sync_at for user {user_id}: {e}")


def get_sync_status(user_id: str) -> SyncStatus:
    result = (
        supabase_admin.table("user_email_settings")
        .select("is_enabled, last_sync_at")
        .eq("user_id", user_id)
        .execute()
    )
    if not result.data:
        return SyncStatus(configured=False, last_sync=None)

    row = result.data[0]
    return SyncStatus(
        configured=bool(row.get("is_enabled")),
        last_sync=row.get("last_sync_at"),
    )


def fetch_recent_expenses(user_id: str, days: int = 30) -> list[dict]:
    """Expenses with transaction_date within the last `days` days."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    result = (
        supabase_admin.table("expenses")
        .select("amount, currency, category, transaction_date")
        .eq("user_id", user_id)
        .gte("transaction_date", since.isoformat())
        .execute()
    )
    return result.data or []
