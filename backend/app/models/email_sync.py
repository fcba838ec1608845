"""
Pydantic models for the email sync endpoints.

Models:
  ProcessedEmail  — one watermark entry (processed_emails row) to record
  SyncSummary     — result of a sync run; serialised with camelCase keys
  SyncStatus      — GET /api/email/sync response
"""

from typing import Optional

from pydantic import BaseModel, Field


class ProcessedEmail(BaseModel):
    """
    A message whose ingestion attempt was resolved during a run.

    expense_id is set only when the message produced a persisted expense.
    """

    email_account: str
    email_uid: str
    subject: Optional[str] = None
    expense_id: Optional[str] = None


class SyncSummary(BaseModel):
    """
    Outcome of one sync run.

    The HTTP response uses the aliases (newExpenses, mealsCreated, ...).
    processed is excluded from the response; the router persists it.
    """

    model_config = {"populate_by_name": True}

    new_expenses: int = Field(0, alias="newExpenses")
    meals_created: int = Field(0, alias="mealsCreated")
    duplicates: int = 0
    failed: int = 0
    accounts: int = 0
    failed_accounts: list[str] = Field(default_factory=list, alias="failedAccounts")
    message: str = ""
    processed: list[ProcessedEmail] = Field(default_factory=list, exclude=True)

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True)


class SyncStatus(BaseModel):
    model_config = {"populate_by_name": True}

    configured: bool
    last_sync: Optional[str] = Field(None, alias="lastSync")
