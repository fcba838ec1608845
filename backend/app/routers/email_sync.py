"""
Email sync router.

Pulls transaction notification emails from the user's mailboxes, records
them as expenses (and meals for Food), and reports what happened.

Endpoints:
  POST /sync   — run a sync for the authenticated user (auth: JWT)
  GET  /sync   — sync configuration status and last sync time (auth: JWT)

The handlers are plain `def` functions: the IMAP and database calls are
blocking, so FastAPI runs them in its worker threadpool.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.auth import get_current_user
from app.models.email_sync import SyncSummary
from app.services import email_sync, expense_store, mailbox_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def sync_user(user_id: str) -> SyncSummary:
    """
    Load the watermark, run the sync and persist its bookkeeping.

    Raises email_sync.SyncError when every mailbox failed; the watermark and
    last_sync_at are left untouched in that case.
    """
    mailboxes = mailbox_settings.resolve_mailboxes(user_id)
    if not mailboxes:
        logger.info(f"No email accounts configured for user {user_id}")
        return email_sync.run_sync(user_id, [], set())

    try:
        watermark = expense_store.load_watermark(user_id)
    except Exception as e:
        # Duplicates are still caught by the expenses unique constraint.
        logger.warning(f"Could not load processed emails for user {user_id}, syncing without them: {e}")
        watermark = set()
    logger.info(
        f"Syncing {len(mailboxes)} mailbox(es) for user {user_id} "
        f"({len(watermark)} already-processed emails)"
    )

    summary = email_sync.run_sync(user_id, mailboxes, watermark)

    expense_store.record_processed_emails(user_id, summary.processed)
    expense_store.update_last_sync(user_id)
    return summary


@router.post(
    "/sync",
    responses={
        200: {
            "description": "Sync completed",
            "content": {
                "application/json": {
                    "example": {
                        "newExpenses": 2,
                        "mealsCreated": 1,
                        "duplicates": 0,
                        "failed": 0,
                        "accounts": 1,
                        "failedAccounts": [],
                        "message": "Synced 2 new expenses (0 duplicates skipped, 0 failed)",
                    }
                }
            },
        },
        401: {"description": "Missing or invalid auth token"},
        502: {"description": "Every configured mailbox failed"},
    },
)
def sync_emails(user_id: str = Depends(get_current_user)) -> dict:
    """Run an email sync for the authenticated user."""
    try:
        summary = sync_user(user_id)
    except email_sync.SyncError as e:
        logger.error(f"Email sync failed for user {user_id}: {e}")
        raise HTTPException(
            status_code=502,
            detail=f"Could not read any mailbox: {', '.join(e.failed_accounts)}",
        )
    except Exception as e:
        logger.error(f"Unexpected email sync error for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Email sync failed")

    return summary.to_response()


@router.get("/sync")
def get_sync_status(user_id: str = Depends(get_current_user)) -> dict:
    """Whether email sync is configured for the user, and when it last ran."""
    try:
        status = expense_store.get_sync_status(user_id)
    except Exception as e:
        logger.error(f"Failed to load sync status for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load sync status")

    if not status.configured and mailbox_settings.env_mailboxes_for(user_id):
        status.configured = True
    return status.model_dump(by_alias=True)
