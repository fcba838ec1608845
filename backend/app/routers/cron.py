"""
Scheduled jobs router.

Endpoints:
  POST /email-sync   — sync every user with email sync enabled
                       (auth: X-Cron-Secret header or Bearer CRON_SECRET)

Environment variables
---------------------
CRON_SECRET   Shared secret the scheduler sends. When unset every request
              is rejected.
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from app.routers.email_sync import sync_user
from app.services import email_sync, mailbox_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Verify the scheduler's shared secret.

    Accepts the secret in either:
      X-Cron-Secret            — explicit header
      Authorization: Bearer …  — what hosted cron services send

    Raises 401 if the secret is missing, unconfigured, or does not match.
    """
    expected = os.getenv("CRON_SECRET") or ""
    if not expected:
        logger.warning("CRON_SECRET not configured; all cron requests will be rejected")
        raise HTTPException(status_code=401, detail="Cron secret not configured")

    provided = x_cron_secret
    if not provided and authorization:
        parts = authorization.split(" ")
        if len(parts) == 2 and parts[0] == "Bearer":
            provided = parts[1]

    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid cron secret")


@router.post("/email-sync")
def run_scheduled_email_sync(_: None = Depends(_verify_cron_secret)) -> dict:
    """
    Sync every enabled user in turn.

    One user's failure is logged and reported without stopping the others.
    """
    try:
        user_ids = mailbox_settings.list_sync_users()
    except Exception as e:
        logger.error(f"Failed to list users for scheduled email sync: {e}")
        raise HTTPException(status_code=500, detail="Failed to list users")

    results = []
    totals = {"newExpenses": 0, "mealsCreated": 0, "duplicates": 0, "failed": 0}

    for user_id in user_ids:
        try:
            summary = sync_user(user_id)
        except email_sync.SyncError as e:
            logger.error(f"Scheduled sync failed for user {user_id}: {e}")
            results.append({"userId": user_id, "ok": False, "error": str(e)})
            continue
        except Exception as e:
            logger.error(f"Unexpected scheduled sync error for user {user_id}: {e}")
            results.append({"userId": user_id, "ok": False, "error": "sync_error"})
            continue

        response = summary.to_response()
        for key in totals:
            totals[key] += response[key]
        results.append({"userId": user_id, "ok": True, **response})

    logger.info(
        f"Scheduled email sync finished for {len(user_ids)} user(s): "
        f"{totals['newExpenses']} new expenses"
    )
    return {"users": len(user_ids), **totals, "results": results}
