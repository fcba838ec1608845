"""
Resolve which mailboxes a sync run should read.

Per-user mailboxes come from the user_email_settings table. When a user has
no enabled row, the EMAIL_* environment variables supply up to two shared
mailboxes, but only for the user named by EMAIL_OWNER_USER_ID. Every other
user gets only their own rows:

  EMAIL_OWNER_USER_ID  user the environment mailboxes belong to (unset: nobody)
  EMAIL_USER / EMAIL_PASSWORD          primary account (both required)
  EMAIL_HOST      default imap.gmail.com
  EMAIL_PORT      default 993
  EMAIL_TLS       default true; "false"/"0"/"no" disables TLS
  EMAIL_TRUSTED_SENDERS  comma-separated allow-list (default VIB + Grab)

The secondary account uses the same names with a _2 suffix.
"""

import logging
import os
from typing import Optional

from app.db import supabase_admin
from app.models.mailbox import DEFAULT_TRUSTED_SENDERS, MailboxConfig

logger = logging.getLogger(__name__)

_ENV_SUFFIXES = ("", "_2")
_FALSE_VALUES = {"false", "0", "no", "off"}


def _parse_senders(value: Optional[str]) -> list[str]:
    if not value:
        return list(DEFAULT_TRUSTED_SENDERS)
    senders = [s.strip() for s in value.split(",") if s.strip()]
    return senders or list(DEFAULT_TRUSTED_SENDERS)


def _env_mailbox(suffix: str) -> Optional[MailboxConfig]:
    user = os.getenv(f"EMAIL_USER{suffix}")
    password = os.getenv(f"EMAIL_PASSWORD{suffix}")
    if not user or not password:
        return None

    port_raw = os.getenv(f"EMAIL_PORT{suffix}", "993")
    try:
        port = int(port_raw)
    except ValueError:
        logger.warning(f"Invalid EMAIL_PORT{suffix}={port_raw!r}, using 993")
        port = 993

    return MailboxConfig(
        account=user,
        password=password,
        host=os.getenv(f"EMAIL_HOST{suffix}") or "imap.gmail.com",
        port=port,
        tls=os.getenv(f"EMAIL_TLS{suffix}", "true").strip().lower() not in _FALSE_VALUES,
        trusted_senders=_parse_senders(os.getenv(f"EMAIL_TRUSTED_SENDERS{suffix}")),
    )


def load_env_mailboxes() -> list[MailboxConfig]:
    """Mailboxes configured through EMAIL_* environment variables."""
    return [m for m in (_env_mailbox(s) for s in _ENV_SUFFIXES) if m is not None]


def _row_to_config(row: dict) -> MailboxConfig:
    return MailboxConfig(
        account=row["email_address"],
        password=row["app_password"],
        host=row.get("imap_host") or "imap.gmail.com",
        port=row.get("imap_port") or 993,
        tls=row.get("imap_tls", True) is not False,
        trusted_senders=row.get("trusted_senders") or list(DEFAULT_TRUSTED_SENDERS),
    )


def fetch_user_mailboxes(user_id: str) -> list[MailboxConfig]:
    """Enabled user_email_settings rows for this user."""
    result = (
        supabase_admin.table("user_email_settings")
        .select("*")
        .eq("user_id", user_id)
        .eq("is_enabled", True)
        .execute()
    )
    return [_row_to_config(row) for row in (result.data or [])]


def env_owner_user_id() -> Optional[str]:
    return os.getenv("EMAIL_OWNER_USER_ID") or None


def env_mailboxes_for(user_id: str) -> list[MailboxConfig]:
    """Environment mailboxes if user_id owns them, else an empty list."""
    owner = env_owner_user_id()
    if not owner or user_id != owner:
        return []
    return load_env_mailboxes()


def resolve_mailboxes(user_id: str) -> list[MailboxConfig]:
    """User-configured mailboxes, falling back to the owner's environment ones."""
    mailboxes = fetch_user_mailboxes(user_id)
    if mailboxes:
        return mailboxes
    return env_mailboxes_for(user_id)


def list_sync_users() -> list[str]:
    """IDs of every user with email sync enabled, plus the env mailbox owner."""
    result = (
        supabase_admin.table("user_email_settings")
        .select("user_id")
        .eq("is_enabled", True)
        .execute()
    )
    user_ids = [row["user_id"] for row in (result.data or [])]
    owner = env_owner_user_id()
    if owner and load_env_mailboxes():
        user_ids.append(owner)
    return list(dict.fromkeys(user_ids))
