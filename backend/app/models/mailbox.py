"""
Mailbox configuration and fetch-result models for the IMAP reader.

MailboxConfig is built either from a user_email_settings row or from the
EMAIL_* environment variables (see app.services.mailbox_settings). The
reader never writes back to the mailbox; everything it learns is returned
in a MailboxFetchResult for the caller to persist.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.models.transaction import ParsedTransaction

DEFAULT_TRUSTED_SENDERS = ["info@card.vib.com.vn", "no-reply@grab.com"]


class MailboxConfig(BaseModel):
    """Connection parameters and sender allow-list for one mailbox."""

    account: str
    password: str
    host: str = "imap.gmail.com"
    port: int = 993
    tls: bool = True
    trusted_senders: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRUSTED_SENDERS)
    )
    # Generous: sync runs from cold-start serverless workers.
    timeout: float = 30.0

    def is_trusted(self, address: str) -> bool:
        """Exact, case-insensitive match against the allow-list."""
        if not address:
            return False
        address = address.strip().lower()
        return any(address == s.strip().lower() for s in self.trusted_senders)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    MAILBOX_OPEN = "mailbox_open"
    SEARCHING = "searching"
    FETCHING = "fetching"
    CLOSING = "closing"


def watermark_key(account: str, uid: str) -> str:
    """Key used in the processed-UID set, e.g. "me@gmail.com:12345"."""
    return f"{account}:{uid}"


@dataclass
class ResolvedMessage:
    """A message whose ingestion attempt has finished, with or without a transaction."""

    uid: str
    subject: str = ""
    transaction: Optional[ParsedTransaction] = None


@dataclass
class MailboxFetchResult:
    account: str
    resolved: list[ResolvedMessage] = field(default_factory=list)
    skipped_known: int = 0

    @property
    def transactions(self) -> list[ParsedTransaction]:
        return [m.transaction for m in self.resolved if m.transaction is not None]
