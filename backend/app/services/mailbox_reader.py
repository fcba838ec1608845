"""
Read-only IMAP reader for transaction notification mailboxes.

One MailboxReader handles one mailbox for one sync run:

  connect -> login -> SELECT INBOX (read-only)
          -> UID SEARCH SINCE <now - 7 days> (OR FROM a FROM b ...)
          -> drop UIDs already in the caller's watermark
          -> UID FETCH (BODY.PEEK[])
          -> parse every message on a thread pool, wait for all
          -> close / logout

The reader never issues STORE, so the server-side \\Seen flags are left as
the user had them. "Already processed" bookkeeping lives entirely in the
watermark set the caller passes in and persists afterwards.

Connection, login, SELECT, SEARCH and FETCH failures raise MailboxError.
A failure while parsing a single message is logged and only affects that
message.
"""

import email
import email.message
import email.policy
import email.utils
import imaplib
import logging
import re
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.models.mailbox import (
    MailboxConfig,
    MailboxFetchResult,
    ResolvedMessage,
    SessionState,
    watermark_key,
)
from app.models.transaction import ParsedTransaction
from app.services.email_parser import parse_email

logger = logging.getLogger(__name__)

# Bounded look-back keeps each sync run cheap.
SEARCH_WINDOW_DAYS = 7
MAX_PARSE_WORKERS = 8

# IMAP date format needs English month names regardless of locale.
_IMAP_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)
_UID_RE = re.compile(rb"UID (\d+)")

EmailParser = Callable[[str, str, Optional[str]], Optional[ParsedTransaction]]
ImapFactory = Callable[[MailboxConfig], imaplib.IMAP4]

_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.DISCONNECTED: {SessionState.CONNECTED},
    SessionState.CONNECTED: {SessionState.MAILBOX_OPEN, SessionState.CLOSING},
    SessionState.MAILBOX_OPEN: {SessionState.SEARCHING, SessionState.CLOSING},
    SessionState.SEARCHING: {SessionState.FETCHING, SessionState.CLOSING},
    SessionState.FETCHING: {SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.DISCONNECTED},
}


class MailboxError(Exception):
    """The mailbox could not be read (network, auth, or protocol failure)."""


class MailboxStateError(MailboxError):
    """An operation was attempted in the wrong session state."""


def default_imap_factory(config: MailboxConfig) -> imaplib.IMAP4:
    if config.tls:
        return imaplib.IMAP4_SSL(config.host, config.port, timeout=config.timeout)
    return imaplib.IMAP4(config.host, config.port, timeout=config.timeout)


def imap_date(value: datetime) -> str:
    """Format a date for IMAP SEARCH, e.g. 08-Nov-2025."""
    return f"{value.day:02d}-{_IMAP_MONTHS[value.month - 1]}-{value.year}"


def build_search_criteria(trusted_senders: list[str], since: datetime) -> list[str]:
    """
    SINCE <date> plus a left-nested OR over FROM terms.

    IMAP's OR takes exactly two keys, so three senders become
    OR OR FROM a FROM b FROM c.
    """
    criteria = ["SINCE", imap_date(since)]
    criteria.extend(["OR"] * (len(trusted_senders) - 1))
    for sender in trusted_senders:
        criteria.extend(["FROM", f'"{sender}"'])
    return criteria


def _extract_body(message: email.message.EmailMessage) -> str:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    return part.get_content()


class MailboxReader:
    """Fetches and parses new transaction emails from one IMAP mailbox."""

    def __init__(
        self,
        config: MailboxConfig,
        parser: EmailParser = parse_email,
        imap_factory: Optional[ImapFactory] = None,
    ):
        self.config = config
        self.parser = parser
        self.imap_factory = imap_factory or default_imap_factory
        self.state = SessionState.DISCONNECTED
        self._conn: Optional[imaplib.IMAP4] = None

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise MailboxStateError(
                f"Illegal mailbox transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, watermark: set[str]) -> MailboxFetchResult:
        """
        Return every message resolved in this run.

        Messages whose "account:uid" key is in the watermark are counted in
        skipped_known and never downloaded or parsed.
        """
        account = self.config.account
        result = MailboxFetchResult(account=account)

        self._connect()
        try:
            self._login()
            self._select_inbox()
            uids = self._search()

            fresh = [uid for uid in uids if watermark_key(account, uid) not in watermark]
            result.skipped_known = len(uids) - len(fresh)
            logger.info(
                f"Mailbox {account}: {len(uids)} matching, "
                f"{result.skipped_known} already processed"
            )

            if fresh:
                raw_messages = self._fetch_messages(fresh)
                result.resolved = self._parse_all(raw_messages)
        finally:
            self._disconnect()

        return result

    # ------------------------------------------------------------------
    # Session steps
    # ------------------------------------------------------------------

    def _connect(self) -> None:
        try:
            self._conn = self.imap_factory(self.config)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(
                f"Could not connect to {self.config.host}:{self.config.port}: {e}"
            ) from e
        self._transition(SessionState.CONNECTED)

    def _login(self) -> None:
        try:
            self._conn.login(self.config.account, self.config.password)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Login failed for {self.config.account}: {e}") from e

    def _select_inbox(self) -> None:
        try:
            typ, data = self._conn.select("INBOX", readonly=True)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"SELECT INBOX failed: {e}") from e
        if typ != "OK":
            raise MailboxError(f"SELECT INBOX failed: {data}")
        self._transition(SessionState.MAILBOX_OPEN)

    def _search(self) -> list[str]:
        self._transition(SessionState.SEARCHING)
        senders = self.config.trusted_senders
        if not senders:
            logger.warning(f"Mailbox {self.config.account} has no trusted senders")
            return []

        since = datetime.now(timezone.utc) - timedelta(days=SEARCH_WINDOW_DAYS)
        criteria = build_search_criteria(senders, since)
        try:
            typ, data = self._conn.uid("SEARCH", None, *criteria)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"UID SEARCH failed: {e}") from e
        if typ != "OK":
            raise MailboxError(f"UID SEARCH failed: {data}")

        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def _fetch_messages(self, uids: list[str]) -> list[tuple[str, bytes]]:
        """
        Download full messages with BODY.PEEK[] so \\Seen is not set.

        Returns (uid, raw_bytes) pairs in server order.
        """
        self._transition(SessionState.FETCHING)
        try:
            typ, data = self._conn.uid("FETCH", ",".join(uids), "(UID BODY.PEEK[])")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"UID FETCH failed: {e}") from e
        if typ != "OK":
            raise MailboxError(f"UID FETCH failed: {data}")

        messages = []
        for item in data or []:
            # Literal responses arrive as (b'1 (UID 42 BODY[] {1234}', raw)
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            match = _UID_RE.search(item[0])
            if not match:
                logger.warning(f"FETCH response without UID: {item[0][:80]!r}")
                continue
            messages.append((match.group(1).decode(), item[1]))
        return messages

    def _disconnect(self) -> None:
        if self._conn is None:
            return
        self._transition(SessionState.CLOSING)
        try:
            if self._conn.state == "SELECTED":
                self._conn.close()
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning(f"Error during IMAP logout for {self.config.account}: {e}")
        finally:
            self._conn = None
            self._transition(SessionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Message parsing
    # ------------------------------------------------------------------

    def _parse_all(self, raw_messages: list[tuple[str, bytes]]) -> list[ResolvedMessage]:
        """Parse messages concurrently; returns only after every one finishes."""
        if not raw_messages:
            return []

        workers = min(MAX_PARSE_WORKERS, len(raw_messages))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._resolve_message, uid, raw)
                for uid, raw in raw_messages
            ]
            wait(futures)

        return [future.result() for future in futures]

    def _resolve_message(self, uid: str, raw: bytes) -> ResolvedMessage:
        """Decode, re-check the sender, and run the parser for one message."""
        subject = ""
        try:
            message = email.message_from_bytes(raw, policy=email.policy.default)
            subject = str(message.get("Subject", "") or "")

            _, sender = email.utils.parseaddr(str(message.get("From", "") or ""))
            if not self.config.is_trusted(sender):
                logger.warning(
                    f"Discarding UID {uid} in {self.config.account}: "
                    f"untrusted sender {sender!r}"
                )
                return ResolvedMessage(uid=uid, subject=subject)

            body = _extract_body(message)
            transaction = self.parser(subject, body, sender)
        except Exception as e:
            logger.error(f"Failed to parse UID {uid} in {self.config.account}: {e}")
            return ResolvedMessage(uid=uid, subject=subject)

        if transaction is None:
            return ResolvedMessage(uid=uid, subject=subject)

        transaction = transaction.model_copy(
            update={"email_uid": uid, "email_account": self.config.account}
        )
        return ResolvedMessage(uid=uid, subject=subject, transaction=transaction)
