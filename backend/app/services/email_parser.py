"""
Email -> transaction dispatcher.

Tries the LLM extractor first (when ANTHROPIC_API_KEY is configured). An
explicit "skip" from the model is final. Any other LLM failure falls back
to the pattern sub-parser whose sender signature matches the email.

Adding a new sender format:
  1. Write a parse_<format>(subject, body) function in pattern_extractor.
  2. Register it in _PATTERN_PARSERS with its sender domains and markers.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from app.models.transaction import ParsedTransaction
from app.services.llm_extractor import ExtractionStatus, extract_via_llm
from app.services.pattern_extractor import (
    parse_bank_notification,
    parse_ride_hailing_receipt,
)
from app.services.sanitizer import sanitize

logger = logging.getLogger(__name__)

PatternParser = Callable[[str, str], Optional[ParsedTransaction]]


@dataclass(frozen=True)
class _SenderSignature:
    name: str
    sender_domains: tuple[str, ...]
    markers: re.Pattern
    parser: PatternParser


# Order matters when no sender is known: a bank notification for a Grab
# purchase mentions Grab as the merchant, so the labelled bank fields are
# checked first.
_PATTERN_PARSERS: list[_SenderSignature] = [
    _SenderSignature(
        name="vib",
        sender_domains=("vib.com.vn",),
        markers=re.compile(
            r"(?:Giá trị|Value)\s*:.*(?:Giao dịch|Transaction)\s*:|"
            r"(?:Giao dịch|Transaction)\s*:.*(?:Giá trị|Value)\s*:",
            re.IGNORECASE | re.DOTALL,
        ),
        parser=parse_bank_notification,
    ),
    _SenderSignature(
        name="grab",
        sender_domains=("grab.com",),
        markers=re.compile(r"\bgrab|Đặt từ", re.IGNORECASE),
        parser=parse_ride_hailing_receipt,
    ),
]


def _sender_domain(sender: Optional[str]) -> str:
    if not sender or "@" not in sender:
        return ""
    return sender.rsplit("@", 1)[1].strip().strip(">").lower()


def select_pattern_parser(
    subject: str,
    body: str,
    sender: Optional[str] = None,
) -> Optional[PatternParser]:
    """Pick the pattern sub-parser by sender domain, then by content markers."""
    domain = _sender_domain(sender)
    if domain:
        for signature in _PATTERN_PARSERS:
            if any(domain == d or domain.endswith("." + d) for d in signature.sender_domains):
                return signature.parser

    text = f"{subject}\n{body}"
    for signature in _PATTERN_PARSERS:
        if signature.markers.search(text):
            return signature.parser
    return None


def parse_email(
    subject: str,
    body: str,
    sender: Optional[str] = None,
) -> Optional[ParsedTransaction]:
    """
    Turn an email into a ParsedTransaction, or None.

    No exception escapes this function: every failure path degrades to None.
    """
    subject = subject or ""
    body = body or ""

    try:
        outcome = extract_via_llm(subject, body)
        if outcome.status == ExtractionStatus.TRANSACTION:
            logger.info("Parsed email with LLM")
            return outcome.transaction
        if outcome.status == ExtractionStatus.SKIP:
            return None
        logger.info(f"LLM extraction unavailable ({outcome.reason}); trying patterns")

        clean_body = sanitize(body)
        parser = select_pattern_parser(subject, clean_body, sender)
        if parser is None:
            logger.info(f"No pattern parser matches email: {subject!r}")
            return None
        return parser(subject, clean_body)
    except Exception as e:
        logger.error(f"Unexpected error parsing email {subject!r}: {e}")
        return None
