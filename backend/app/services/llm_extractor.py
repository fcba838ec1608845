"""
LLM-based transaction extraction (primary strategy).

The email is sanitized (no PII leaves the process), truncated, and embedded in
a fixed prompt asking the model for a strict JSON object. The result is a
three-valued ExtractionOutcome:

  transaction   a validated ParsedTransaction
  skip          the model says this is not a completed transaction (pending
                order, booking confirmation, promotion); terminal, the caller
                must not retry with another strategy
  unparseable   transport error, empty/non-JSON output, or missing required
                fields; the caller may fall back to pattern extraction
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from app.models.transaction import Category, ParsedTransaction
from app.services.business_time import BUSINESS_TZ
from app.services import llm_client
from app.services.pattern_extractor import parse_amount
from app.services.sanitizer import sanitize, truncate_for_llm

logger = logging.getLogger(__name__)


EXTRACTION_PROMPT = """\
You are an email parser that extracts transaction information from emails.
Parse the following email and extract the transaction details in JSON format.

Email Subject: {subject}
Email Body: {body}

Note: Personal info has been sanitized ([EMAIL], [PHONE], [CARD], [LINK] are placeholders).

Extract the following information:
- amount (number, no currency symbols or commas)
- currency (e.g., "VND", "USD")
- merchant (store/restaurant/service name)
- transactionDate (ISO 8601 format like "2025-11-19T10:30:00+07:00")
- transactionType (e.g., "GrabFood", "GrabCar", "Online Shopping", etc.)
- category (MUST be one of: "Food", "Transport", "Shopping", "Entertainment", "Bills", "Health", "Other")

Rules:
1. For the amount, extract ONLY the final total amount paid by the customer, not subtotals or individual items.
2. For Vietnamese dates like "08/11/2025 18:38" or "08 Nov 25 18:38", convert to ISO 8601 with the +07:00 offset.
3. If a field cannot be found use these defaults: merchant "Unknown", transactionType "Purchase",
   category: the MOST appropriate value from the list above.
4. Remove all formatting from amount (no commas, dots, or currency symbols).
5. For Grab emails, look for "Đặt từ" or "From" to find the merchant name.
6. Only parse COMPLETED transactions (receipts, payment confirmations). If the email says
   "We've received your order", "Booking Confirmed", "Order Received", "Đơn hàng đã được nhận",
   or is a pending order, scheduled order or promotion, return {"skip": true}.
7. Ignore placeholder values like [EMAIL], [PHONE], [CARD], [LINK].
8. Category examples:
   - GrabFood, restaurants, cafes -> "Food"
   - GrabCar, GrabBike, Uber, taxis -> "Transport"
   - Online shopping, retail stores -> "Shopping"
   - Movies, games, subscriptions -> "Entertainment"
   - Utilities, phone bills, internet -> "Bills"
   - Hospitals, pharmacies, clinics -> "Health"
   - Anything else -> "Other"

Respond with ONLY valid JSON (no markdown, no explanations) in this exact format:
{
  "amount": 38000,
  "currency": "VND",
  "merchant": "Store Name",
  "transactionDate": "2025-11-19T18:38:00+07:00",
  "transactionType": "GrabFood",
  "category": "Food"
}

If this email is NOT a completed transaction, respond with:
{"skip": true}
"""


class ExtractionStatus(str, Enum):
    TRANSACTION = "transaction"
    SKIP = "skip"
    UNPARSEABLE = "unparseable"


@dataclass
class ExtractionOutcome:
    status: ExtractionStatus
    transaction: Optional[ParsedTransaction] = None
    reason: str = ""

    @classmethod
    def unparseable(cls, reason: str) -> "ExtractionOutcome":
        return cls(ExtractionStatus.UNPARSEABLE, reason=reason)


def build_prompt(subject: str, body: str) -> str:
    """Sanitize and truncate the email, then fill the prompt template."""
    clean_subject = sanitize(subject or "")
    clean_body = truncate_for_llm(sanitize(body or ""))
    # str.replace rather than str.format: the template contains JSON braces.
    return (
        EXTRACTION_PROMPT
        .replace("{subject}", clean_subject)
        .replace("{body}", clean_body)
    )


def _normalize_date(value: Any) -> str:
    """ISO-8601 with offset; naive values are business-timezone wall clock."""
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=BUSINESS_TZ)
            return parsed.isoformat()
    return datetime.now(timezone.utc).isoformat()


def interpret_response(raw_text: str, subject: str) -> ExtractionOutcome:
    """Validate model output and turn it into an ExtractionOutcome."""
    try:
        data = llm_client.parse_json_response(raw_text)
    except ValueError:
        logger.warning(f"LLM response is not valid JSON: {raw_text[:200]!r}")
        return ExtractionOutcome.unparseable("invalid_json")

    if not isinstance(data, dict):
        return ExtractionOutcome.unparseable("not_an_object")

    if data.get("skip") is True:
        logger.info("LLM marked email as not a completed transaction")
        return ExtractionOutcome(ExtractionStatus.SKIP, reason="skip")

    amount = parse_amount(data.get("amount"))
    merchant = data.get("merchant")
    if not amount or amount <= 0 or not isinstance(merchant, str) or not merchant.strip():
        logger.warning(f"Missing required fields in LLM response: {data}")
        return ExtractionOutcome.unparseable("missing_fields")

    try:
        transaction = ParsedTransaction(
            transaction_type=str(data.get("transactionType") or "Purchase"),
            amount=amount,
            currency=str(data.get("currency") or "VND").upper(),
            transaction_date=_normalize_date(data.get("transactionDate")),
            merchant=merchant.strip(),
            category=Category.coerce(data.get("category")),
            email_subject=subject or "",
        )
    except ValidationError as e:
        logger.warning(f"LLM response failed validation: {e}")
        return ExtractionOutcome.unparseable("validation_error")

    return ExtractionOutcome(ExtractionStatus.TRANSACTION, transaction=transaction)


def extract_via_llm(
    subject: str,
    body: str,
    api_key: Optional[str] = None,
) -> ExtractionOutcome:
    """
    Extract a transaction with the LLM. Never raises.
    """
    if not llm_client.llm_configured(api_key):
        return ExtractionOutcome.unparseable("llm_not_configured")

    try:
        prompt = build_prompt(subject, body)
        raw_text = llm_client.complete(prompt, api_key=api_key)
    except Exception as e:
        logger.warning(f"LLM extraction call failed: {e}")
        return ExtractionOutcome.unparseable("llm_error")

    if not raw_text.strip():
        return ExtractionOutcome.unparseable("empty_response")

    return interpret_response(raw_text, subject)
