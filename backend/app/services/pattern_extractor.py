"""
Deterministic, pattern-based transaction extraction.

Fallback strategy used when the LLM extractor is unavailable or cannot make
sense of an email. One sub-parser per known sender format:

  parse_bank_notification     VIB card transaction notifications
                              (Vietnamese and English templates)
  parse_ride_hailing_receipt  Grab receipts (GrabFood, GrabCar, GrabBike, ...)

Both operate on sanitized, untruncated text (see app.services.sanitizer) and
return None when a required field (amount, date) cannot be located. Given how
often notification templates drift, None is an expected outcome, not an
error. Timestamps without an explicit offset are wall-clock times in the
business timezone (UTC+7).
"""

import logging
import re
from datetime import datetime
from typing import Optional

from app.models.transaction import Category, ParsedTransaction
from app.services.business_time import BUSINESS_TZ

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Category inference
# ---------------------------------------------------------------------------

# Evaluated in order; the first category with a match wins. The first
# pattern is searched in the transaction type, the second (if any) in the
# merchant name. "car" must end a word so "Card Payment" is not Transport.
_CATEGORY_PATTERNS: list[tuple[Category, re.Pattern, Optional[re.Pattern]]] = [
    (Category.FOOD, re.compile(r"food|restaurant"), re.compile(r"cafe|coffee")),
    (Category.TRANSPORT, re.compile(r"car\b|bike|taxi|ride|grab"), None),
    (Category.SHOPPING, re.compile(r"shopping|mart|retail|store"), None),
    (Category.ENTERTAINMENT, re.compile(r"entertainment|movie|game|subscription"), None),
    (Category.BILLS, re.compile(r"bill|utility|internet|phone"), None),
    (
        Category.HEALTH,
        re.compile(r"health|medical|hospital|pharmacy|clinic"),
        re.compile(r"hospital|pharmacy|clinic"),
    ),
]


def map_to_category(transaction_type: str, merchant: str) -> Category:
    """
    Infer a spending category from the transaction type and merchant.

    Case-insensitive; defaults to Other.
    """
    ttype = (transaction_type or "").lower()
    merch = (merchant or "").lower()

    for category, type_pattern, merchant_pattern in _CATEGORY_PATTERNS:
        if type_pattern.search(ttype):
            return category
        if merchant_pattern is not None and merchant_pattern.search(merch):
            return category
    return Category.OTHER


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

_CURRENCY_SYMBOLS = {"₫": "VND", "đ": "VND", "$": "USD", "€": "EUR"}

# Thousands grouping with either separator: 120,000 / 120.000 / 1,234,567
_GROUPED_RE = re.compile(r"^\d{1,3}(?:([.,])\d{3})(?:\1\d{3})*$")
_NUMBER_RE = re.compile(r"\d[\d.,]*")

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}


def parse_amount(text) -> Optional[float]:
    """
    Parse an amount such as "₫38,000", "120.000 VND", "85000" or 12.5.

    Thousands separators are stripped. A single "," or "." followed by one
    or two digits is treated as a decimal point. Returns None when no
    number can be found.
    """
    if text is None or isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return float(text)

    match = _NUMBER_RE.search(str(text))
    if not match:
        return None
    number = match.group(0).rstrip(".,")

    if _GROUPED_RE.match(number):
        number = re.sub(r"[.,]", "", number)
    else:
        # Mixed separators, e.g. 1,234.50 or 1.234,50: the last one is decimal.
        last = max(number.rfind("."), number.rfind(","))
        if last != -1:
            integer_part = re.sub(r"[.,]", "", number[:last])
            number = f"{integer_part}.{number[last + 1:]}"

    try:
        return float(number)
    except ValueError:
        return None


def _detect_currency(text: str, default: str = "VND") -> str:
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    code_match = re.search(r"\b([A-Z]{3})\b", text)
    if code_match:
        return code_match.group(1)
    return default


def _to_iso(year: int, month: int, day: int, hour: int, minute: int) -> Optional[str]:
    if year < 100:
        year += 2000
    try:
        moment = datetime(year, month, day, hour, minute, tzinfo=BUSINESS_TZ)
    except ValueError:
        return None
    return moment.isoformat()


# 14:30 08/11/2025
_TIME_THEN_DATE_RE = re.compile(
    r"(\d{1,2}):(\d{2})(?::\d{2})?\s+(\d{1,2})/(\d{1,2})/(\d{4})"
)
# 08/11/2025 14:30
_DATE_THEN_TIME_RE = re.compile(
    r"(\d{1,2})/(\d{1,2})/(\d{4})\s+(\d{1,2}):(\d{2})"
)
# 08 Nov 25 18:38 / 08 Nov 2025 18:38 / 8 November 2025, 18:38
_ENGLISH_DATE_RE = re.compile(
    r"\b(\d{1,2})\s+([A-Za-z]{3})[A-Za-z]*\.?\s+(\d{2}|\d{4}),?\s+(\d{1,2}):(\d{2})"
)


def parse_timestamp(text: str) -> Optional[str]:
    """
    Find the first supported timestamp in text and return it as ISO-8601
    with the business-timezone offset.
    """
    if not text:
        return None

    m = _TIME_THEN_DATE_RE.search(text)
    if m:
        hour, minute, day, month, year = (int(g) for g in m.groups())
        return _to_iso(year, month, day, hour, minute)

    m = _DATE_THEN_TIME_RE.search(text)
    if m:
        day, month, year, hour, minute = (int(g) for g in m.groups())
        return _to_iso(year, month, day, hour, minute)

    m = _ENGLISH_DATE_RE.search(text)
    if m:
        month = _MONTHS.get(m.group(2).lower())
        if month is None:
            return None
        return _to_iso(
            int(m.group(3)), month, int(m.group(1)), int(m.group(4)), int(m.group(5))
        )

    return None


# ---------------------------------------------------------------------------
# VIB bank notification
# ---------------------------------------------------------------------------

_BANK_TYPE_RE = re.compile(
    r"(?:Giao dịch|Loại giao dịch|Transaction(?: type)?)\s*:\s*([^\n]+)", re.IGNORECASE
)
_BANK_VALUE_RE = re.compile(
    r"(?:Giá trị|Số tiền|Value|Amount)\s*:\s*"
    r"((?:[₫$€][ \t]*)?\d[\d.,]*[ \t]*(?:[A-Z]{3}\b|₫|đ)?)",
    re.IGNORECASE,
)
_BANK_TIME_RE = re.compile(
    r"\b(?:Vào lúc|Thời gian|At|Time|Date)\s*:\s*([^\n]+)", re.IGNORECASE
)
# Merchant label has no colon: "Tại Circle K", "At Starbucks".
_BANK_MERCHANT_RE = re.compile(
    r"(?:^|\s)(?:Tại|At)\s+(?!:)([^\n:]+?)\s*(?=\n|$|\s(?:Số dư|Balance|Nội dung|Description)\b)",
    re.MULTILINE,
)


def parse_bank_notification(subject: str, body: str) -> Optional[ParsedTransaction]:
    """
    Parse a VIB card transaction notification.

    Expected shape (labels in either language):

        Giao dịch: Thanh toán thẻ        Transaction: Card Payment
        Giá trị: 120,000 VND             Value: 85,000 VND
        Vào lúc: 14:30 08/11/2025        At: 12:45 19/11/2025
        Tại Circle K Nguyen Hue          At Starbucks District 1
    """
    text = body or ""

    value_match = _BANK_VALUE_RE.search(text)
    if not value_match:
        return None
    amount = parse_amount(value_match.group(1))
    if not amount or amount <= 0:
        return None
    currency = _detect_currency(value_match.group(1))

    time_match = _BANK_TIME_RE.search(text)
    transaction_date = parse_timestamp(time_match.group(1)) if time_match else None
    if transaction_date is None:
        transaction_date = parse_timestamp(text)
    if transaction_date is None:
        return None

    type_match = _BANK_TYPE_RE.search(text)
    transaction_type = type_match.group(1).strip() if type_match else "Card Payment"

    merchant_match = _BANK_MERCHANT_RE.search(text)
    merchant = merchant_match.group(1).strip() if merchant_match else "Unknown"

    return ParsedTransaction(
        transaction_type=transaction_type,
        amount=amount,
        currency=currency,
        transaction_date=transaction_date,
        merchant=merchant,
        category=map_to_category(transaction_type, merchant),
        email_subject=subject or "",
    )


# ---------------------------------------------------------------------------
# Grab receipt
# ---------------------------------------------------------------------------

# Orders that have not been completed yet: scheduled, pending, just received.
_GRAB_PENDING_RE = re.compile(
    r"order for later|scheduled|\bpending\b|we've received your order|"
    r"booking (?:confirmed|received)|order received|đơn hàng đã được nhận|đặt trước",
    re.IGNORECASE,
)
_GRAB_SERVICES = ("GrabFood", "GrabMart", "GrabExpress", "GrabCar", "GrabBike")

_GRAB_MERCHANT_RE = re.compile(
    r"(?:Đặt từ|Ordered from|Order from)\s*:?\s*([^\n]+?)\s*(?=\n|$|\s(?:Tổng cộng|Total)\b)",
    re.IGNORECASE,
)
# "Subtotal" must not match "Total": the amount is always the final total.
_GRAB_TOTAL_RE = re.compile(
    r"(?<!\w)(?:Tổng cộng|Tổng tiền|Total(?: paid)?|Thanh toán)[ \t]*:?[ \t]*"
    r"((₫|VND|đ)?[ \t]*\d[\d.,]*[ \t]*(₫|VND|đ)?)",
    re.IGNORECASE,
)


def _find_total(text: str) -> Optional[re.Match]:
    """First total carrying a currency marker, else the first total at all."""
    matches = list(_GRAB_TOTAL_RE.finditer(text))
    for m in matches:
        if m.group(2) or m.group(3):
            return m
    return matches[0] if matches else None


def _grab_service(text: str, has_merchant: bool) -> str:
    lower = text.lower()
    for service in _GRAB_SERVICES:
        if service.lower() in lower:
            return service
    if has_merchant:
        return "GrabFood"
    if re.search(r"\b(?:trip|ride|driver|chuyến đi|tài xế)\b", lower):
        return "GrabCar"
    return "Grab"


def parse_ride_hailing_receipt(subject: str, body: str) -> Optional[ParsedTransaction]:
    """
    Parse a Grab e-receipt.

    Pending and scheduled orders are discarded before any field extraction.
    """
    text = body or ""
    if _GRAB_PENDING_RE.search(subject or "") or _GRAB_PENDING_RE.search(text):
        logger.info("Skipping pending/scheduled Grab order")
        return None

    total_match = _find_total(text)
    if not total_match:
        return None
    amount = parse_amount(total_match.group(1))
    if not amount or amount <= 0:
        return None

    transaction_date = parse_timestamp(text)
    if transaction_date is None:
        return None

    merchant_match = _GRAB_MERCHANT_RE.search(text)
    merchant = merchant_match.group(1).strip() if merchant_match else "Grab"
    transaction_type = _grab_service(f"{subject}\n{text}", merchant_match is not None)

    return ParsedTransaction(
        transaction_type=transaction_type,
        amount=amount,
        currency=_detect_currency(total_match.group(1)),
        transaction_date=transaction_date,
        merchant=merchant,
        category=map_to_category(transaction_type, merchant),
        email_subject=subject or "",
    )
