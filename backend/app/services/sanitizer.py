"""
Email body sanitizer.

Turns a raw HTML or plain-text email body into compact text that is safe to
send to a third-party LLM: markup is removed, PII is replaced by fixed
placeholder tokens, and marketing/legal footers are cut off.

Placeholders:
  [EMAIL]  email addresses
  [CARD]   12-16 digit card-number-like sequences
  [PHONE]  phone-number-like digit runs
  [LINK]   http(s) URLs

Line breaks from block-level HTML tags are kept so that the pattern
extractor can still anchor on "Label: value" lines. Every function here is
pure and never raises.
"""

import re

from bs4 import BeautifulSoup

# Bodies longer than this are cut before being embedded in the LLM prompt.
LLM_BODY_LIMIT = 1000

_BLOCK_TAGS = ["br", "p", "div", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "table"]

_URL_RE = re.compile(r"https?://\S+")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# A digit run followed by a currency marker is an amount, never PII.
_NOT_AMOUNT = r"(?!\s*(?:VND|VNĐ|USD|₫|đ))"
# Card numbers run before phone numbers so a 16-digit run is not half-eaten
# by the phone pattern.
_CARD_RE = re.compile(r"(?<!\d)\d(?:[ -]?\d){11,15}(?!\d)" + _NOT_AMOUNT)
# Vietnamese numbers: leading 0 or +84, then 8-10 digits.
_PHONE_RE = re.compile(r"(?<![\d.,/:])(?:\+84|0)\d{8,10}(?![\d.,/:])" + _NOT_AMOUNT)

_FOOTER_PATTERNS = [
    re.compile(p, re.IGNORECASE | re.DOTALL)
    for p in (
        r"Click here to unsubscribe.*$",
        r"Unsubscribe.*$",
        r"You received this email because.*$",
        r"To stop receiving these emails.*$",
        r"Privacy Policy.*$",
        r"Terms (?:and|&) Conditions.*$",
        r"© .*?\d{4}.*$",
        r"Follow us on.*$",
        r"Download (?:the |our )?.{0,40}?\bapp\b.*$",
    )
]

_HORIZONTAL_WS_RE = re.compile(r"[ \t\r\f\v\u00a0]+")
_NEWLINE_RUN_RE = re.compile(r" ?\n\s*")


def strip_html(raw: str) -> str:
    """Remove markup, keeping one line break per block-level element."""
    if not raw:
        return ""
    soup = BeautifulSoup(raw, "lxml")
    for tag in soup(["style", "script"]):
        tag.decompose()
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")
    # Entities are decoded by the parser; inline tags join with a space.
    return collapse_whitespace(soup.get_text(" "))


def collapse_whitespace(text: str) -> str:
    text = _HORIZONTAL_WS_RE.sub(" ", text)
    text = _NEWLINE_RUN_RE.sub("\n", text)
    return text.strip()


def redact_pii(text: str) -> str:
    text = _URL_RE.sub("[LINK]", text)
    text = _EMAIL_RE.sub("[EMAIL]", text)
    text = _CARD_RE.sub("[CARD]", text)
    text = _PHONE_RE.sub("[PHONE]", text)
    return text


def strip_boilerplate(text: str) -> str:
    """Cut everything from the first footer/unsubscribe/legal marker onwards."""
    for pattern in _FOOTER_PATTERNS:
        text = pattern.sub("", text)
    return text


def sanitize(raw: str) -> str:
    """
    Full sanitization pipeline used before any parsing.

    The result is untruncated; use truncate_for_llm() before embedding it in
    a prompt.
    """
    if not raw:
        return ""
    text = strip_html(raw)
    text = redact_pii(text)
    text = strip_boilerplate(text)
    return collapse_whitespace(text)


def truncate_for_llm(text: str, limit: int = LLM_BODY_LIMIT) -> str:
    return text[:limit]
