"""
Thin wrapper around the Anthropic Messages API shared by the transaction
extractor and the nutrition estimator.

Environment variables
---------------------
ANTHROPIC_API_KEY   LLM credential. When unset the LLM capability is simply
                    unavailable and callers fall back to deterministic paths.
ANTHROPIC_MODEL     Model override (default: MODEL below).
"""

import json
import os
from typing import Any, Optional

import anthropic

# Model configuration
MODEL = "claude-sonnet-4-5-20250929"
MAX_TOKENS = 500
TEMPERATURE = 0.1


def get_api_key(api_key: Optional[str] = None) -> Optional[str]:
    return api_key or os.getenv("ANTHROPIC_API_KEY") or None


def llm_configured(api_key: Optional[str] = None) -> bool:
    return get_api_key(api_key) is not None


def complete(
    prompt: str,
    api_key: Optional[str] = None,
    max_tokens: int = MAX_TOKENS,
) -> str:
    """
    Send a single-turn prompt and return the text of the first content block.

    Transport and API errors propagate; callers decide how to degrade.
    """
    client = anthropic.Anthropic(api_key=get_api_key(api_key))

    response = client.messages.create(
        model=os.getenv("ANTHROPIC_MODEL", MODEL),
        max_tokens=max_tokens,
        temperature=TEMPERATURE,
        messages=[{"role": "user", "content": prompt}],
    )

    if not response.content:
        return ""
    return response.content[0].text or ""


def parse_json_response(raw_text: str) -> Any:
    """
    Parse a JSON document from model output (handles markdown code fences).

    Raises ValueError (json.JSONDecodeError) on unparsable content.
    """
    json_text = (raw_text or "").strip()
    if json_text.startswith("```"):
        lines = json_text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        json_text = "\n".join(lines)
    return json.loads(json_text)
