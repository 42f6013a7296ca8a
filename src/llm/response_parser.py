"""Response parsing utilities for LLM output.

Extracts code blocks and JSON objects from raw LLM responses.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional


def extract_code_blocks(text: str, language: Optional[str] = None) -> list[str]:
    """Extract fenced code blocks from LLM output.

    Args:
        text: Raw LLM response.
        language: If specified, only return blocks with this language tag.

    Returns:
        List of code block contents (without fences).
    """
    if language:
        pattern = rf"```{re.escape(language)}\s*\n(.*?)```"
    else:
        pattern = r"```(?:[\w+-]+)?\s*\n(.*?)```"

    matches = re.findall(pattern, text, re.DOTALL)
    return [m.strip() for m in matches]


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    blocks = extract_code_blocks(text)
    return blocks[0] if blocks else text.strip()


def extract_json_block(text: str) -> Optional[dict[str, Any]]:
    """Extract and parse the first JSON object from LLM output.

    Tries a ```json fence, then the whole response, then the outermost
    brace-delimited span (models often wrap JSON in prose).
    """
    blocks = extract_code_blocks(text, "json")
    candidates = [blocks[0]] if blocks else []
    candidates.append(text.strip())
    span = re.search(r"\{.*\}", text, re.DOTALL)
    if span:
        candidates.append(span.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
