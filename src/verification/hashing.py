"""Digests used by the verification gate and the proof ledger."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Optional


def sha256_hex(text: str) -> str:
    # Model output may carry lone surrogates from JSON escapes; hash them as-is.
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


def canonical_json(data: Any) -> str:
    """Stable JSON encoding: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_proof_hash(
    input_hash: str,
    output_hash: str,
    check_outcomes: dict[str, bool],
    timestamp: Optional[str],
) -> str:
    """Digest over the input/output hashes, each check's pass bit and the timestamp.

    A ``None`` timestamp leaves it out of the digest, which makes the hash
    reproducible for identical inputs.
    """
    payload: dict[str, Any] = {
        "input_hash": input_hash,
        "output_hash": output_hash,
        "checks": check_outcomes,
    }
    if timestamp is not None:
        payload["timestamp"] = timestamp
    return sha256_hex(canonical_json(payload))


_COMMENT_PATTERNS = (
    re.compile(r"/\*.*?\*/", re.DOTALL),
    re.compile(r"(?<![:\\])//[^\n]*"),
    re.compile(r"(?m)^\s*#[^\n]*"),
)
_IDENTIFIER_PATTERNS = (
    (re.compile(r"\b(const|let|var)\s+[A-Za-z_$][\w$]*"), r"\1 VAR"),
    (re.compile(r"\bfunction\s+[A-Za-z_$][\w$]*"), "function FUNC"),
    (re.compile(r"\bdef\s+[A-Za-z_]\w*"), "def FUNC"),
    (re.compile(r"\bclass\s+[A-Za-z_$][\w$]*"), "class CLASS"),
    (re.compile(r"\bimport\s.*?\sfrom\b"), "import FROM"),
)


def hash_logic(code: str) -> str:
    """Structural hash that ignores comments, whitespace and declared names.

    Two artifacts that differ only in formatting or naming hash the same,
    which lets reviewers spot resubmissions of identical logic.
    """
    normalized = code
    for pattern in _COMMENT_PATTERNS:
        normalized = pattern.sub("", normalized)
    normalized = re.sub(r"\s+", " ", normalized)
    for pattern, replacement in _IDENTIFIER_PATTERNS:
        normalized = pattern.sub(replacement, normalized)
    return sha256_hex(normalized.strip())
