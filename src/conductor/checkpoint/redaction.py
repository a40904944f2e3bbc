"""Secret redaction and canonical hashing for checkpoint sections.

Redaction walks the JSON-ready structure and rewrites string leaves, so the
result is always valid JSON. Hashing uses a canonical serialization (sorted
keys, compact separators) so dict ordering never changes a checksum.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

REDACTED = "[REDACTED]"

SECRET_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(?:sk|pk)[-_][A-Za-z0-9]{20,}"),  # API keys (OpenAI, Stripe, ...)
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),  # AWS access key id
    re.compile(r"aws_secret_access_key\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"\bgh[ps]_[A-Za-z0-9]{36,}"),  # GitHub tokens
    re.compile(r"github_token\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"password\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"api[_-]?key\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"secret[_-]?key\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"access[_-]?token\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?)://[^:\s/]+:[^@\s]+@"),
]

_SECRET_KEY = re.compile(
    r"^(password|passwd|secret|secret_key|client_secret|api_key|apikey|"
    r"access_token|auth_token|refresh_token|private_key)$",
    re.IGNORECASE,
)


def redact_text(text: str) -> str:
    """Replace every secret-looking substring with ``[REDACTED]``."""
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def redact(value: Any) -> Any:
    """Return a copy of a JSON-ready value with secrets redacted."""
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if _SECRET_KEY.match(str(key)) and isinstance(item, str) and item:
                out[key] = REDACTED
            else:
                out[key] = redact(item)
        return out
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def section_hash(value: Any) -> str:
    return sha256_hex(canonical_json(value))


def overall_hash(section_hashes: list[str]) -> str:
    return sha256_hex("".join(section_hashes))
