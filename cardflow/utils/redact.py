"""
Secret redaction for text that leaves the process.

Error messages and agent output end up as board comments and log lines;
known credential shapes are masked before that happens.
"""

from __future__ import annotations

import re
from typing import Any


# Patterns for secret detection
SECRET_PATTERNS = [
    # Anthropic / OpenAI style keys
    (r"sk-ant-[A-Za-z0-9_-]{20,}", "[REDACTED]"),
    (r"sk[_-][A-Za-z0-9]{30,}", "[REDACTED]"),
    # AWS keys
    (r"AKIA[A-Z0-9]{16}", "[REDACTED]"),
    # GitHub tokens
    (r"gh[pousr]_[A-Za-z0-9]{36}", "[REDACTED]"),
    (r"github_pat_[A-Za-z0-9_]{40,}", "[REDACTED]"),
    # Trello API credentials passed as query parameters
    (r"([?&](?:key|token)=)[A-Za-z0-9]{24,}", r"\1[REDACTED]"),
    # JWT tokens (three base64 sections separated by dots)
    (r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+", "[REDACTED]"),
    # Private keys
    (r"-----BEGIN[A-Z ]*PRIVATE KEY-----[\s\S]*?-----END[A-Z ]*PRIVATE KEY-----", "[REDACTED]"),
    # Generic bearer tokens with long values
    (r"(Bearer\s+)[A-Za-z0-9._-]{30,}", r"\1[REDACTED]"),
    # Environment variable assignments with secrets (sudo env KEY=value argv)
    (
        r"((?:ANTHROPIC_API_KEY|GITHUB_TOKEN|GH_TOKEN|TRELLO_TOKEN|TRELLO_API_KEY|API_KEY|SECRET_KEY|ACCESS_KEY)['\"]?\s*[=:]\s*['\"]?)([A-Za-z0-9._/-]{8,})",
        r"\1[REDACTED]",
    ),
]


def redact_secrets(text: str) -> str:
    """Redact secrets from a string using known patterns."""
    if not text:
        return text

    result = text
    for pattern, replacement in SECRET_PATTERNS:
        result = re.sub(pattern, replacement, result)

    return result


def redact_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively redact secrets from a dictionary."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            result[key] = redact_secrets(value)
        elif isinstance(value, dict):
            result[key] = redact_dict(value)
        elif isinstance(value, list):
            result[key] = [
                redact_secrets(v) if isinstance(v, str)
                else redact_dict(v) if isinstance(v, dict)
                else v
                for v in value
            ]
        else:
            result[key] = value
    return result
