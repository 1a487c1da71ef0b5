"""Content filtering: secret masking for capture hooks, hard length cap for the ledger.

Masking is the caller's job (hooks run it before ``store_event``); the ledger
only enforces ``truncate_content``.
"""

from __future__ import annotations

import re

REDACTED = "[REDACTED]"
PRIVATE = "[PRIVATE]"

_PRIVATE_TAG = re.compile(r"<private>.*?</private>", re.DOTALL | re.IGNORECASE)
_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{8,}")
_KNOWN_TOKENS = [
    re.compile(r"\bsk-[A-Za-z0-9_-]{16,}"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bxox[abpr]-[A-Za-z0-9-]{10,}"),
]


def _assignment_pattern(keys: list[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(k) for k in keys)
    return re.compile(
        rf"(?i)([\w-]*(?:{alternatives})[\w-]*[\"']?\s*[:=]\s*)([\"']?)([^\s\"',;]+)(\2)"
    )


def mask_secrets(
    text: str,
    exclude_patterns: list[str] | None = None,
    private_tags: bool = True,
) -> str:
    """Redact credentials in free text: key=value pairs, bearer tokens, known token shapes."""
    if not text:
        return text
    if private_tags:
        text = _PRIVATE_TAG.sub(PRIVATE, text)
    text = _BEARER.sub(f"Bearer {REDACTED}", text)
    for pattern in _KNOWN_TOKENS:
        text = pattern.sub(REDACTED, text)
    if exclude_patterns:
        text = _assignment_pattern(exclude_patterns).sub(
            lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}{m.group(4)}", text
        )
    return text


def mask_sensitive_input(
    data: dict,
    exclude_patterns: list[str] | None = None,
    private_tags: bool = True,
) -> dict:
    """Mask a tool-input mapping: sensitive keys are replaced, string values are scanned."""
    keys = [k.lower() for k in (exclude_patterns or [])]
    masked: dict = {}
    for key, value in data.items():
        if any(k in str(key).lower() for k in keys):
            masked[key] = REDACTED
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_input(value, exclude_patterns, private_tags)
        elif isinstance(value, str):
            masked[key] = mask_secrets(value, exclude_patterns, private_tags)
        else:
            masked[key] = value
    return masked


def _marker(dropped: int) -> str:
    return f"\n…[truncated {dropped} chars]…\n"


def truncate_content(text: str, max_length: int) -> str:
    """Cap ``text`` at ``max_length`` chars, keeping head and tail around a visible marker."""
    if max_length <= 0 or len(text) <= max_length:
        return text
    marker = _marker(len(text) - max_length)
    budget = max(max_length - len(marker), 0)
    marker = _marker(len(text) - budget)
    if len(marker) >= max_length:
        # Too small for a marker: plain head cut.
        return text[:max_length]
    budget = max_length - len(marker)
    head = budget - budget // 3
    tail = budget - head
    return text[:head] + marker + (text[-tail:] if tail else "")
