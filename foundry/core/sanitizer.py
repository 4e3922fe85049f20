"""Secret scrubbing for any text that leaves the process (errors, events, API responses)."""

from __future__ import annotations

import re
from typing import Any

# (kind, pattern); order matters: specific token formats before generic ones.
SECRET_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("private_key", re.compile(
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----"
    )),
    ("anthropic_key", re.compile(r"sk-ant-[A-Za-z0-9_-]{20,}")),
    ("openai_key", re.compile(r"sk-proj-[A-Za-z0-9_-]{20,}")),
    ("stripe_key", re.compile(r"\b[sr]k_(?:live|test)_[A-Za-z0-9]{16,}")),
    ("api_key", re.compile(r"\bsk-[A-Za-z0-9]{20,}")),
    ("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    ("aws_secret", re.compile(
        r"(?i)(aws_secret_access_key\s*[=:]\s*)['\"]?[A-Za-z0-9/+=]{40}['\"]?"
    )),
    ("github_token", re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36,}\b|\bgithub_pat_[A-Za-z0-9_]{22,}")),
    ("slack_token", re.compile(r"\bxox[abposr]-[A-Za-z0-9-]{10,}")),
    ("discord_webhook", re.compile(
        r"https://(?:canary\.|ptb\.)?discord(?:app)?\.com/api/webhooks/\d+/[A-Za-z0-9_-]+"
    )),
    ("telegram_token", re.compile(r"\b\d{8,10}:[A-Za-z0-9_-]{35}\b")),
    ("jwt", re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}")),
    ("bearer", re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/-]{8,}=*")),
    ("url_credentials", re.compile(r"(\b[a-z][a-z0-9+.-]*://)[^/\s:@]+:[^/\s@]+@")),
    ("env_secret", re.compile(
        r"\b([A-Z][A-Z0-9_]*(?:KEY|TOKEN|SECRET|PASSWORD|PASSWD)[A-Z0-9_]*\s*=\s*)['\"]?[^\s'\"]{4,}['\"]?"
    )),
    ("inline_secret", re.compile(
        r"(?i)\b((?:password|passwd|secret|token|api[_-]?key)\s*[:=]\s*)['\"][^'\"]{4,}['\"]"
    )),
]

# Keys whose values are redacted wholesale in mappings
_SENSITIVE_KEY = re.compile(r"(?i)(api[_-]?key|token|secret|password|passwd|authorization|credential)")


def _replacement(kind: str, match: re.Match[str]) -> str:
    # Patterns with a captured prefix keep it so the text stays readable.
    prefix = match.group(1) if match.re.groups else ""
    return f"{prefix}[REDACTED:{kind}]"


def sanitize(text: str | None) -> str:
    """Redact every known secret format from *text*."""
    if not text:
        return ""
    for kind, pattern in SECRET_PATTERNS:
        text = pattern.sub(lambda m, k=kind: _replacement(k, m), text)
    return text


def contains_secrets(text: str | None) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for _, pattern in SECRET_PATTERNS)


def sanitize_mapping(data: Any) -> Any:
    """Recursively redact secrets from dicts, lists and strings."""
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            if isinstance(key, str) and _SENSITIVE_KEY.search(key) and isinstance(value, str) and value:
                cleaned[key] = "[REDACTED]"
            else:
                cleaned[key] = sanitize_mapping(value)
        return cleaned
    if isinstance(data, (list, tuple)):
        return [sanitize_mapping(item) for item in data]
    if isinstance(data, str):
        return sanitize(data)
    return data
