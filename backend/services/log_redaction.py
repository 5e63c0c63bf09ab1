"""
Log redaction helpers.

Scrubs values whose key looks sensitive before they reach a log handler,
and masks identifiers for safe logging.

A key is sensitive when one of SENSITIVE_KEYS appears in it as whole
segments (split on punctuation, underscores and camelCase), so
"api_key", "PROMPT_ENCRYPTION_KEY" and "accessToken" match while
counters such as "tokens" or "input_tokens" do not.
"""

import logging
import re
from typing import Any, List

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = {
    'password', 'passwd', 'pwd', 'token', 'secret', 'key', 'apikey', 'authorization',
    'auth', 'credential', 'cookie', 'session_token', 'bearer', 'private',
    'signature', 'system_prompt', 'full_prompt', 'ciphertext', 'encrypted',
}

_SEGMENT_SPLIT = re.compile(r"[\W_]+|(?<=[a-z0-9])(?=[A-Z])")

# key=value / key: value fragments inside free-form log text
_INLINE_PAIR = re.compile(
    r"(?P<key>(?<![\w\-])[\w\-]+)"
    r"(?P<sep>[\"']?\s*[=:]\s*)(?P<value>\"[^\"]*\"|'[^']*'|[^\s,;}]+)"
)


def key_segments(key: str) -> List[str]:
    return [part.lower() for part in _SEGMENT_SPLIT.split(key) if part]


_SENSITIVE_SEQUENCES = [key_segments(term) for term in SENSITIVE_KEYS]


def is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    parts = key_segments(key)
    for sequence in _SENSITIVE_SEQUENCES:
        size = len(sequence)
        for i in range(len(parts) - size + 1):
            if parts[i:i + size] == sequence:
                return True
    return False


def redact(value: Any) -> Any:
    """
    Return a copy of value with sensitive fields replaced.

    Dicts are walked recursively; lists and tuples are walked element-wise.
    Strings are scanned for inline key=value pairs.
    """
    if isinstance(value, dict):
        return {
            k: (REDACTED if is_sensitive_key(k) else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    if isinstance(value, tuple):
        return tuple(redact(v) for v in value)
    if isinstance(value, str):
        return redact_text(value)
    return value


def redact_text(text: str) -> str:
    def _replace(match):
        key, sep, value = match.group("key"), match.group("sep"), match.group("value")
        if not is_sensitive_key(key):
            # "user: password=x" consumes the inner pair as a value
            return f"{key}{sep}{redact_text(value)}"
        # leave %-style placeholders alone, their args are redacted separately
        if value.startswith("%"):
            return match.group(0)
        return f"{key}{sep}{REDACTED}"

    return _INLINE_PAIR.sub(_replace, text)


def mask_token(token: str, prefix_len: int = 4, suffix_len: int = 4) -> str:
    """
    Mask token for safe logging.

    Examples:
        >>> mask_token("3f2a9c1e-77aa-4c1b-9f0e-2b8c0d4e5a61")
        '3f2a...5a61'
        >>> mask_token("short")
        '***'
    """
    if not token:
        return "***"

    if len(token) <= (prefix_len + suffix_len):
        return "***"

    return f"{token[:prefix_len]}...{token[-suffix_len:]}"


class RedactingFilter(logging.Filter):
    """Logging filter that redacts the message and its arguments in place."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        elif isinstance(record.msg, dict):
            record.msg = redact(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact(record.args)
            else:
                record.args = tuple(redact(arg) for arg in record.args)
        return True
