"""
Script-injection stripping for outgoing and edited message text.
"""

import re

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_UNCLOSED_SCRIPT = re.compile(r"<script\b[^>]*>?", re.IGNORECASE)
_JS_URL = re.compile(r"javascript\s*:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def sanitize_message(message: str) -> str:
    """
    Remove script blocks, javascript: URLs and inline event handlers, then trim.

    Args:
        message: Raw message text

    Returns:
        Sanitized text (may be empty if the message was nothing but script)
    """
    sanitized = _SCRIPT_BLOCK.sub("", message)
    sanitized = _UNCLOSED_SCRIPT.sub("", sanitized)
    sanitized = _JS_URL.sub("", sanitized)
    sanitized = _EVENT_HANDLER.sub("", sanitized)
    return sanitized.strip()
