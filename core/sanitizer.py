"""
Helpers for keeping user identifiers and secrets out of logs
"""

import re
from typing import Optional

MASK = "***"

_SENSITIVE_JSON_KEYS = ("password", "appKey", "token", "secret", "apiKey", "api_key")
_SENSITIVE_JSON_PATTERNS = [
    re.compile(r'("%s"\s*:\s*")[^"]*' % key) for key in _SENSITIVE_JSON_KEYS
]
_SENSITIVE_QUERY_MARKERS = ("key=", "token=", "password=", "secret=")


def mask_user_id(user_id: Optional[str]) -> str:
    """Keep the first and last 4 characters of a user id, mask the rest"""
    if not user_id or len(user_id) <= 8:
        return MASK
    return f"{user_id[:4]}{MASK}{user_id[-4:]}"


def sanitize_json(text: Optional[str]) -> Optional[str]:
    """Redact values of well-known secret keys in a JSON string"""
    if not text:
        return text
    for pattern in _SENSITIVE_JSON_PATTERNS:
        text = pattern.sub(r"\g<1>" + MASK, text)
    return text


def sanitize_url(url: Optional[str]) -> Optional[str]:
    """Drop a query string that carries credentials"""
    if not url or "?" not in url:
        return url
    if any(marker in url for marker in _SENSITIVE_QUERY_MARKERS):
        return url[:url.index("?")] + "?" + MASK
    return url
