# core/sanitizer.py
"""
Free-text sanitization applied after validation

This reduces the blast radius of malformed input such as contact-form
messages. It is not an SQL injection defense: the persistence layer always
binds parameters through SQLAlchemy.
"""

import re
from typing import Any, Iterable, Mapping, Optional

import bleach

DEFAULT_SQL_KEYWORDS = (
    'SELECT', 'INSERT', 'UPDATE', 'DELETE', 'DROP',
    'CREATE', 'ALTER', 'EXEC', 'UNION', 'SCRIPT'
)

_UNSAFE_CHARACTERS = re.compile(r'[\'";\\]')
_LINE_COMMENT = re.compile(r'--')
_BLOCK_COMMENT = re.compile(r'/\*[\s\S]*?\*/')


def keyword_pattern(keywords: Iterable[str]) -> re.Pattern:
    """Whole-word, case-insensitive alternation of ``keywords``"""
    alternation = '|'.join(re.escape(k) for k in keywords)
    return re.compile(rf'\b(?:{alternation})\b', re.IGNORECASE)


_DEFAULT_KEYWORDS = keyword_pattern(DEFAULT_SQL_KEYWORDS)


def sanitize_input(value: Any, keywords: Optional[re.Pattern] = None) -> Any:
    """
    Strip quotes, semicolons, backslashes, SQL comments and SQL keywords

    Non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value

    keywords = keywords or _DEFAULT_KEYWORDS

    cleaned = _UNSAFE_CHARACTERS.sub('', value)
    cleaned = _LINE_COMMENT.sub('', cleaned)
    cleaned = _BLOCK_COMMENT.sub('', cleaned)

    # Removing one keyword can join its neighbours into another
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = keywords.sub('', cleaned)

    return cleaned.strip()


def sanitize_payload(payload: Mapping[str, Any],
                     keywords: Optional[re.Pattern] = None) -> dict:
    """Apply sanitize_input to every string in ``payload`` (lists included)"""
    sanitized = {}
    for name, value in payload.items():
        if isinstance(value, list):
            sanitized[name] = [sanitize_input(item, keywords) for item in value]
        else:
            sanitized[name] = sanitize_input(value, keywords)
    return sanitized


def strip_markup(value: Any) -> Any:
    """Remove every HTML tag before text is embedded in an email body"""
    if not isinstance(value, str):
        return value
    return bleach.clean(value, tags=set(), attributes={}, strip=True)
