"""
Input sanitization utilities for API payloads.
Provides functions to clean free-text labels before they are stored
on audit records.
"""

import re
from typing import Optional

_CONTROL_CHARS = re.compile(r'[\x00-\x1F\x7F]')


def sanitize_string(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    value = _CONTROL_CHARS.sub('', value)
    # Escape HTML
    value = value.replace('<', '&lt;').replace('>', '&gt;')
    if max_length is not None:
        value = value[:max_length]
    return value
