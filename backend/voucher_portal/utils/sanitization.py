"""
Input sanitization utilities for API payloads.
Provides functions to clean and validate string inputs.
"""

import re
from typing import Optional


def sanitize_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    # Remove leading/trailing whitespace and control characters
    value = value.strip()
    value = re.sub(r'[\x00-\x1F\x7F]', '', value)
    # Escape HTML
    value = value.replace('<', '&lt;').replace('>', '&gt;')
    return value


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Format a 10-digit US number as ``555-555-5555``; other input is returned stripped."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"{digits[0:3]}-{digits[3:6]}-{digits[6:]}"
    return value.strip() or None


def safe_filename(filename: str) -> str:
    """Remove potentially dangerous characters from an uploaded filename."""
    keepchars = {"-", "_", "."}
    cleaned = "".join(c for c in filename if c.isalnum() or c in keepchars)
    return cleaned.lstrip(".") or "document"
