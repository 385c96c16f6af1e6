import re
from typing import Any, Optional

from ..errors import ValidationError

UUID_V4_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def ensure_positive_int(value: Any, field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if number <= 0:
        raise ValidationError(f"{field} must be > 0")
    return number


def is_uuid_v4(value: Optional[str]) -> bool:
    return bool(value) and bool(UUID_V4_RE.match(value))


def normalize_email(value: Optional[str]) -> Optional[str]:
    text = (value or "").strip().lower()
    if not EMAIL_RE.match(text):
        return None
    return text
