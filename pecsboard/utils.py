import uuid
from datetime import datetime, timedelta
from typing import Optional


def new_uuid() -> str:
    return str(uuid.uuid4())


def clean_text(value: Optional[str]) -> Optional[str]:
    """Strip ``value``; blank strings collapse to ``None``."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def normalize_category(value: Optional[str]) -> Optional[str]:
    """Title-case a free-text category: ``" fOOD "`` becomes ``"Food"``."""
    value = clean_text(value)
    if value is None:
        return None
    value = value.lower()
    return value[0].upper() + value[1:]


def seconds_until_next_day(now: datetime) -> int:
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, int((tomorrow - now).total_seconds()))
