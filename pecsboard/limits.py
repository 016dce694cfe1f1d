from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .config import DEFAULT_MAX_BOARDS, DEFAULT_MAX_CARDS, Settings
from .errors import Forbidden, ValidationError
from .storage import Storage


@dataclass(frozen=True)
class SettingSchema:
    label: str
    minimum: int
    maximum: int


ADJUSTABLE_SETTINGS: Dict[str, SettingSchema] = {
    "max_boards_per_user": SettingSchema("Max boards per user", 1, 1000),
    "max_cards_per_board": SettingSchema("Max cards per board", 1, 10000),
}


def _stored_limit(storage: Storage, key: str) -> Optional[int]:
    raw = storage.get_setting(key)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def max_boards_per_user(settings: Settings, storage: Storage) -> int:
    """Environment override, then the admin-editable setting, then the default."""
    if settings.max_boards_per_user is not None:
        return settings.max_boards_per_user
    return _stored_limit(storage, "max_boards_per_user") or DEFAULT_MAX_BOARDS


def max_cards_per_board(settings: Settings, storage: Storage) -> int:
    if settings.max_cards_per_board is not None:
        return settings.max_cards_per_board
    return _stored_limit(storage, "max_cards_per_board") or DEFAULT_MAX_CARDS


def require_board_capacity(settings: Settings, storage: Storage, user_id: str) -> None:
    limit = max_boards_per_user(settings, storage)
    if storage.count_boards_for_user(user_id) >= limit:
        raise Forbidden(f"Board limit reached ({limit} boards per user)", {"limit": limit})


def require_card_capacity(settings: Settings, storage: Storage, board_id: str, adding: int = 1) -> None:
    limit = max_cards_per_board(settings, storage)
    if storage.count_cards(board_id) + adding > limit:
        raise Forbidden(f"Card limit reached ({limit} cards per board)", {"limit": limit})


def validate_setting(key: str, value) -> int:
    schema = ADJUSTABLE_SETTINGS.get(key)
    if schema is None:
        raise ValidationError(f"Unknown setting: {key}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{schema.label} must be a whole number") from None
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"{schema.label} must be a whole number")
    if number < schema.minimum or number > schema.maximum:
        raise ValidationError(f"{schema.label} must be between {schema.minimum} and {schema.maximum}")
    return number
