from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import Card
from .errors import Conflict


class LabelCheck(str, Enum):
    UNIQUE = "unique"
    CONFLICT = "conflict"


def normalize_label(label: Optional[str]) -> str:
    return (label or "").strip().lower()


class LabelUniquenessIndex:
    """No two cards on one board may share a label (trimmed, case-insensitive).

    Empty labels are exempt so batch uploads can fill labels in later.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def labels_on(self, board_id: str, exclude_card_id: Optional[str] = None) -> Set[str]:
        stmt = select(Card.label).where(Card.board_id == board_id)
        if exclude_card_id is not None:
            stmt = stmt.where(Card.id != exclude_card_id)
        labels = {normalize_label(label) for label in self.session.execute(stmt).scalars()}
        labels.discard("")
        return labels

    def check_unique(self, board_id: str, label: Optional[str], exclude_card_id: Optional[str] = None) -> LabelCheck:
        candidate = normalize_label(label)
        if not candidate:
            return LabelCheck.UNIQUE
        if candidate in self.labels_on(board_id, exclude_card_id):
            return LabelCheck.CONFLICT
        return LabelCheck.UNIQUE

    def require_unique(self, board_id: str, label: Optional[str], exclude_card_id: Optional[str] = None) -> None:
        if self.check_unique(board_id, label, exclude_card_id) is LabelCheck.CONFLICT:
            raise Conflict(
                f'A card named "{label.strip()}" already exists on this board',
                {"label": label},
            )

    def require_unique_batch(self, board_id: str, labels: Iterable[Optional[str]]) -> None:
        """Check a batch against the board and against the rest of the batch."""
        existing = self.labels_on(board_id)
        seen: Set[str] = set()
        for label in labels:
            candidate = normalize_label(label)
            if not candidate:
                continue
            if candidate in existing:
                raise Conflict(
                    f'A card named "{label.strip()}" already exists on this board',
                    {"label": label},
                )
            if candidate in seen:
                raise Conflict(
                    f'The label "{label.strip()}" is used more than once in this request',
                    {"label": label},
                )
            seen.add(candidate)
