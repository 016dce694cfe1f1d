from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import Card

logger = logging.getLogger("pecsboard.ordering")


@dataclass(frozen=True)
class ReorderResult:
    applied: bool
    reason: Optional[str] = None
    unknown_card_ids: tuple = ()
    failed_card_id: Optional[str] = None


class OrderingService:
    """Persists a board's card order as each card's index in the new sequence.

    The client reorders its view optimistically and reverts it when the
    result is not ``applied``. Each card is written in its own statement:
    when one write fails the others are still attempted and stay in place,
    and the result names the first failure.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def reorder(self, board_id: str, ordered_card_ids: Sequence[str]) -> ReorderResult:
        if len(set(ordered_card_ids)) != len(ordered_card_ids):
            return ReorderResult(False, reason="duplicate card ids")

        current = self._current_order(board_id)
        known = set(current)
        unknown = tuple(cid for cid in ordered_card_ids if cid not in known)
        if unknown:
            return ReorderResult(False, reason="cards do not belong to this board", unknown_card_ids=unknown)

        # Cards the client did not mention (added concurrently) keep their
        # relative order after the supplied ones.
        listed = set(ordered_card_ids)
        sequence = list(ordered_card_ids) + [cid for cid in current if cid not in listed]

        failed: Optional[str] = None
        for position, card_id in enumerate(sequence):
            if not self._write_order(board_id, card_id, position) and failed is None:
                failed = card_id
        if failed is not None:
            logger.warning("reorder of board %s incomplete, first failure on card %s", board_id, failed)
            return ReorderResult(False, reason="could not save the new order", failed_card_id=failed)
        return ReorderResult(True)

    def _current_order(self, board_id: str) -> List[str]:
        stmt = select(Card.id).where(Card.board_id == board_id).order_by(Card.order, Card.id)
        return list(self.session.execute(stmt).scalars())

    def _write_order(self, board_id: str, card_id: str, position: int) -> bool:
        stmt = update(Card).where(Card.id == card_id, Card.board_id == board_id).values(order=position)
        try:
            updated = self.session.execute(stmt).rowcount
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("failed to store order %d for card %s", position, card_id, exc_info=True)
            return False
        return updated == 1
