from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

import httpx
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from .auth import Caller
from .authorization import Action, AuthorizationResolver, Decision
from .blobstore import BlobStore, owned_media
from .db import Board, Card

logger = logging.getLogger("pecsboard.cascade")

Scheduler = Callable[..., Any]


class DeletionOutcome(str, Enum):
    DELETED = "deleted"
    DENIED = "denied"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class DeletionResult:
    outcome: DeletionOutcome
    decision: Optional[Decision] = None
    media: tuple = ()


class CascadeDeletionCoordinator:
    """Deletes boards and cards, then cleans up their media off the request path.

    Rows go first: the cards of a board disappear with it through the
    ``ON DELETE CASCADE`` foreign key. Media URLs collected beforehand are
    handed to ``schedule`` (a background task queue) and deleted from the
    blob store later. Cleanup failures and timeouts are logged and dropped.
    """

    def __init__(
        self,
        session: Session,
        resolver: AuthorizationResolver,
        blob_store: BlobStore,
        schedule: Scheduler,
        host_suffix: str,
    ) -> None:
        self.session = session
        self.resolver = resolver
        self.blob_store = blob_store
        self.schedule = schedule
        self.host_suffix = host_suffix

    def delete_board(self, board_id: str, caller: Caller) -> DeletionResult:
        board = self.session.get(Board, board_id)
        if board is None:
            return DeletionResult(DeletionOutcome.NOT_FOUND)
        decision = self.resolver.resolve(caller, board, Action.DELETE)
        if not decision.permitted:
            return DeletionResult(DeletionOutcome.DENIED, decision)

        rows = self.session.execute(
            select(Card.image_url, Card.audio_url).where(Card.board_id == board_id)
        ).all()
        media = owned_media(itertools.chain.from_iterable(rows), self.host_suffix)

        self.session.execute(delete(Board).where(Board.id == board_id))
        self.session.commit()
        logger.info("deleted board %s (%d media references)", board_id, len(media))

        orphaned = self.schedule_media_cleanup(media)
        return DeletionResult(DeletionOutcome.DELETED, media=tuple(orphaned))

    def delete_card(self, card_id: str, caller: Caller) -> DeletionResult:
        card = self.session.get(Card, card_id)
        if card is None:
            return DeletionResult(DeletionOutcome.NOT_FOUND)
        board = self.session.get(Board, card.board_id)
        if board is None:
            return DeletionResult(DeletionOutcome.NOT_FOUND)
        decision = self.resolver.resolve(caller, board, Action.DELETE, card=card)
        if not decision.permitted:
            return DeletionResult(DeletionOutcome.DENIED, decision)

        media = owned_media([card.image_url, card.audio_url], self.host_suffix)
        self.session.execute(delete(Card).where(Card.id == card_id))
        self.session.commit()

        orphaned = self.schedule_media_cleanup(media)
        return DeletionResult(DeletionOutcome.DELETED, media=tuple(orphaned))

    def schedule_media_cleanup(self, media: Sequence[str]) -> List[str]:
        """Queue deletion of the media no remaining card still points at."""
        if not media:
            return []
        still_used = self._still_referenced(media)
        orphaned = [url for url in media if url not in still_used]
        if orphaned:
            self.schedule(self.cleanup_media, orphaned)
        return orphaned

    def cleanup_media(self, urls: Sequence[str]) -> None:
        try:
            self.blob_store.delete(urls)
        except httpx.TimeoutException:
            logger.warning("blob cleanup timed out, abandoning %d files", len(urls))
        except Exception:
            logger.error("failed to clean up media %s", list(urls), exc_info=True)
        else:
            logger.info("cleaned up %d media files", len(urls))

    def _still_referenced(self, media: Sequence[str]) -> set:
        # Copied cards share media URLs with the card they were copied from.
        rows = self.session.execute(
            select(Card.image_url, Card.audio_url).where(
                or_(Card.image_url.in_(media), Card.audio_url.in_(media))
            )
        ).all()
        return set(itertools.chain.from_iterable(rows)) & set(media)
