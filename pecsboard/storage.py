from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import AppSetting, Board, BoardComment, BoardLike, Card
from .lineage import is_system_template
from .utils import clean_text, new_uuid, normalize_category


class Storage:
    """Database access for boards, cards and their social data.

    Every public write method is one unit of work and commits on return.
    Permission and consistency checks happen before these are called.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # === Board operations ===
    def create_board(self, owner: str, name: str, description: Optional[str], is_public: bool = False) -> Board:
        board = Board(
            id=new_uuid(),
            user_id=owner,
            name=name.strip(),
            description=clean_text(description),
            is_public=is_public,
            email_notifications_enabled=True,
            created_at=datetime.now(timezone.utc),
        )
        self.session.add(board)
        self.session.commit()
        return board

    def get_board(self, board_id: str) -> Optional[Board]:
        return self.session.get(Board, board_id)

    def list_boards_for_user(self, user_id: str) -> List[Board]:
        stmt = select(Board).where(Board.user_id == user_id).order_by(Board.created_at.desc())
        return list(self.session.execute(stmt).scalars())

    def count_boards_for_user(self, user_id: str) -> int:
        stmt = select(func.count(Board.id)).where(Board.user_id == user_id)
        return self.session.execute(stmt).scalar_one()

    def list_public_boards(self) -> List[Board]:
        stmt = select(Board).where(Board.is_public.is_(True)).order_by(Board.created_at.desc())
        return list(self.session.execute(stmt).scalars())

    def save(self, *objects) -> None:
        for obj in objects:
            self.session.add(obj)
        self.session.commit()

    def clone_board(self, source: Board, owner: str, name: str) -> tuple[Board, int]:
        """Copy ``source`` and its cards into a new private board owned by ``owner``."""
        board = Board(
            id=new_uuid(),
            user_id=owner,
            name=name.strip(),
            description=f"Based on {source.name}",
            is_public=False,
            email_notifications_enabled=True,
            created_at=datetime.now(timezone.utc),
        )
        self.session.add(board)
        self.session.flush()
        inherit = source.user_id != owner or is_system_template(source)
        cards = self.list_cards(source.id)
        for position, card in enumerate(cards):
            self.session.add(copy_card(card, board.id, source.id, inherit, position))
        self.session.commit()
        return board, len(cards)

    # === Card operations ===
    def list_cards(self, board_id: str) -> List[Card]:
        stmt = select(Card).where(Card.board_id == board_id).order_by(Card.order, Card.id)
        return list(self.session.execute(stmt).scalars())

    def get_cards(self, board_id: str, card_ids: Sequence[str]) -> List[Card]:
        stmt = select(Card).where(Card.board_id == board_id, Card.id.in_(card_ids))
        found = {card.id: card for card in self.session.execute(stmt).scalars()}
        return [found[cid] for cid in card_ids if cid in found]

    def get_card(self, card_id: str) -> Optional[Card]:
        return self.session.get(Card, card_id)

    def count_cards(self, board_id: str) -> int:
        stmt = select(func.count(Card.id)).where(Card.board_id == board_id)
        return self.session.execute(stmt).scalar_one()

    def next_order(self, board_id: str) -> int:
        stmt = select(func.max(Card.order)).where(Card.board_id == board_id)
        highest = self.session.execute(stmt).scalar_one()
        return 0 if highest is None else highest + 1

    def create_card(
        self,
        board_id: str,
        label: Optional[str],
        image_url: Optional[str],
        audio_url: Optional[str],
        color: Optional[str],
        category: Optional[str],
    ) -> Card:
        card = Card(
            id=new_uuid(),
            board_id=board_id,
            label=(label or "").strip(),
            image_url=image_url,
            audio_url=audio_url,
            color=color,
            category=normalize_category(category),
            order=self.next_order(board_id),
        )
        self.session.add(card)
        self.session.commit()
        return card

    def add_cards(self, board_id: str, items: Iterable[dict]) -> List[Card]:
        """Insert several cards in a single transaction, appended in the given order."""
        start = self.next_order(board_id)
        cards = []
        for offset, item in enumerate(items):
            cards.append(
                Card(
                    id=new_uuid(),
                    board_id=board_id,
                    label=(item.get("label") or "").strip(),
                    image_url=item.get("image_url"),
                    audio_url=item.get("audio_url"),
                    color=item.get("color"),
                    category=normalize_category(item.get("category")),
                    order=start + offset,
                )
            )
        self.session.add_all(cards)
        self.session.commit()
        return cards

    def import_cards(self, source: Board, cards: Sequence[Card], board_id: str, owner: str) -> List[Card]:
        start = self.next_order(board_id)
        inherit = source.user_id != owner or is_system_template(source)
        copies = [copy_card(card, board_id, source.id, inherit, start + i) for i, card in enumerate(cards)]
        self.session.add_all(copies)
        self.session.commit()
        return copies

    # === Likes ===
    def like(self, board_id: str, user_id: str) -> None:
        if self.is_liked(board_id, user_id):
            return
        self.session.add(BoardLike(id=new_uuid(), board_id=board_id, user_id=user_id))
        try:
            self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent like from the same user.
            self.session.rollback()

    def unlike(self, board_id: str, user_id: str) -> None:
        self.session.execute(delete(BoardLike).where(BoardLike.board_id == board_id, BoardLike.user_id == user_id))
        self.session.commit()

    def is_liked(self, board_id: str, user_id: Optional[str]) -> bool:
        if user_id is None:
            return False
        stmt = select(BoardLike.id).where(BoardLike.board_id == board_id, BoardLike.user_id == user_id)
        return self.session.execute(stmt).first() is not None

    def like_count(self, board_id: str) -> int:
        stmt = select(func.count(BoardLike.id)).where(BoardLike.board_id == board_id)
        return self.session.execute(stmt).scalar_one()

    def counts_by_board(self, model, board_ids: Sequence[str]) -> Dict[str, int]:
        if not board_ids:
            return {}
        stmt = (
            select(model.board_id, func.count(model.id))
            .where(model.board_id.in_(board_ids))
            .group_by(model.board_id)
        )
        return dict(self.session.execute(stmt).all())

    def liked_board_ids(self, user_id: Optional[str], board_ids: Sequence[str]) -> set:
        if user_id is None or not board_ids:
            return set()
        stmt = select(BoardLike.board_id).where(BoardLike.user_id == user_id, BoardLike.board_id.in_(board_ids))
        return set(self.session.execute(stmt).scalars())

    # === Comments ===
    def add_comment(self, board_id: str, user_id: str, content: str, commenter_name: str) -> BoardComment:
        now = datetime.now(timezone.utc)
        comment = BoardComment(
            id=new_uuid(),
            board_id=board_id,
            user_id=user_id,
            content=content.strip(),
            commenter_name=commenter_name,
            created_at=now,
            updated_at=now,
            is_edited=False,
        )
        self.session.add(comment)
        self.session.commit()
        return comment

    def list_comments(self, board_id: str) -> List[BoardComment]:
        stmt = select(BoardComment).where(BoardComment.board_id == board_id).order_by(BoardComment.created_at)
        return list(self.session.execute(stmt).scalars())

    def get_own_comment(self, comment_id: str, user_id: str) -> Optional[BoardComment]:
        comment = self.session.get(BoardComment, comment_id)
        if comment is None or comment.user_id != user_id:
            return None
        return comment

    def update_comment(self, comment: BoardComment, content: str) -> BoardComment:
        comment.content = content.strip()
        comment.is_edited = True
        comment.updated_at = datetime.now(timezone.utc)
        self.session.commit()
        return comment

    def delete_comment(self, comment: BoardComment) -> None:
        self.session.delete(comment)
        self.session.commit()

    # === App settings ===
    def get_setting(self, key: str) -> Optional[str]:
        setting = self.session.get(AppSetting, key)
        return setting.value if setting else None

    def list_settings(self) -> Dict[str, str]:
        return {s.key: s.value for s in self.session.execute(select(AppSetting)).scalars()}

    def set_setting(self, key: str, value: str) -> None:
        setting = self.session.get(AppSetting, key)
        if setting is None:
            self.session.add(AppSetting(key=key, value=value))
        else:
            setting.value = value
        self.session.commit()


def copy_card(card: Card, board_id: str, source_board_id: str, inherit: bool, order: int) -> Card:
    """Copy ``card`` onto ``board_id``.

    Template cards stay template cards. Other cards copied from a board the
    new owner does not own become inherited from ``source_board_id``.
    """
    copy = Card(
        id=new_uuid(),
        board_id=board_id,
        label=card.label,
        image_url=card.image_url,
        audio_url=card.audio_url,
        color=card.color,
        category=card.category,
        order=order,
        template_key=card.template_key,
        source_board_id=card.source_board_id,
    )
    if card.template_key:
        copy.source_board_id = None
    elif inherit:
        copy.source_board_id = card.source_board_id or source_board_id
    return copy
