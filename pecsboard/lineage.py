"""Template/inheritance classification shared by every write path.

Boards whose id starts with ``SYSTEM_BOARD_PREFIX`` are platform-owned
starter templates. Cards carry their lineage in ``template_key`` (part of a
system template) and ``source_board_id`` (copied from someone else's board).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

SYSTEM_BOARD_PREFIX = "starter-"
TEMPLATE_CARD_PREFIX = "sbp-"


class Lineage(str, Enum):
    ORDINARY = "ordinary"
    TEMPLATE_ORIGIN = "template_origin"
    INHERITED = "inherited"


class Mutation(str, Enum):
    EDIT = "edit"
    MOVE = "move"
    DELETE = "delete"


def classify(card: Any) -> Lineage:
    if getattr(card, "template_key", None):
        return Lineage.TEMPLATE_ORIGIN
    if getattr(card, "source_board_id", None):
        return Lineage.INHERITED
    return Lineage.ORDINARY


def is_system_template(board: Union[str, Any]) -> bool:
    board_id = board if isinstance(board, str) else board.id
    return board_id.startswith(SYSTEM_BOARD_PREFIX)


def is_template_card(card: Any) -> bool:
    # Seeded template cards may predate template_key, the id prefix still marks them.
    return classify(card) is Lineage.TEMPLATE_ORIGIN or card.id.startswith(TEMPLATE_CARD_PREFIX)


def card_mutation_permitted(card: Any, mutation: Mutation) -> bool:
    if is_template_card(card):
        return False
    if classify(card) is Lineage.INHERITED:
        return mutation is not Mutation.EDIT
    return True


def board_mutation_permitted(board: Union[str, Any]) -> bool:
    return not is_system_template(board)
