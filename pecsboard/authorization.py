from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .auth import Authorizer, Caller
from .errors import Forbidden, Unauthenticated
from .lineage import Mutation, board_mutation_permitted, card_mutation_permitted, is_template_card

logger = logging.getLogger("pecsboard.authorization")


class Action(str, Enum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Decision:
    permitted: bool
    reason: Optional[str] = None

    @property
    def unauthenticated(self) -> bool:
        return self.reason == "unauthenticated"


PERMIT = Decision(True)


class AuthorizationResolver:
    """Decides whether a caller may read or mutate a board or one of its cards.

    Built once per request: the admin lookup is the expensive path, so it
    runs only after the ownership check failed and its answer is cached for
    the rest of the request.
    """

    def __init__(self, authorizer: Authorizer) -> None:
        self.authorizer = authorizer
        self._admin_cache: Dict[str, bool] = {}

    def is_admin(self, caller: Caller) -> bool:
        if caller.user_id is None:
            return False
        if caller.user_id not in self._admin_cache:
            self._admin_cache[caller.user_id] = self.authorizer.is_admin(caller.user_id, caller.email)
        return self._admin_cache[caller.user_id]

    def resolve(
        self,
        caller: Caller,
        board: Any,
        action: Action,
        card: Any = None,
        mutation: Optional[Mutation] = None,
    ) -> Decision:
        if action is Action.READ:
            if board.is_public:
                return PERMIT
            if caller.is_anonymous:
                return Decision(False, "unauthenticated")
            return self._owner_or_admin(caller, board)

        if caller.is_anonymous:
            return Decision(False, "unauthenticated")
        if not board_mutation_permitted(board):
            return Decision(False, "template boards cannot be modified")
        if card is not None:
            if mutation is None:
                mutation = Mutation.DELETE if action is Action.DELETE else Mutation.EDIT
            if not card_mutation_permitted(card, mutation):
                if is_template_card(card):
                    return Decision(False, "template cards cannot be modified")
                return Decision(False, "inherited cards cannot be edited")
        return self._owner_or_admin(caller, board)

    def require(
        self,
        caller: Caller,
        board: Any,
        action: Action,
        card: Any = None,
        mutation: Optional[Mutation] = None,
    ) -> None:
        decision = self.resolve(caller, board, action, card=card, mutation=mutation)
        if decision.permitted:
            return
        logger.info(
            "denied %s on board %s for %s: %s",
            action.value,
            board.id,
            caller.user_id or "anonymous",
            decision.reason,
        )
        raise_for(decision)

    def require_admin(self, caller: Caller) -> None:
        if caller.is_anonymous:
            raise Unauthenticated("unauthorized")
        if not self.is_admin(caller):
            raise Forbidden("admin access required")

    def _owner_or_admin(self, caller: Caller, board: Any) -> Decision:
        if board.user_id == caller.user_id:
            return PERMIT
        if self.is_admin(caller):
            return PERMIT
        return Decision(False, "not the board owner")


def raise_for(decision: Decision) -> None:
    if decision.unauthenticated:
        raise Unauthenticated("unauthorized")
    raise Forbidden(decision.reason or "forbidden")
