from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request, Response
from sqlalchemy.orm import Session

from .admission import AdmissionController, CounterStore, SqlCounterStore
from .auth import Authorizer, Caller, SettingsAuthorizer, get_caller
from .authorization import Action, AuthorizationResolver, raise_for
from .blobstore import BlobStore, HttpBlobStore, NullBlobStore
from .cascade import CascadeDeletionCoordinator, DeletionOutcome, DeletionResult
from .config import Settings, configure_logging, load_settings
from .db import Board, BoardComment, BoardLike, Card, init_db, make_engine, make_session_factory, now_utc
from .errors import DependencyUnavailable, NotFound, Unauthenticated, ValidationError, register_error_handlers
from .labels import LabelUniquenessIndex
from .limits import (
    ADJUSTABLE_SETTINGS,
    require_board_capacity,
    require_card_capacity,
    validate_setting,
)
from .lineage import Mutation, classify, is_system_template
from .ordering import OrderingService
from .schemas import (
    BatchCardsIn,
    BoardIn,
    BoardOut,
    BoardPatch,
    BoardView,
    CardIn,
    CardOut,
    CardPatch,
    CloneIn,
    CloneOut,
    CommentIn,
    CommentOut,
    Health,
    ImportCardsIn,
    LikeOut,
    PublicBoardOut,
    ReorderIn,
    SettingIn,
    Version,
)
from .storage import Storage
from .utils import normalize_category

VERSION = "1.0.0"

logger = logging.getLogger("pecsboard.api")

router = APIRouter(prefix="/v1")


# === Helpers ===


def board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        userId=board.user_id,
        name=board.name,
        description=board.description,
        isPublic=board.is_public,
        emailNotificationsEnabled=board.email_notifications_enabled,
        isTemplate=is_system_template(board),
        createdAt=board.created_at,
    )


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        boardId=card.board_id,
        label=card.label,
        imageUrl=card.image_url,
        audioUrl=card.audio_url,
        color=card.color,
        category=card.category,
        order=card.order,
        sourceBoardId=card.source_board_id,
        templateKey=card.template_key,
        lineage=classify(card).value,
    )


def comment_out(comment: BoardComment) -> CommentOut:
    return CommentOut(
        id=comment.id,
        boardId=comment.board_id,
        userId=comment.user_id,
        content=comment.content,
        commenterName=comment.commenter_name,
        createdAt=comment.created_at,
        updatedAt=comment.updated_at,
        isEdited=comment.is_edited,
    )


def load_board(storage: Storage, board_id: str) -> Board:
    board = storage.get_board(board_id)
    if board is None:
        raise NotFound("Board not found")
    return board


def capture_owner_email(board: Board, caller: Caller) -> None:
    # Notification address is only known once the owner first publishes.
    if board.owner_email is None and caller.email and caller.user_id == board.user_id:
        board.owner_email = caller.email


def raise_for_deletion(result: DeletionResult, what: str) -> None:
    if result.outcome is DeletionOutcome.NOT_FOUND:
        raise NotFound(f"{what} not found")
    if result.outcome is DeletionOutcome.DENIED:
        raise_for(result.decision)


CARD_FIELDS = {
    "label": "label",
    "imageUrl": "image_url",
    "audioUrl": "audio_url",
    "color": "color",
    "category": "category",
}


def content_changes(card: Card, payload: CardPatch) -> dict:
    """Return the content fields ``payload`` actually changes, keyed by column."""
    changes = {}
    for name, attr in CARD_FIELDS.items():
        if name not in payload.model_fields_set:
            continue
        value = getattr(payload, name)
        if name == "label":
            value = (value or "").strip()
        elif name == "category":
            value = normalize_category(value)
        if value != getattr(card, attr):
            changes[attr] = value
    return changes


# === Dependencies ===


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session(request: Request) -> Iterator[Session]:
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_storage(session: Session = Depends(get_session)) -> Storage:
    return Storage(session)


def get_resolver(request: Request) -> AuthorizationResolver:
    return AuthorizationResolver(request.app.state.authorizer)


def get_coordinator(
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    resolver: AuthorizationResolver = Depends(get_resolver),
) -> CascadeDeletionCoordinator:
    return CascadeDeletionCoordinator(
        session,
        resolver,
        request.app.state.blob_store,
        background_tasks.add_task,
        request.app.state.settings.blob_host_suffix,
    )


def require_caller(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.is_anonymous:
        raise Unauthenticated("unauthorized")
    return caller


def admitted(endpoint: str) -> Callable[..., Caller]:
    """Dependency that resolves the caller and runs admission control for ``endpoint``."""

    def dependency(
        request: Request,
        background_tasks: BackgroundTasks,
        caller: Caller = Depends(require_caller),
    ) -> Caller:
        state = request.app.state
        state.admission.enforce(
            caller.user_id,
            endpoint,
            state.settings.limit_for(endpoint),
            schedule=background_tasks.add_task,
        )
        return caller

    return dependency


# === Health & metadata ===


@router.get("/health", response_model=Health)
def health() -> Health:
    return Health()


@router.get("/version", response_model=Version)
def version() -> Version:
    return Version(version=VERSION)


# === Board endpoints ===


@router.post("/boards", response_model=BoardOut, status_code=201)
def create_board(
    payload: BoardIn,
    caller: Caller = Depends(admitted("create-board")),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    require_board_capacity(settings, storage, caller.user_id)
    board = storage.create_board(caller.user_id, payload.name, payload.description, payload.isPublic)
    if board.is_public:
        capture_owner_email(board, caller)
        storage.save(board)
    return board_out(board)


@router.get("/boards", response_model=dict)
def list_boards(caller: Caller = Depends(require_caller), storage: Storage = Depends(get_storage)):
    boards = [board_out(b) for b in storage.list_boards_for_user(caller.user_id)]
    return {"boards": boards}


@router.get("/boards/public", response_model=list[PublicBoardOut])
def list_public_boards(caller: Caller = Depends(get_caller), storage: Storage = Depends(get_storage)):
    boards = storage.list_public_boards()
    ids = [b.id for b in boards]
    likes = storage.counts_by_board(BoardLike, ids)
    comments = storage.counts_by_board(BoardComment, ids)
    cards = storage.counts_by_board(Card, ids)
    liked = storage.liked_board_ids(caller.user_id, ids)
    return [
        PublicBoardOut(
            **board_out(b).model_dump(),
            likeCount=likes.get(b.id, 0),
            commentCount=comments.get(b.id, 0),
            cardCount=cards.get(b.id, 0),
            isLikedByUser=b.id in liked,
        )
        for b in boards
    ]


@router.get("/boards/{board_id}", response_model=BoardView)
def get_board(
    board_id: str,
    caller: Caller = Depends(get_caller),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.READ)
    return BoardView(board=board_out(board), cards=[card_out(c) for c in storage.list_cards(board.id)])


@router.patch("/boards/{board_id}", response_model=BoardOut)
def update_board(
    board_id: str,
    payload: BoardPatch,
    caller: Caller = Depends(admitted("update-board")),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.UPDATE)
    if payload.name is not None:
        if not payload.name.strip():
            raise ValidationError("Board name must not be blank")
        board.name = payload.name.strip()
    if payload.description is not None:
        board.description = payload.description.strip() or None
    if payload.isPublic is not None:
        if payload.isPublic and not board.is_public:
            capture_owner_email(board, caller)
        board.is_public = payload.isPublic
    if payload.emailNotificationsEnabled is not None:
        board.email_notifications_enabled = payload.emailNotificationsEnabled
    storage.save(board)
    return board_out(board)


@router.delete("/boards/{board_id}", status_code=204)
def delete_board(
    board_id: str,
    caller: Caller = Depends(admitted("delete-board")),
    coordinator: CascadeDeletionCoordinator = Depends(get_coordinator),
):
    result = coordinator.delete_board(board_id, caller)
    raise_for_deletion(result, "Board")
    return Response(status_code=204)


@router.post("/boards/{board_id}/clone", response_model=CloneOut, status_code=201)
def clone_board(
    board_id: str,
    payload: CloneIn,
    caller: Caller = Depends(admitted("clone-board")),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
    settings: Settings = Depends(get_settings),
):
    source = load_board(storage, board_id)
    resolver.require(caller, source, Action.READ)
    require_board_capacity(settings, storage, caller.user_id)
    board, card_count = storage.clone_board(source, caller.user_id, payload.name)
    logger.info("cloned board %s into %s for %s (%d cards)", source.id, board.id, caller.user_id, card_count)
    return CloneOut(board=board_out(board), cardCount=card_count)


# === Card endpoints ===


@router.post("/boards/{board_id}/cards", response_model=CardOut, status_code=201)
def create_card(
    board_id: str,
    payload: CardIn,
    caller: Caller = Depends(admitted("create-card")),
    session: Session = Depends(get_session),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
    settings: Settings = Depends(get_settings),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.UPDATE)
    LabelUniquenessIndex(session).require_unique(board.id, payload.label)
    require_card_capacity(settings, storage, board.id)
    card = storage.create_card(
        board.id,
        payload.label,
        payload.imageUrl,
        payload.audioUrl,
        payload.color,
        payload.category,
    )
    return card_out(card)


@router.post("/boards/{board_id}/cards/batch", response_model=list[CardOut], status_code=201)
def batch_create_cards(
    board_id: str,
    payload: BatchCardsIn,
    caller: Caller = Depends(admitted("batch-cards")),
    session: Session = Depends(get_session),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
    settings: Settings = Depends(get_settings),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.UPDATE)
    LabelUniquenessIndex(session).require_unique_batch(board.id, [c.label for c in payload.cards])
    require_card_capacity(settings, storage, board.id, adding=len(payload.cards))
    cards = storage.add_cards(
        board.id,
        [
            {
                "label": c.label,
                "image_url": c.imageUrl,
                "audio_url": c.audioUrl,
                "color": c.color,
                "category": c.category,
            }
            for c in payload.cards
        ],
    )
    return [card_out(c) for c in cards]


@router.post("/boards/{board_id}/cards/import", response_model=list[CardOut], status_code=201)
def import_cards(
    board_id: str,
    payload: ImportCardsIn,
    caller: Caller = Depends(admitted("import-cards")),
    session: Session = Depends(get_session),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
    settings: Settings = Depends(get_settings),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.UPDATE)
    source = load_board(storage, payload.sourceBoardId)
    resolver.require(caller, source, Action.READ)
    if len(set(payload.cardIds)) != len(payload.cardIds):
        raise ValidationError("duplicate card ids")
    cards = storage.get_cards(source.id, payload.cardIds)
    if len(cards) != len(payload.cardIds):
        found = {c.id for c in cards}
        missing = [cid for cid in payload.cardIds if cid not in found]
        raise ValidationError("cards do not belong to the source board", {"unknownCardIds": missing})
    LabelUniquenessIndex(session).require_unique_batch(board.id, [c.label for c in cards])
    require_card_capacity(settings, storage, board.id, adding=len(cards))
    copies = storage.import_cards(source, cards, board.id, caller.user_id)
    return [card_out(c) for c in copies]


@router.put("/boards/{board_id}/cards/order", response_model=list[CardOut])
def reorder_cards(
    board_id: str,
    payload: ReorderIn,
    caller: Caller = Depends(admitted("reorder-cards")),
    session: Session = Depends(get_session),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.UPDATE)
    result = OrderingService(session).reorder(board.id, payload.cardIds)
    if not result.applied:
        if result.failed_card_id is not None:
            raise DependencyUnavailable(result.reason, {"failedCardId": result.failed_card_id})
        raise ValidationError(result.reason, {"unknownCardIds": list(result.unknown_card_ids)})
    return [card_out(c) for c in storage.list_cards(board.id)]


@router.patch("/cards/{card_id}", response_model=CardOut)
def update_card(
    card_id: str,
    payload: CardPatch,
    caller: Caller = Depends(admitted("update-card")),
    session: Session = Depends(get_session),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
    settings: Settings = Depends(get_settings),
):
    card = storage.get_card(card_id)
    if card is None:
        raise NotFound("Card not found")
    board = load_board(storage, card.board_id)
    changes = content_changes(card, payload)
    moving = payload.boardId is not None and payload.boardId != card.board_id
    mutation = Mutation.EDIT if changes else Mutation.MOVE
    resolver.require(caller, board, Action.UPDATE, card=card, mutation=mutation)

    target_board_id = card.board_id
    if moving:
        destination = load_board(storage, payload.boardId)
        resolver.require(caller, destination, Action.UPDATE)
        require_card_capacity(settings, storage, destination.id)
        target_board_id = destination.id
    if moving or "label" in changes:
        label = changes.get("label", card.label)
        LabelUniquenessIndex(session).require_unique(target_board_id, label, exclude_card_id=card.id)

    for attr, value in changes.items():
        setattr(card, attr, value)
    if moving:
        card.order = storage.next_order(target_board_id)
        card.board_id = target_board_id
    storage.save(card)
    return card_out(card)


@router.delete("/cards/{card_id}", status_code=204)
def delete_card(
    card_id: str,
    caller: Caller = Depends(admitted("delete-card")),
    coordinator: CascadeDeletionCoordinator = Depends(get_coordinator),
):
    result = coordinator.delete_card(card_id, caller)
    raise_for_deletion(result, "Card")
    return Response(status_code=204)


# === Likes ===


@router.get("/boards/{board_id}/like", response_model=LikeOut)
def like_status(
    board_id: str,
    caller: Caller = Depends(get_caller),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.READ)
    return LikeOut(liked=storage.is_liked(board.id, caller.user_id), likeCount=storage.like_count(board.id))


@router.post("/boards/{board_id}/like", response_model=LikeOut)
def like_board(
    board_id: str,
    caller: Caller = Depends(admitted("like")),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.READ)
    storage.like(board.id, caller.user_id)
    return LikeOut(liked=True, likeCount=storage.like_count(board.id))


@router.delete("/boards/{board_id}/like", response_model=LikeOut)
def unlike_board(
    board_id: str,
    caller: Caller = Depends(admitted("like")),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.READ)
    storage.unlike(board.id, caller.user_id)
    return LikeOut(liked=False, likeCount=storage.like_count(board.id))


# === Comments ===


@router.get("/boards/{board_id}/comments", response_model=list[CommentOut])
def list_comments(
    board_id: str,
    caller: Caller = Depends(get_caller),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.READ)
    return [comment_out(c) for c in storage.list_comments(board.id)]


@router.post("/boards/{board_id}/comments", response_model=CommentOut, status_code=201)
def add_comment(
    board_id: str,
    payload: CommentIn,
    caller: Caller = Depends(admitted("comment")),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    board = load_board(storage, board_id)
    resolver.require(caller, board, Action.READ)
    comment = storage.add_comment(board.id, caller.user_id, payload.content, caller.display_name or "Anonymous")
    return comment_out(comment)


@router.patch("/comments/{comment_id}", response_model=CommentOut)
def update_comment(
    comment_id: str,
    payload: CommentIn,
    caller: Caller = Depends(admitted("comment")),
    storage: Storage = Depends(get_storage),
):
    comment = storage.get_own_comment(comment_id, caller.user_id)
    if comment is None:
        raise NotFound("Comment not found")
    return comment_out(storage.update_comment(comment, payload.content))


@router.delete("/comments/{comment_id}", status_code=204)
def delete_comment(
    comment_id: str,
    caller: Caller = Depends(admitted("comment")),
    storage: Storage = Depends(get_storage),
):
    comment = storage.get_own_comment(comment_id, caller.user_id)
    if comment is None:
        raise NotFound("Comment not found")
    storage.delete_comment(comment)
    return Response(status_code=204)


# === Admin ===


@router.get("/admin/settings", response_model=dict)
def get_admin_settings(
    caller: Caller = Depends(get_caller),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    resolver.require_admin(caller)
    schema = {
        key: {"label": s.label, "type": "number", "min": s.minimum, "max": s.maximum}
        for key, s in ADJUSTABLE_SETTINGS.items()
    }
    return {"settings": storage.list_settings(), "schema": schema}


@router.put("/admin/settings", response_model=dict)
def put_admin_setting(
    payload: SettingIn,
    caller: Caller = Depends(admitted("admin-settings")),
    storage: Storage = Depends(get_storage),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    resolver.require_admin(caller)
    value = validate_setting(payload.key, payload.value)
    storage.set_setting(payload.key, str(value))
    logger.info("admin %s set %s=%d", caller.user_id, payload.key, value)
    return {"success": True, "key": payload.key, "value": str(value)}


# === Application factory ===


def default_blob_store(settings: Settings) -> BlobStore:
    if not settings.blob_token:
        return NullBlobStore()
    return HttpBlobStore(settings.blob_api_url, settings.blob_token, settings.blob_timeout_seconds)


def create_app(
    settings: Optional[Settings] = None,
    authorizer: Optional[Authorizer] = None,
    blob_store: Optional[BlobStore] = None,
    counter_store: Optional[CounterStore] = None,
    clock: Callable[[], datetime] = now_utc,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        yield
        engine.dispose()

    app = FastAPI(title="Pecsboard API", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.authorizer = authorizer or SettingsAuthorizer(settings.admin_user_ids, settings.admin_emails)
    app.state.blob_store = blob_store or default_blob_store(settings)
    app.state.admission = AdmissionController(
        counter_store or SqlCounterStore(session_factory),
        clock=clock,
        cleanup_probability=settings.rate_limit_cleanup_probability,
    )
    register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
