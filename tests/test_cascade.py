import httpx
from sqlalchemy import func, select

from conftest import FakeAuthorizer, RecordingBlobStore
from pecsboard.auth import ANONYMOUS, Caller
from pecsboard.authorization import AuthorizationResolver
from pecsboard.blobstore import owned_media
from pecsboard.cascade import CascadeDeletionCoordinator, DeletionOutcome
from pecsboard.db import Board, BoardComment, Card

BLOB = "https://store.public.blob.vercel-storage.com"
SUFFIX = ".blob.vercel-storage.com"


class Queue:
    def __init__(self):
        self.jobs = []

    def __call__(self, fn, *args):
        self.jobs.append((fn, args))

    def drain(self):
        for fn, args in self.jobs:
            fn(*args)
        self.jobs = []


def rows(session, model, condition):
    return session.execute(select(func.count()).select_from(model).where(condition)).scalar_one()


def coordinator(session, blob_store=None, queue=None):
    return CascadeDeletionCoordinator(
        session,
        AuthorizationResolver(FakeAuthorizer(admins={"admin"})),
        blob_store or RecordingBlobStore(),
        queue or Queue(),
        SUFFIX,
    )


def test_owned_media_filters_foreign_and_duplicate_urls():
    urls = [f"{BLOB}/a.png", None, "", "https://example.com/b.png", f"{BLOB}/a.png", f"{BLOB}/a.mp3"]
    assert owned_media(urls, SUFFIX) == [f"{BLOB}/a.png", f"{BLOB}/a.mp3"]


def test_delete_board_cascades_and_defers_media_cleanup(session, make_board, make_card):
    make_board("trip")
    make_card("c1", "trip", label="Apple", image_url=f"{BLOB}/u1.png")
    make_card("c2", "trip", label="Pear", image_url=f"{BLOB}/u2.png", audio_url="https://tts.example/p.mp3")
    session.add(BoardComment(id="m1", board_id="trip", user_id="bob", content="nice"))
    session.commit()
    store, queue = RecordingBlobStore(), Queue()

    result = coordinator(session, store, queue).delete_board("trip", Caller("alice"))

    assert result.outcome is DeletionOutcome.DELETED
    assert rows(session, Board, Board.id == "trip") == 0
    assert rows(session, Card, Card.board_id == "trip") == 0
    assert rows(session, BoardComment, BoardComment.board_id == "trip") == 0
    assert store.deleted == []
    queue.drain()
    assert sorted(store.deleted) == [f"{BLOB}/u1.png", f"{BLOB}/u2.png"]


def test_delete_board_denied_and_not_found(session, make_board):
    make_board("b1", owner="alice")
    make_board("starter-food", owner="alice", is_public=True)
    c = coordinator(session)

    assert c.delete_board("missing", Caller("alice")).outcome is DeletionOutcome.NOT_FOUND
    assert c.delete_board("b1", Caller("mallory")).outcome is DeletionOutcome.DENIED
    denied = c.delete_board("b1", ANONYMOUS)
    assert denied.outcome is DeletionOutcome.DENIED and denied.decision.unauthenticated
    for caller in (Caller("alice"), Caller("admin"), Caller("mallory"), ANONYMOUS):
        assert c.delete_board("starter-food", caller).outcome is DeletionOutcome.DENIED
    assert rows(session, Board, Board.id == "b1") == 1


def test_admin_can_delete_any_board(session, make_board):
    make_board("b1", owner="alice")
    assert coordinator(session).delete_board("b1", Caller("admin")).outcome is DeletionOutcome.DELETED


def test_media_still_used_by_copies_is_kept(session, make_board, make_card):
    make_board("src", owner="alice", is_public=True)
    make_board("copy", owner="bob")
    make_card("c1", "src", label="Apple", image_url=f"{BLOB}/shared.png")
    make_card("c2", "copy", label="Apple", image_url=f"{BLOB}/shared.png", source_board_id="src")
    store, queue = RecordingBlobStore(), Queue()

    result = coordinator(session, store, queue).delete_board("src", Caller("alice"))
    queue.drain()

    assert result.outcome is DeletionOutcome.DELETED
    assert result.media == ()
    assert store.deleted == []


def test_cleanup_failures_are_swallowed(session, make_board, make_card):
    make_board("b1")
    make_card("c1", "b1", image_url=f"{BLOB}/u1.png")
    queue = Queue()

    result = coordinator(session, RecordingBlobStore(fail=True), queue).delete_board("b1", Caller("alice"))
    queue.drain()

    assert result.outcome is DeletionOutcome.DELETED


def test_cleanup_timeouts_are_abandoned(session):
    class SlowStore:
        def delete(self, urls):
            raise httpx.ReadTimeout("timed out")

    coordinator(session, SlowStore()).cleanup_media([f"{BLOB}/u1.png"])


def test_delete_card_rules(session, make_board, make_card):
    make_board("b1")
    make_card("tpl", "b1", template_key="apple")
    make_card("inh", "b1", label="Pear", source_board_id="other", image_url=f"{BLOB}/p.png")
    store, queue = RecordingBlobStore(), Queue()
    c = coordinator(session, store, queue)

    assert c.delete_card("tpl", Caller("alice")).outcome is DeletionOutcome.DENIED
    assert c.delete_card("tpl", Caller("admin")).outcome is DeletionOutcome.DENIED
    assert c.delete_card("inh", Caller("mallory")).outcome is DeletionOutcome.DENIED
    assert c.delete_card("inh", Caller("alice")).outcome is DeletionOutcome.DELETED
    assert c.delete_card("inh", Caller("alice")).outcome is DeletionOutcome.NOT_FOUND
    queue.drain()
    assert store.deleted == [f"{BLOB}/p.png"]


def test_delete_card_whose_board_just_vanished():
    class RacingSession:
        # The card was loaded but its board was deleted in between.
        def get(self, model, key):
            if model is Card:
                return Card(id=key, board_id="gone", label="")
            return None

    result = coordinator(RacingSession()).delete_card("c1", Caller("alice"))
    assert result.outcome is DeletionOutcome.NOT_FOUND
