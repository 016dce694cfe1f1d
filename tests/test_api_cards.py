from conftest import auth
from pecsboard.storage import Storage

BLOB = "https://store.public.blob.vercel-storage.com"


def new_board(client, user="alice", name="Trip", **extra):
    response = client.post("/v1/boards", json={"name": name, **extra}, headers=auth(user))
    assert response.status_code == 201, response.text
    return response.json()["id"]


def add_card(client, board_id, label, user="alice", **extra):
    return client.post(f"/v1/boards/{board_id}/cards", json={"label": label, **extra}, headers=auth(user))


def labels(client, board_id, user="alice"):
    return [c["label"] for c in client.get(f"/v1/boards/{board_id}", headers=auth(user)).json()["cards"]]


def test_duplicate_label_scenario(client):
    board_id = new_board(client)
    assert add_card(client, board_id, "Apple").status_code == 201
    response = add_card(client, board_id, "apple ")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"
    assert labels(client, board_id) == ["Apple"]


def test_empty_labels_may_repeat(client):
    board_id = new_board(client)
    assert add_card(client, board_id, "").status_code == 201
    assert add_card(client, board_id, "  ").status_code == 201


def test_card_validation(client):
    board_id = new_board(client)
    assert add_card(client, board_id, "Red", color="red").status_code == 400
    assert add_card(client, board_id, "x" * 101).status_code == 400
    response = add_card(client, board_id, "Blue", color="var(--primary)", category="  fOOD ")
    assert response.status_code == 201
    assert response.json()["category"] == "Food"


def test_only_owner_or_admin_adds_cards(client):
    board_id = new_board(client)
    assert add_card(client, board_id, "Apple", user="mallory").status_code == 403
    assert add_card(client, board_id, "Apple", user="admin").status_code == 201


def test_rename_checks_uniqueness_but_not_against_itself(client):
    board_id = new_board(client)
    apple = add_card(client, board_id, "Apple").json()
    add_card(client, board_id, "Pear")
    assert client.patch(f"/v1/cards/{apple['id']}", json={"label": "APPLE"}, headers=auth("alice")).status_code == 200
    response = client.patch(f"/v1/cards/{apple['id']}", json={"label": "pear"}, headers=auth("alice"))
    assert response.status_code == 409


def test_move_checks_destination_board(client):
    source = new_board(client, name="A")
    destination = new_board(client, name="B")
    foreign = new_board(client, user="bob", name="Bob's")
    apple = add_card(client, source, "Apple").json()
    add_card(client, destination, "apple")

    response = client.patch(f"/v1/cards/{apple['id']}", json={"boardId": destination}, headers=auth("alice"))
    assert response.status_code == 409
    response = client.patch(f"/v1/cards/{apple['id']}", json={"boardId": foreign}, headers=auth("alice"))
    assert response.status_code == 403
    response = client.patch(
        f"/v1/cards/{apple['id']}", json={"boardId": destination, "label": "Green apple"}, headers=auth("alice")
    )
    assert response.status_code == 200
    assert response.json()["boardId"] == destination
    assert labels(client, destination) == ["apple", "Green apple"]
    assert labels(client, source) == []


def test_template_and_inherited_cards(client, make_card):
    board_id = new_board(client)
    other = new_board(client, name="Other")
    make_card("tpl", board_id, label="Sun", template_key="sun", order=5)
    make_card("inh", board_id, label="Moon", source_board_id="elsewhere", order=6)

    for user in ("alice", "admin"):
        assert client.patch("/v1/cards/tpl", json={"label": "x"}, headers=auth(user)).status_code == 403
        assert client.patch("/v1/cards/tpl", json={"boardId": other}, headers=auth(user)).status_code == 403
        assert client.delete("/v1/cards/tpl", headers=auth(user)).status_code == 403

    assert client.patch("/v1/cards/inh", json={"label": "Star"}, headers=auth("alice")).status_code == 403
    assert client.patch("/v1/cards/inh", json={"label": "Moon"}, headers=auth("alice")).status_code == 200
    moved = client.patch("/v1/cards/inh", json={"boardId": other}, headers=auth("alice"))
    assert moved.status_code == 200
    assert moved.json()["lineage"] == "inherited"
    assert client.delete("/v1/cards/inh", headers=auth("mallory")).status_code == 403
    assert client.delete("/v1/cards/inh", headers=auth("alice")).status_code == 204


def test_delete_card_cleans_up_media(client, blob_store):
    board_id = new_board(client)
    card = add_card(client, board_id, "Apple", imageUrl=f"{BLOB}/a.png", audioUrl="https://cdn.example/a.mp3").json()
    assert client.delete(f"/v1/cards/{card['id']}", headers=auth("alice")).status_code == 204
    assert blob_store.deleted == [f"{BLOB}/a.png"]
    assert client.delete(f"/v1/cards/{card['id']}", headers=auth("alice")).status_code == 404


def test_batch_create(client):
    board_id = new_board(client)
    add_card(client, board_id, "Apple")
    payload = {"cards": [{"label": "Pear"}, {"label": ""}, {"label": ""}, {"label": "Plum"}]}
    response = client.post(f"/v1/boards/{board_id}/cards/batch", json=payload, headers=auth("alice"))
    assert response.status_code == 201
    assert [c["order"] for c in response.json()] == [1, 2, 3, 4]
    assert labels(client, board_id) == ["Apple", "Pear", "", "", "Plum"]


def test_batch_rejects_collisions_within_the_request(client):
    board_id = new_board(client)
    payload = {"cards": [{"label": "Kiwi"}, {"label": " KIWI"}]}
    response = client.post(f"/v1/boards/{board_id}/cards/batch", json=payload, headers=auth("alice"))
    assert response.status_code == 409
    assert labels(client, board_id) == []


def test_batch_rejects_collisions_with_the_board(client):
    board_id = new_board(client)
    add_card(client, board_id, "Kiwi")
    payload = {"cards": [{"label": "Fig"}, {"label": "kiwi"}]}
    response = client.post(f"/v1/boards/{board_id}/cards/batch", json=payload, headers=auth("alice"))
    assert response.status_code == 409
    assert labels(client, board_id) == ["Kiwi"]


def test_card_limit(client, app):
    board_id = new_board(client)
    with app.state.session_factory() as session:
        Storage(session).set_setting("max_cards_per_board", "2")
    add_card(client, board_id, "One")
    add_card(client, board_id, "Two")
    assert add_card(client, board_id, "Three").status_code == 403
    payload = {"cards": [{"label": "Four"}]}
    assert client.post(f"/v1/boards/{board_id}/cards/batch", json=payload, headers=auth("alice")).status_code == 403


def test_reorder_round_trip(client):
    board_id = new_board(client)
    ids = [add_card(client, board_id, label).json()["id"] for label in ("A", "B", "C")]
    new_order = [ids[2], ids[0], ids[1]]
    response = client.put(f"/v1/boards/{board_id}/cards/order", json={"cardIds": new_order}, headers=auth("alice"))
    assert response.status_code == 200
    assert [c["id"] for c in response.json()] == new_order
    assert labels(client, board_id) == ["C", "A", "B"]


def test_reorder_rejects_cards_from_other_boards(client):
    board_id = new_board(client)
    other = new_board(client, name="Other")
    mine = add_card(client, board_id, "A").json()["id"]
    theirs = add_card(client, other, "B").json()["id"]
    response = client.put(
        f"/v1/boards/{board_id}/cards/order", json={"cardIds": [theirs, mine]}, headers=auth("alice")
    )
    assert response.status_code == 400
    assert response.json()["error"]["details"]["unknownCardIds"] == [theirs]


def test_reorder_requires_ownership(client):
    board_id = new_board(client)
    card_id = add_card(client, board_id, "A").json()["id"]
    response = client.put(f"/v1/boards/{board_id}/cards/order", json={"cardIds": [card_id]}, headers=auth("bob"))
    assert response.status_code == 403


def test_import_from_public_board_marks_cards_inherited(client):
    public = new_board(client, user="bob", name="Bob's", isPublic=True)
    private = new_board(client, user="bob", name="Secret")
    apple = add_card(client, public, "Apple", user="bob").json()["id"]
    pear = add_card(client, public, "Pear", user="bob").json()["id"]
    hidden = add_card(client, private, "Hidden", user="bob").json()["id"]
    mine = new_board(client)
    add_card(client, mine, "Pear")

    url = f"/v1/boards/{mine}/cards/import"
    response = client.post(url, json={"sourceBoardId": public, "cardIds": [apple]}, headers=auth("alice"))
    assert response.status_code == 201
    copied = response.json()[0]
    assert copied["sourceBoardId"] == public
    assert copied["lineage"] == "inherited"

    assert client.post(url, json={"sourceBoardId": public, "cardIds": [pear]}, headers=auth("alice")).status_code == 409
    assert client.post(url, json={"sourceBoardId": private, "cardIds": [hidden]}, headers=auth("alice")).status_code == 403
    assert client.post(url, json={"sourceBoardId": public, "cardIds": [hidden]}, headers=auth("alice")).status_code == 400


def test_reorder_of_an_empty_board_is_applied(client):
    board_id = new_board(client)
    response = client.put(f"/v1/boards/{board_id}/cards/order", json={"cardIds": []}, headers=auth("alice"))
    assert response.status_code == 200
    assert response.json() == []
