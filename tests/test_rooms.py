"""Room membership flows exercised through the HTTP API."""

from bson import ObjectId


def _room(db, room_id):
    return db.room.find_one({"_id": ObjectId(room_id)})


def test_create_room_makes_owner_admin_and_sole_member(client, signup, make_room):
    ann = signup("Ann")
    room = make_room(ann, name="Book club", description="Monthly reads", tags=["books"])

    assert room["created_by"] == ann["id"]
    assert room["members"] == [ann["id"]]
    assert room["join_requests"] == []
    assert room["theme"] == "blue"
    assert room["is_private"] is False


def test_public_rooms_listed_for_non_members(client, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    public = make_room(ann, name="Lobby")
    secret = make_room(ann, name="Secret", is_private=True)

    ids = {r["id"] for r in client.get("/api/rooms", headers=bob["headers"]).json()}
    assert public["id"] in ids
    assert secret["id"] not in ids

    ids = {r["id"] for r in client.get("/api/rooms", headers=ann["headers"]).json()}
    assert {public["id"], secret["id"]} <= ids


def test_listed_rooms_populate_members(client, signup, make_room):
    ann = signup("Ann")
    make_room(ann)

    rooms = client.get("/api/rooms", headers=ann["headers"]).json()
    assert rooms[0]["members"] == [
        {"id": ann["id"], "first_name": "Ann", "last_name": "Tester", "email": "ann@mail.com"}
    ]


def test_request_join_is_idempotent_and_notifies_admin(client, db, signup, make_room, attach):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann, name="Secret", is_private=True)
    ann_conn = attach(ann["id"])

    for _ in range(2):
        r = client.post(f"/api/rooms/{room['id']}/request", headers=bob["headers"])
        assert r.status_code == 200

    assert _room(db, room["id"])["join_requests"] == [bob["id"]]

    admin = db.user.find_one({"email": "ann@mail.com"})
    assert [n["type"] for n in admin["notifications"]] == ["join_request", "join_request"]
    assert admin["notifications"][0]["message"] == 'Bob requested to join "Secret"'
    assert admin["notifications"][0]["from_user"] == bob["id"]

    live = ann_conn.payloads("notification")
    assert len(live) == 2
    assert live[0]["type"] == "join_request"
    assert live[0]["room_id"] == room["id"]


def test_request_join_public_room_is_not_found(client, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann)
    r = client.post(f"/api/rooms/{room['id']}/request", headers=bob["headers"])
    assert r.status_code == 404


def test_request_join_as_member_conflicts(client, signup, make_room):
    ann = signup("Ann")
    room = make_room(ann, is_private=True)
    r = client.post(f"/api/rooms/{room['id']}/request", headers=ann["headers"])
    assert r.status_code == 409
    assert r.json()["detail"] == "Already a member"


def test_approve_moves_request_into_members(client, db, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann, is_private=True)
    client.post(f"/api/rooms/{room['id']}/request", headers=bob["headers"])

    r = client.post(f"/api/rooms/{room['id']}/approve", json={"user_id": bob["id"]}, headers=ann["headers"])
    assert r.status_code == 200

    stored = _room(db, room["id"])
    assert stored["join_requests"] == []
    assert stored["members"].count(bob["id"]) == 1


def test_approve_requires_admin_and_pending_request(client, signup, make_room):
    ann, bob, cat = signup("Ann"), signup("Bob"), signup("Cat")
    room = make_room(ann, is_private=True)
    client.post(f"/api/rooms/{room['id']}/request", headers=bob["headers"])

    r = client.post(f"/api/rooms/{room['id']}/approve", json={"user_id": bob["id"]}, headers=cat["headers"])
    assert r.status_code == 403

    r = client.post(f"/api/rooms/{room['id']}/approve", json={"user_id": cat["id"]}, headers=ann["headers"])
    assert r.status_code == 400
    assert r.json()["detail"] == "User not in join requests"


def test_join_public_room_is_idempotent(client, db, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann)

    for _ in range(2):
        assert client.post(f"/api/rooms/{room['id']}/join", headers=bob["headers"]).status_code == 200

    assert _room(db, room["id"])["members"] == [ann["id"], bob["id"]]


def test_join_private_room_directly_is_forbidden(client, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann, is_private=True)
    assert client.post(f"/api/rooms/{room['id']}/join", headers=bob["headers"]).status_code == 403


def test_leave_and_admin_leaving_keeps_admin(client, db, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann)
    client.post(f"/api/rooms/{room['id']}/join", headers=bob["headers"])

    # leaving twice is a no-op the second time
    for _ in range(2):
        assert client.post(f"/api/rooms/{room['id']}/leave", headers=ann["headers"]).status_code == 200

    stored = _room(db, room["id"])
    assert stored["members"] == [bob["id"]]
    assert stored["created_by"] == ann["id"]

    r = client.put(f"/api/rooms/{room['id']}", json={"name": "Taken over"}, headers=bob["headers"])
    assert r.status_code == 403


def test_only_admin_can_rename_or_delete(client, db, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann, name="Old")
    client.post(f"/api/rooms/{room['id']}/join", headers=bob["headers"])

    assert client.put(f"/api/rooms/{room['id']}", json={"name": "Mine"}, headers=bob["headers"]).status_code == 403
    assert client.delete(f"/api/rooms/{room['id']}", headers=bob["headers"]).status_code == 403

    r = client.put(f"/api/rooms/{room['id']}", json={"name": "New"}, headers=ann["headers"])
    assert r.status_code == 200
    assert r.json()["name"] == "New"

    r = client.put(f"/api/rooms/{room['id']}", json={"name": ""}, headers=ann["headers"])
    assert r.json()["name"] == "New"

    assert client.delete(f"/api/rooms/{room['id']}", headers=ann["headers"]).status_code == 200
    assert _room(db, room["id"]) is None


def test_delete_room_leaves_messages_behind(client, db, signup, make_room):
    ann = signup("Ann")
    room = make_room(ann)
    client.post("/api/messages", json={"room_id": room["id"], "message": "hello"}, headers=ann["headers"])

    client.delete(f"/api/rooms/{room['id']}", headers=ann["headers"])

    assert db.message.count_documents({"room_id": room["id"]}) == 1


def test_add_and_remove_member_by_email(client, db, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann, is_private=True)

    for _ in range(2):
        r = client.post(f"/api/rooms/{room['id']}/add", json={"email": "bob@mail.com"}, headers=ann["headers"])
        assert r.status_code == 200
    assert _room(db, room["id"])["members"] == [ann["id"], bob["id"]]

    r = client.post(f"/api/rooms/{room['id']}/remove", json={"email": "bob@mail.com"}, headers=bob["headers"])
    assert r.status_code == 403

    r = client.post(f"/api/rooms/{room['id']}/remove", json={"email": "bob@mail.com"}, headers=ann["headers"])
    assert r.status_code == 200
    assert _room(db, room["id"])["members"] == [ann["id"]]

    r = client.post(f"/api/rooms/{room['id']}/add", json={"email": "nobody@mail.com"}, headers=ann["headers"])
    assert r.status_code == 404


def test_set_theme_validates_and_broadcasts(client, db, signup, make_room, attach):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann)
    listener = attach(ann["id"], room["id"])

    r = client.post(f"/api/rooms/{room['id']}/theme", json={"theme": "neon"}, headers=ann["headers"])
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid theme"

    r = client.post(f"/api/rooms/{room['id']}/theme", json={"theme": "green"}, headers=bob["headers"])
    assert r.status_code == 403

    r = client.post(f"/api/rooms/{room['id']}/theme", json={"theme": "green"}, headers=ann["headers"])
    assert r.status_code == 200
    assert _room(db, room["id"])["theme"] == "green"
    assert listener.payloads("theme_updated") == [{"room_id": room["id"], "theme": "green"}]


def test_search_matches_name_description_and_tags(client, signup, make_room):
    ann = signup("Ann")
    by_name = make_room(ann, name="Python Lovers")
    by_desc = make_room(ann, name="Misc", description="all about PYTHON")
    by_tag = make_room(ann, name="Snakes", tags=["python"])
    make_room(ann, name="Cooking")

    r = client.get("/api/rooms/search", params={"q": "pYtHoN"}, headers=ann["headers"])
    assert {room["id"] for room in r.json()} == {by_name["id"], by_desc["id"], by_tag["id"]}


def test_search_treats_query_literally(client, signup, make_room):
    ann = signup("Ann")
    make_room(ann, name="C++ fans")
    make_room(ann, name="Cooking")

    r = client.get("/api/rooms/search", params={"q": "C++"}, headers=ann["headers"])
    assert [room["name"] for room in r.json()] == ["C++ fans"]


def test_my_rooms_and_get_room(client, signup, make_room):
    ann, bob = signup("Ann"), signup("Bob")
    mine = make_room(ann, name="Mine")
    make_room(bob, name="Theirs")

    r = client.get("/api/rooms/my", headers=ann["headers"])
    assert [room["id"] for room in r.json()] == [mine["id"]]

    assert client.get(f"/api/rooms/{mine['id']}", headers=ann["headers"]).status_code == 200
    assert client.get(f"/api/rooms/{mine['id']}", headers=bob["headers"]).status_code == 403
    assert client.get("/api/rooms/000000000000000000000000", headers=ann["headers"]).status_code == 404
    assert client.get("/api/rooms/not-an-id", headers=ann["headers"]).status_code == 400


def test_private_room_scenario(client, db, signup, make_room, attach):
    ann, bob = signup("Ann"), signup("Bob")
    room = make_room(ann, name="R", is_private=True)
    ann_conn = attach(ann["id"], room["id"])

    client.post(f"/api/rooms/{room['id']}/request", headers=bob["headers"])
    assert _room(db, room["id"])["join_requests"] == [bob["id"]]
    assert [n["type"] for n in ann_conn.payloads("notification")] == ["join_request"]

    client.post(f"/api/rooms/{room['id']}/approve", json={"user_id": bob["id"]}, headers=ann["headers"])
    bob_conn = attach(bob["id"], room["id"])
    stored = _room(db, room["id"])
    assert sorted(stored["members"]) == sorted([ann["id"], bob["id"]])
    assert stored["join_requests"] == []

    r = client.post(f"/api/rooms/{room['id']}/theme", json={"theme": "pink"}, headers=bob["headers"])
    assert r.status_code == 200
    assert _room(db, room["id"])["theme"] == "pink"
    expected = [{"room_id": room["id"], "theme": "pink"}]
    assert ann_conn.payloads("theme_updated") == expected
    assert bob_conn.payloads("theme_updated") == expected
