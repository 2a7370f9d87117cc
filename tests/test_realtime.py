import config
from database import to_object_id
from tests.conftest import drain_join, sync


def join(ws, user):
    ws.send_json({"event": "join", "data": {"user_id": user["id"]}})
    return drain_join(ws)


def test_join_announces_presence(client, db, make_user):
    alice = make_user()
    with client.websocket_connect(config.REALTIME_PATH) as ws:
        frames = join(ws, alice)
        assert frames[0] == {"event": "user_status", "data": {"user_id": alice["id"], "status": "online", "last_seen": None}}
        assert frames[-1]["data"] == [alice["id"]]
        assert db["user"].find_one({"_id": to_object_id(alice["id"])})["is_online"] is True

    stored = db["user"].find_one({"_id": to_object_id(alice["id"])})
    assert stored["is_online"] is False
    assert stored["last_seen"] is not None


def test_heartbeat(client):
    with client.websocket_connect(config.REALTIME_PATH) as ws:
        ws.send_json({"event": "ping_heartbeat", "data": {}})
        assert ws.receive_json()["event"] == "pong_heartbeat"


def test_offline_is_broadcast_and_resync_returns_current_set(client, make_user):
    alice, bob = make_user(), make_user()
    with client.websocket_connect(config.REALTIME_PATH) as watcher:
        join(watcher, bob)
        with client.websocket_connect(config.REALTIME_PATH) as ws:
            join(ws, alice)
            assert watcher.receive_json()["data"]["user_id"] == alice["id"]

            watcher.send_json({"event": "get_online_users", "data": {}})
            assert sorted(watcher.receive_json()["data"]) == sorted([alice["id"], bob["id"]])

        frame = watcher.receive_json()
        assert frame["event"] == "user_status"
        assert frame["data"]["user_id"] == alice["id"]
        assert frame["data"]["status"] == "offline"

        watcher.send_json({"event": "get_online_users", "data": {}})
        assert watcher.receive_json()["data"] == [bob["id"]]


def test_post_room_receives_like_updates(client, make_user, make_post):
    alice, bob = make_user(), make_user()
    post = make_post(alice)
    with client.websocket_connect(config.REALTIME_PATH) as ws:
        ws.send_json({"event": "join_post", "data": {"post_id": post["id"]}})
        sync(ws)
        client.post("/api/likes", json={"post_id": post["id"]}, headers=bob["headers"])
        frame = ws.receive_json()
        assert frame["event"] == "like_updated"
        assert frame["data"]["likes_count"] == 1
        assert frame["data"]["user_id"] == bob["id"]

        ws.send_json({"event": "leave_post", "data": {"post_id": post["id"]}})
        sync(ws)
        client.post("/api/likes", json={"post_id": post["id"]}, headers=bob["headers"])
        ws.send_json({"event": "ping_heartbeat", "data": {}})
        assert ws.receive_json()["event"] == "pong_heartbeat"


def test_receiver_gets_new_message_and_read_receipts(client, make_user):
    alice, bob = make_user(), make_user()
    with client.websocket_connect(config.REALTIME_PATH) as bob_ws, \
            client.websocket_connect(config.REALTIME_PATH) as alice_ws:
        join(bob_ws, bob)
        join(alice_ws, alice)
        bob_ws.receive_json()  # alice online

        res = client.post("/api/messages", json={"receiver_id": bob["id"], "content": "ping"}, headers=alice["headers"])
        frame = bob_ws.receive_json()
        assert frame["event"] == "new_message"
        assert frame["data"]["id"] == res.json()["message"]["id"]
        assert alice_ws.receive_json()["event"] == "new_message"

        client.post(f"/api/messages/{alice['id']}/read", headers=bob["headers"])
        frame = alice_ws.receive_json()
        assert frame == {"event": "message_read", "data": {"message_id": res.json()["message"]["id"], "user_id": bob["id"]}}


def test_poll_vote_reaches_poll_room(client, make_user, make_post):
    alice = make_user()
    post = make_post(alice, poll_options=["yes", "no"])
    with client.websocket_connect(config.REALTIME_PATH) as ws:
        ws.send_json({"event": "join_poll", "data": {"poll_id": post["id"]}})
        sync(ws)
        client.post(f"/api/posts/{post['id']}/poll/vote", json={"option_index": 1}, headers=alice["headers"])
        frame = ws.receive_json()
        assert frame["event"] == "poll_update"
        assert frame["data"] == {"poll_id": post["id"], "post_id": post["id"], "vote_counts": [0, 1], "total_votes": 1}
        assert ws.receive_json()["event"] == "poll_refreshed"


def test_owner_is_notified_live(client, make_user, make_post):
    alice, bob = make_user(), make_user()
    post = make_post(alice)
    with client.websocket_connect(config.REALTIME_PATH) as ws:
        join(ws, alice)
        client.post("/api/comments", json={"post_id": post["id"], "content": "great"}, headers=bob["headers"])
        events = [ws.receive_json()["event"] for _ in range(2)]
        assert events == ["notification", "new_comment"]


def test_typing_is_forwarded(client, make_user):
    alice, bob = make_user(), make_user()
    with client.websocket_connect(config.REALTIME_PATH) as bob_ws, \
            client.websocket_connect(config.REALTIME_PATH) as alice_ws:
        join(bob_ws, bob)
        join(alice_ws, alice)
        bob_ws.receive_json()  # alice online
        alice_ws.send_json({"event": "typing", "data": {"user_id": bob["id"], "is_typing": True}})
        assert bob_ws.receive_json() == {"event": "typing", "data": {"user_id": alice["id"], "is_typing": True}}


def test_rejoin_as_another_user_releases_the_first(client, make_user):
    alice, bob, carol = make_user(), make_user(), make_user()
    with client.websocket_connect(config.REALTIME_PATH) as watcher:
        join(watcher, carol)
        with client.websocket_connect(config.REALTIME_PATH) as ws:
            join(ws, alice)
            assert watcher.receive_json()["data"]["user_id"] == alice["id"]

            frames = join(ws, bob)
            assert {"event": "user_status", "data": {"user_id": bob["id"], "status": "online", "last_seen": None}} in frames
            assert frames[-1]["data"] == sorted([bob["id"], carol["id"]])

            frame = watcher.receive_json()
            assert frame["data"]["user_id"] == alice["id"]
            assert frame["data"]["status"] == "offline"
            assert watcher.receive_json()["data"]["user_id"] == bob["id"]

        frame = watcher.receive_json()
        assert frame["data"]["user_id"] == bob["id"]
        assert frame["data"]["status"] == "offline"

        watcher.send_json({"event": "get_online_users", "data": {}})
        assert watcher.receive_json()["data"] == [carol["id"]]
