import json

import pytest
import requests

from client import (
    CONNECTED,
    DISCONNECTED,
    ApiClient,
    ApiError,
    NotConnectedError,
    NotificationFeed,
    PresenceStore,
    RealtimeClient,
)


class FakeTransport:
    def __init__(self, incoming=None):
        self.sent = []
        self.incoming = list(incoming or [])
        self.closed = False

    def send(self, raw):
        self.sent.append(json.loads(raw))

    def recv(self):
        return self.incoming.pop(0)

    def close(self):
        self.closed = True


class FakeFactory:
    def __init__(self):
        self.transports = []

    def __call__(self, url):
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    def sent_events(self):
        return [frame["event"] for t in self.transports for frame in t.sent]


class FakeApi:
    def __init__(self, notifications=None, fail=False):
        self.notifications = notifications or []
        self.fail = fail
        self.patches = []

    def get(self, path, **kwargs):
        return {"notifications": [dict(n) for n in self.notifications], "unread_count": 0}

    def patch(self, path, **kwargs):
        self.patches.append(kwargs.get("json"))
        if self.fail:
            raise ApiError(503, "Database temporarily unavailable")
        return {"success": True}


def test_nothing_connects_implicitly():
    factory = FakeFactory()
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=factory)
    assert rt.state == DISCONNECTED
    with pytest.raises(NotConnectedError):
        rt.emit("ping_heartbeat")
    assert factory.transports == []


def test_lifecycle_fires_synthetic_events():
    factory = FakeFactory()
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=factory)
    seen = []
    rt.on("connect", lambda _: seen.append("connect"))
    rt.on("disconnect", lambda _: seen.append("disconnect"))

    rt.connect()
    assert rt.state == CONNECTED
    rt.reconnect()
    rt.disconnect()
    assert seen == ["connect", "disconnect", "connect", "disconnect"]
    assert all(t.closed for t in factory.transports)
    assert len(factory.transports) == 2


def test_presence_resyncs_on_every_connect():
    factory = FakeFactory()
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=factory)
    store = PresenceStore(rt)

    rt.connect()
    rt.reconnect()
    assert factory.sent_events() == ["get_online_users", "get_online_users"]

    rt.dispatch({"event": "initial_online_users", "data": ["a", "b"]})
    assert store.online_users() == ["a", "b"]


def test_presence_store_attached_to_live_client_resyncs_immediately():
    factory = FakeFactory()
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=factory)
    rt.connect()
    PresenceStore(rt)
    assert factory.sent_events() == ["get_online_users"]


def test_presence_status_updates_and_listeners():
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=FakeFactory())
    store = PresenceStore(rt)
    snapshots = []
    unsubscribe = store.subscribe(snapshots.append)

    rt.dispatch(json.dumps({"event": "user_status", "data": {"user_id": "a", "status": "online"}}))
    rt.dispatch({"event": "user_status", "data": {"user_id": "b", "status": "away"}})
    rt.dispatch({"event": "user_status", "data": {"user_id": "a", "status": "offline"}})
    assert store.is_online("b") and not store.is_online("a")
    assert snapshots == [["a"], ["a", "b"], ["b"]]

    unsubscribe()
    rt.dispatch({"event": "user_status", "data": {"user_id": "c", "status": "online"}})
    assert len(snapshots) == 3


def test_receive_dispatches_frames():
    transport = FakeTransport([json.dumps({"event": "pong_heartbeat", "data": {}})])
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=lambda url: transport)
    got = []
    rt.on("pong_heartbeat", got.append)
    rt.connect()
    rt.heartbeat()
    rt.receive()
    assert transport.sent == [{"event": "ping_heartbeat", "data": {}}]
    assert got == [{}]


def test_feed_merges_pushes_newest_first():
    rt = RealtimeClient("ws://api/ws/realtime", transport_factory=FakeFactory())
    feed = NotificationFeed(rt, FakeApi([{"id": "n1", "read": False, "message": "old"}]))
    feed.refresh()

    rt.dispatch({"event": "notification", "data": {"id": "n2", "read": False, "message": "new"}})
    rt.dispatch({"event": "notification", "data": {"id": "n1", "read": False, "message": "2 people liked your post"}})
    assert [n["id"] for n in feed.items] == ["n1", "n2"]
    assert feed.items[0]["message"] == "2 people liked your post"
    assert feed.unread_count == 2


def test_mark_read_is_optimistic():
    api = FakeApi([{"id": "n1", "read": False}])
    feed = NotificationFeed(RealtimeClient("ws://x", transport_factory=FakeFactory()), api)
    feed.refresh()
    feed.mark_read("n1")
    assert feed.unread_count == 0
    assert api.patches == [{"notification_id": "n1"}]


def test_mark_read_rolls_back_on_failure():
    api = FakeApi([{"id": "n1", "read": False}, {"id": "n2", "read": False}], fail=True)
    feed = NotificationFeed(RealtimeClient("ws://x", transport_factory=FakeFactory()), api)
    feed.refresh()

    with pytest.raises(ApiError):
        feed.mark_read("n1")
    assert feed.unread_count == 2

    with pytest.raises(ApiError):
        feed.mark_all_read()
    assert feed.unread_count == 2


class FakeSession:
    def __init__(self, status, body):
        self.status = status
        self.body = body
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = requests.Response()
        response.status_code = self.status
        response._content = json.dumps(self.body).encode()
        return response


def test_api_client_sends_bearer_token():
    session = FakeSession(200, {"notifications": []})
    api = ApiClient("https://api.devconnect.io/", token="tok", session=session)
    assert api.get("/api/notifications") == {"notifications": []}
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://api.devconnect.io/api/notifications")
    assert kwargs["headers"] == {"Authorization": "Bearer tok"}


def test_api_client_raises_with_detail():
    api = ApiClient("https://api.devconnect.io", session=FakeSession(403, {"detail": "Forbidden"}))
    with pytest.raises(ApiError) as exc:
        api.delete("/api/messages/1")
    assert exc.value.status == 403
    assert exc.value.detail == "Forbidden"
