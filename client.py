"""
Python client for the DevConnect API and its realtime socket.

`RealtimeClient` owns one websocket and never connects on its own; callers
drive `connect()`, `disconnect()` and `reconnect()`. `PresenceStore` and
`NotificationFeed` are caches that subscribe to a client.
"""
import json
import logging
from typing import Callable, Dict, List, Optional

import requests
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECTING = "reconnecting"


class NotConnectedError(RuntimeError):
    pass


class ApiError(Exception):
    def __init__(self, status: int, detail: str):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail


class ApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.session.request(method, f"{self.base_url}{path}", headers=headers,
                                        timeout=self.timeout, **kwargs)
        if not response.ok:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = None
            raise ApiError(response.status_code, detail or response.reason or "Request failed")
        return response.json() if response.content else None

    def get(self, path: str, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs):
        return self.request("POST", path, **kwargs)

    def patch(self, path: str, **kwargs):
        return self.request("PATCH", path, **kwargs)

    def delete(self, path: str, **kwargs):
        return self.request("DELETE", path, **kwargs)


class RealtimeClient:
    """Explicit lifecycle wrapper around one realtime websocket.

    `transport_factory(url)` must return an object with `send(str)`,
    `recv() -> str` and `close()`; the default is the `websockets` sync
    client. `connect` and `disconnect` are also delivered to handlers as
    synthetic events with `None` data.
    """

    def __init__(self, url: str, transport_factory: Optional[Callable] = None):
        self.url = url
        self.transport_factory = transport_factory or ws_connect
        self.state = DISCONNECTED
        self._conn = None
        self._handlers: Dict[str, List[Callable]] = {}

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    def on(self, event: str, handler: Callable):
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable):
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _fire(self, event: str, data):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(data)
            except Exception as e:
                logger.error("Handler for %s failed: %s", event, e)

    def connect(self):
        if self.state == CONNECTED:
            return
        if self.state == DISCONNECTED:
            self.state = CONNECTING
        try:
            self._conn = self.transport_factory(self.url)
        except Exception:
            self.state = DISCONNECTED
            raise
        self.state = CONNECTED
        logger.info("Connected to %s", self.url)
        self._fire("connect", None)

    def _close(self):
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Close failed: %s", e)
        was_connected = self.state == CONNECTED
        self.state = DISCONNECTED
        if was_connected:
            self._fire("disconnect", None)

    def disconnect(self):
        self._close()

    def reconnect(self):
        self._close()
        self.state = RECONNECTING
        self.connect()

    def emit(self, event: str, data=None):
        if self.state != CONNECTED or self._conn is None:
            raise NotConnectedError(f"Cannot emit {event} while {self.state}")
        self._conn.send(json.dumps({"event": event, "data": data if data is not None else {}}))

    def heartbeat(self):
        self.emit("ping_heartbeat", {})

    def dispatch(self, frame):
        if isinstance(frame, (str, bytes)):
            frame = json.loads(frame)
        event = frame.get("event")
        if not event:
            return
        self._fire(event, frame.get("data"))

    def receive(self):
        """Read and dispatch one frame. A closed socket moves the client to disconnected."""
        if self._conn is None:
            raise NotConnectedError("Not connected")
        try:
            raw = self._conn.recv()
        except ConnectionClosed:
            self._close()
            return None
        frame = json.loads(raw)
        self.dispatch(frame)
        return frame

    def listen(self):
        while self.connected:
            self.receive()


class PresenceStore:
    """Online user ids as seen by this client, resynced on every connect."""

    def __init__(self, client: RealtimeClient):
        self.client = client
        self._online = set()
        self._listeners: List[Callable] = []
        client.on("initial_online_users", self._replace)
        client.on("user_status", self._apply_status)
        client.on("connect", self._resync)
        if client.connected:
            self._resync()

    def _resync(self, _=None):
        self.client.emit("get_online_users", {})

    def _replace(self, user_ids):
        self._online = set(user_ids or [])
        self._notify()

    def _apply_status(self, data):
        user_id = (data or {}).get("user_id")
        if not user_id:
            return
        if data.get("status") in ("online", "away"):
            self._online.add(user_id)
        else:
            self._online.discard(user_id)
        self._notify()

    def _notify(self):
        snapshot = self.online_users()
        for listener in list(self._listeners):
            listener(snapshot)

    def subscribe(self, listener: Callable) -> Callable:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def online_users(self) -> List[str]:
        return sorted(self._online)


class NotificationFeed:
    def __init__(self, client: RealtimeClient, api: ApiClient):
        self.api = api
        self.items: List[dict] = []
        client.on("notification", self._merge)

    def refresh(self) -> List[dict]:
        data = self.api.get("/api/notifications")
        self.items = list(data.get("notifications") or [])
        return self.items

    def _merge(self, notification):
        if not notification or not notification.get("id"):
            return
        self.items = [n for n in self.items if n.get("id") != notification["id"]]
        self.items.insert(0, notification)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.items if not n.get("read"))

    def mark_read(self, notification_id: str):
        item = next((n for n in self.items if n.get("id") == notification_id), None)
        if item is None or item.get("read"):
            return
        item["read"] = True
        try:
            self.api.patch("/api/notifications", json={"notification_id": notification_id})
        except (ApiError, requests.RequestException):
            item["read"] = False
            raise

    def mark_all_read(self):
        changed = [n for n in self.items if not n.get("read")]
        for n in changed:
            n["read"] = True
        try:
            self.api.patch("/api/notifications", json={"mark_all": True})
        except (ApiError, requests.RequestException):
            for n in changed:
                n["read"] = False
            raise
