import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

import config
from database import get_collection, now_utc, serialize
from identity import Identity, resolve_identity

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Room based fan-out over plain websockets.

    Every frame is `{"event": name, "data": payload}`. Delivery is best
    effort: a socket that fails a send is dropped and nothing is replayed.
    """

    def __init__(self):
        self.active: List[WebSocket] = []
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.memberships: Dict[WebSocket, Set[str]] = {}
        self.identities: Dict[WebSocket, Identity] = {}
        self.user_sockets: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.append(websocket)
        self.memberships[websocket] = set()

    def disconnect(self, websocket: WebSocket) -> Optional[Identity]:
        """Forget a socket. Returns the identity whose last socket this was."""
        if websocket in self.active:
            self.active.remove(websocket)
        for room in self.memberships.pop(websocket, set()):
            members = self.rooms.get(room)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self.rooms[room]
        return self.unbind_user(websocket)

    def join(self, websocket: WebSocket, room: str):
        self.rooms.setdefault(room, set()).add(websocket)
        self.memberships.setdefault(websocket, set()).add(room)

    def leave(self, websocket: WebSocket, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        self.memberships.get(websocket, set()).discard(room)

    def unbind_user(self, websocket: WebSocket) -> Optional[Identity]:
        """Detach the socket from its user. Returns the identity if it has no sockets left."""
        identity = self.identities.pop(websocket, None)
        if identity is None:
            return None
        for uid in identity.all_ids:
            sockets = self.user_sockets.get(uid)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self.user_sockets[uid]
        for room in identity.rooms:
            self.leave(websocket, room)
        if self.is_user_online(identity):
            return None
        return identity

    def bind_user(self, websocket: WebSocket, identity: Identity) -> Optional[Identity]:
        previous = self.unbind_user(websocket)
        self.identities[websocket] = identity
        for uid in identity.all_ids:
            self.user_sockets.setdefault(uid, set()).add(websocket)
        for room in identity.rooms:
            self.join(websocket, room)
        return previous

    def identity_of(self, websocket: WebSocket) -> Optional[Identity]:
        return self.identities.get(websocket)

    def is_user_online(self, identity: Identity) -> bool:
        return any(self.user_sockets.get(uid) for uid in identity.all_ids)

    def online_user_ids(self) -> List[str]:
        return sorted(self.user_sockets.keys())

    def room_size(self, room: str) -> int:
        return len(self.rooms.get(room, ()))

    def _drop(self, websocket: WebSocket):
        # the receive loop still owns the identity and announces the user offline
        if websocket in self.active:
            self.active.remove(websocket)
        for room in list(self.memberships.get(websocket, ())):
            self.leave(websocket, room)

    async def _send(self, websocket: WebSocket, frame: dict) -> bool:
        try:
            await websocket.send_json(frame)
            return True
        except Exception as e:
            logger.warning("Dropping socket after failed send: %s", e)
            self._drop(websocket)
            return False

    async def emit(self, event: str, data, rooms: Iterable[str]) -> int:
        targets: Set[WebSocket] = set()
        for room in rooms:
            targets.update(self.rooms.get(room, ()))
        if not targets:
            return 0
        frame = {"event": event, "data": jsonable_encoder(serialize(data))}
        sent = 0
        for ws in list(targets):
            if await self._send(ws, frame):
                sent += 1
        logger.debug("Emitted %s to %d sockets", event, sent)
        return sent

    async def emit_to_user(self, identity: Identity, event: str, data) -> int:
        return await self.emit(event, data, identity.rooms)

    async def send(self, websocket: WebSocket, event: str, data) -> bool:
        return await self._send(websocket, {"event": event, "data": jsonable_encoder(serialize(data))})

    async def broadcast(self, event: str, data) -> int:
        frame = {"event": event, "data": jsonable_encoder(serialize(data))}
        sent = 0
        for ws in list(self.active):
            if await self._send(ws, frame):
                sent += 1
        return sent


def get_realtime(request: Request) -> ConnectionManager:
    return request.app.state.realtime


# --- Presence ---
def _set_presence(identity: Identity, online: bool):
    users = get_collection("user")
    if identity.user is None:
        return
    if online and identity.user.get("is_online"):
        return
    users.update_one(
        {"_id": identity.user["_id"]},
        {"$set": {"is_online": online, "last_seen": now_utc()}},
    )


async def _announce_status(manager: ConnectionManager, identity: Identity, status: str, last_seen=None):
    for uid in identity.all_ids:
        await manager.broadcast("user_status", {"user_id": uid, "status": status, "last_seen": last_seen})


async def handle_join(manager: ConnectionManager, websocket: WebSocket, data: dict):
    user_id = (data or {}).get("user_id")
    if not user_id:
        return
    identity = resolve_identity(user_id)
    previous = manager.bind_user(websocket, identity)
    if previous is not None and previous.canonical_id != identity.canonical_id:
        _set_presence(previous, False)
        await _announce_status(manager, previous, "offline", now_utc())
    logger.info("User %s joined as %s", user_id, ", ".join(identity.all_ids))
    _set_presence(identity, True)
    await _announce_status(manager, identity, "online")
    await manager.send(websocket, "initial_online_users", manager.online_user_ids())


async def handle_disconnect(manager: ConnectionManager, websocket: WebSocket):
    identity = manager.disconnect(websocket)
    if identity is None:
        return
    last_seen = now_utc()
    try:
        _set_presence(identity, False)
    except Exception as e:
        logger.error("Could not record last seen for %s: %s", identity.canonical_id, e)
    logger.info("User %s went offline", identity.canonical_id)
    await _announce_status(manager, identity, "offline", last_seen)


ROOM_EVENTS = {
    "join_post": ("post", "post_id", True),
    "leave_post": ("post", "post_id", False),
    "join_group": ("group", "group_id", True),
    "leave_group": ("group", "group_id", False),
    "join_poll": ("poll", "poll_id", True),
    "leave_poll": ("poll", "poll_id", False),
}


async def dispatch(manager: ConnectionManager, websocket: WebSocket, frame: dict):
    event = frame.get("event")
    data = frame.get("data") or {}

    if event == "join":
        await handle_join(manager, websocket, data)
    elif event == "get_online_users":
        await manager.send(websocket, "initial_online_users", manager.online_user_ids())
    elif event == "ping_heartbeat":
        await manager.send(websocket, "pong_heartbeat", {})
    elif event in ROOM_EVENTS:
        prefix, key, joining = ROOM_EVENTS[event]
        target = data.get(key)
        if not target:
            return
        room = f"{prefix}:{target}"
        if joining:
            manager.join(websocket, room)
        else:
            manager.leave(websocket, room)
    elif event == "update_presence":
        identity = manager.identity_of(websocket)
        if identity is None:
            return
        status = "away" if data.get("status") == "away" else "online"
        await _announce_status(manager, identity, status, now_utc() if status == "away" else None)
    elif event == "typing":
        identity = manager.identity_of(websocket)
        target = data.get("user_id")
        if identity is None or not target:
            return
        await manager.emit_to_user(
            resolve_identity(target),
            "typing",
            {"user_id": identity.canonical_id, "is_typing": bool(data.get("is_typing"))},
        )
    else:
        logger.debug("Ignoring unknown realtime event %r", event)


router = APIRouter()


@router.websocket(config.REALTIME_PATH)
async def realtime_endpoint(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.realtime
    await manager.connect(websocket)
    try:
        while True:
            frame = await websocket.receive_json()
            if not isinstance(frame, dict):
                continue
            try:
                await dispatch(manager, websocket, frame)
            except Exception as e:
                logger.error("Realtime event %r failed: %s", frame.get("event"), e)
    except WebSocketDisconnect:
        pass
    finally:
        await handle_disconnect(manager, websocket)
