import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main

_counter = itertools.count()


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient(tz_aware=True)["devconnect_test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(client, db):
    """Register a user and return {id, token, headers, username}."""
    def _make(username=None, **fields):
        username = username or f"dev{next(_counter)}"
        res = client.post("/auth/register", json={
            "username": username,
            "email": f"{username}@devconnect.io",
            "password": "s3cret-pass",
        })
        assert res.status_code == 201, res.text
        body = res.json()
        user = {
            "id": body["user"]["id"],
            "token": body["token"],
            "username": username,
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }
        if fields:
            db["user"].update_one({"_id": database.to_object_id(user["id"])}, {"$set": fields})
        return user
    return _make


@pytest.fixture
def make_post(client):
    def _make(user, content="Shipping the new feed today", **extra):
        res = client.post("/api/posts", json={"content": content, **extra}, headers=user["headers"])
        assert res.status_code == 201, res.text
        return res.json()
    return _make


def drain_join(ws):
    """Consume the frames the server sends right after a `join`."""
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["event"] == "initial_online_users":
            return frames


def sync(ws):
    # the pong comes back only after every earlier frame was handled
    ws.send_json({"event": "ping_heartbeat", "data": {}})
    while True:
        frame = ws.receive_json()
        if frame["event"] == "pong_heartbeat":
            return
