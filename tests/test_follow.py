from database import to_object_id


def counts(db, user):
    doc = db["user"].find_one({"_id": to_object_id(user["id"])})
    return doc.get("followers_count", 0), doc.get("following_count", 0)


def test_follow_then_unfollow_restores_counters(client, db, make_user):
    alice, bob = make_user(), make_user()

    res = client.post("/api/follow", json={"following_id": bob["id"]}, headers=alice["headers"])
    assert res.json() == {"is_following": True, "is_requested": False}
    assert counts(db, bob) == (1, 0)
    assert counts(db, alice) == (0, 1)
    assert db["notification"].count_documents({"user_id": bob["id"], "type": "follow"}) == 1

    res = client.post("/api/follow", json={"following_id": bob["id"]}, headers=alice["headers"])
    assert res.json() == {"is_following": False, "is_requested": False}
    assert counts(db, bob) == (0, 0)
    assert counts(db, alice) == (0, 0)
    assert db["follow"].count_documents({}) == 0


def test_cannot_follow_yourself(client, make_user):
    alice = make_user()
    res = client.post("/api/follow", json={"following_id": alice["id"]}, headers=alice["headers"])
    assert res.status_code == 400


def test_private_account_gets_a_request(client, db, make_user):
    alice, carol = make_user(), make_user(is_private=True)

    res = client.post("/api/follow", json={"following_id": carol["id"]}, headers=alice["headers"])
    assert res.json() == {"is_following": False, "is_requested": True}
    assert db["follow"].find_one({})["status"] == "pending"
    assert counts(db, carol) == (0, 0)
    assert db["notification"].find_one({"user_id": carol["id"]})["type"] == "follow_request"

    # withdrawing a pending request leaves counters alone
    client.post("/api/follow", json={"following_id": carol["id"]}, headers=alice["headers"])
    assert db["follow"].count_documents({}) == 0
    assert counts(db, carol) == (0, 0)


def test_follow_by_oauth_subject_is_stored_canonically(client, db, make_user):
    alice = make_user()
    bob = make_user()
    db["user"].update_one({"_id": to_object_id(bob["id"])}, {"$set": {"oauth_id": "gh-bob"}})

    client.post("/api/follow", json={"following_id": "gh-bob"}, headers=alice["headers"])
    assert db["follow"].find_one({})["following_id"] == bob["id"]

    # unfollowing through the other id finds the same edge
    res = client.post("/api/follow", json={"following_id": bob["id"]}, headers=alice["headers"])
    assert res.json()["is_following"] is False
    assert counts(db, bob) == (0, 0)


def test_follow_unknown_user_is_404(client, make_user):
    alice = make_user()
    res = client.post("/api/follow", json={"following_id": "missing-user"}, headers=alice["headers"])
    assert res.status_code == 404


def test_unfollow_on_drifted_counters_stays_at_zero(client, db, make_user):
    alice, bob = make_user(), make_user()
    client.post("/api/follow", json={"following_id": bob["id"]}, headers=alice["headers"])
    db["user"].update_one({"_id": to_object_id(bob["id"])}, {"$set": {"followers_count": 0}})
    db["user"].update_one({"_id": to_object_id(alice["id"])}, {"$set": {"following_count": 0}})

    res = client.post("/api/follow", json={"following_id": bob["id"]}, headers=alice["headers"])
    assert res.json()["is_following"] is False
    assert counts(db, bob) == (0, 0)
    assert counts(db, alice) == (0, 0)
