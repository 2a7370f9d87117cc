"""
User identity resolution.

Users can be reached by their storage id (the Mongo `_id`) or by the subject
their OAuth provider gave them (`oauth_id`). Older documents across the
collections are keyed by either one. This module is the single place that
knows about both: writes use `Identity.canonical_id`, reads use
`Identity.all_ids`.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from database import get_collection, to_object_id


@dataclass
class Identity:
    canonical_id: str
    alternate_ids: List[str] = field(default_factory=list)
    user: Optional[dict] = None

    @property
    def all_ids(self) -> List[str]:
        return [self.canonical_id] + [i for i in self.alternate_ids if i != self.canonical_id]

    @property
    def rooms(self) -> List[str]:
        return [f"user:{i}" for i in self.all_ids]

    @property
    def exists(self) -> bool:
        return self.user is not None

    def matches(self, user_id: Optional[str]) -> bool:
        return user_id is not None and user_id in self.all_ids


def find_user(user_id: Optional[str]) -> Optional[dict]:
    if not user_id:
        return None
    users = get_collection("user")
    oid = to_object_id(user_id)
    if oid is not None:
        user = users.find_one({"_id": oid})
        if user:
            return user
    return users.find_one({"oauth_id": user_id})


def identity_for_user(user: dict, requested_id: Optional[str] = None) -> Identity:
    canonical = str(user["_id"])
    alternates = []
    for candidate in (requested_id, user.get("oauth_id")):
        if candidate and candidate != canonical and candidate not in alternates:
            alternates.append(candidate)
    return Identity(canonical_id=canonical, alternate_ids=alternates, user=user)


def resolve_identity(user_id: str) -> Identity:
    """Resolve any known id for a user to its canonical id plus alternates.

    Unknown ids resolve to themselves so callers can keep using them.
    """
    user = find_user(user_id)
    if user is None:
        return Identity(canonical_id=user_id)
    return identity_for_user(user, user_id)


def normalize_id(user_id: str) -> str:
    return resolve_identity(user_id).canonical_id


def user_summary(user: Optional[dict], fallback_id: Optional[str] = None) -> dict:
    if not user:
        return {"id": fallback_id, "name": "User", "username": None, "avatar_url": None, "alternative_ids": []}
    canonical = str(user["_id"])
    return {
        "id": canonical,
        "name": user.get("name") or user.get("username") or "User",
        "username": user.get("username"),
        "avatar_url": user.get("avatar_url"),
        "alternative_ids": [user["oauth_id"]] if user.get("oauth_id") and user["oauth_id"] != canonical else [],
    }
