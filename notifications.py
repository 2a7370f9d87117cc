import logging
from datetime import timedelta
from typing import Optional

import config
from database import get_collection, now_utc, serialize
from identity import Identity
from realtime import ConnectionManager
from schemas import Notification as NotificationSchema

logger = logging.getLogger(__name__)

BATCHED_MESSAGES = {
    "like": "{count} people liked your post",
    "comment": "{count} people commented on your post",
    "follow": "{count} people started following you",
}


def create_notification(
    target: Identity,
    type: str,
    title: str,
    message: str,
    link: Optional[str] = None,
    actor_id: Optional[str] = None,
    post_id: Optional[str] = None,
) -> dict:
    """Insert a notification, or fold it into a similar unread one from the last day."""
    notifications = get_collection("notification")
    since = now_utc() - timedelta(hours=config.NOTIFICATION_BATCH_HOURS)
    existing = notifications.find_one({
        "user_id": {"$in": target.all_ids},
        "type": type,
        "link": link,
        "read": False,
        "created_at": {"$gte": since},
    })

    if existing:
        contributors = list(existing.get("contributors") or [])
        if actor_id and actor_id not in contributors:
            contributors.append(actor_id)
        new_message = message
        if len(contributors) > 1 and type in BATCHED_MESSAGES:
            new_message = BATCHED_MESSAGES[type].format(count=len(contributors))
        notifications.update_one(
            {"_id": existing["_id"]},
            {"$set": {"message": new_message, "contributors": contributors, "updated_at": now_utc()}},
        )
        logger.debug("Folded %s notification into %s", type, existing["_id"])
        return notifications.find_one({"_id": existing["_id"]})

    doc = NotificationSchema(
        user_id=target.canonical_id,
        type=type,
        title=title,
        message=message,
        link=link,
        post_id=post_id,
        actor_id=actor_id,
        contributors=[actor_id] if actor_id else [],
    ).model_dump()
    ts = now_utc()
    doc["created_at"] = ts
    doc["updated_at"] = ts
    res = notifications.insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


async def notify(manager: ConnectionManager, target: Identity, **fields) -> dict:
    notification = create_notification(target, **fields)
    await manager.emit_to_user(target, "notification", serialize(notification))
    return notification
