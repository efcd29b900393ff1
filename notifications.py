import logging
from typing import Any, Dict, Iterable, List

from pymongo.database import Database

from database import ROOMS, USERS, oid, update_document
from errors import NotFound
from schemas import CHAT_NOTIFICATION_TYPES, Notification

logger = logging.getLogger(__name__)


def notification_path(notif: Dict[str, Any]) -> str:
    if notif.get("type") in CHAT_NOTIFICATION_TYPES and notif.get("room_id"):
        return f"/chat/{notif['room_id']}"
    return "/dashboard"


def append(db: Database, user_id: str, notification: Notification) -> Dict[str, Any]:
    """Push one notification to the end of a user's list."""
    doc = notification.model_dump()
    matched = update_document(db, USERS, {"_id": oid(user_id)}, {"$push": {"notifications": doc}})
    if not matched:
        raise NotFound("User not found")
    return doc


def append_many(db: Database, user_ids: Iterable[str], notification: Notification) -> Dict[str, Any]:
    """Push the same notification to several users in a single write.

    The notification id is shared; ids only need to be unique within one
    user's list.
    """
    doc = notification.model_dump()
    ids = [oid(u) for u in user_ids]
    if ids:
        result = db[USERS].update_many({"_id": {"$in": ids}}, {"$push": {"notifications": doc}})
        if result.matched_count != len(ids):
            logger.warning("Notification %s reached %d of %d users", doc["id"], result.matched_count, len(ids))
    return doc


def list_for_user(db: Database, user_id: str) -> List[Dict[str, Any]]:
    user = db[USERS].find_one({"_id": oid(user_id)}, {"notifications": 1})
    if not user:
        raise NotFound("User not found")

    notifs = user.get("notifications", [])
    ordered = [n for _, n in sorted(enumerate(notifs), key=lambda p: (p[1]["created_at"], p[0]), reverse=True)]

    sender_ids = {n["from_user"] for n in ordered if n.get("from_user")}
    room_ids = {n["room_id"] for n in ordered if n.get("room_id")}
    senders = {
        str(u["_id"]): {"id": str(u["_id"]), "first_name": u.get("first_name"), "last_name": u.get("last_name")}
        for u in db[USERS].find({"_id": {"$in": [oid(s) for s in sender_ids]}}, {"first_name": 1, "last_name": 1})
    }
    rooms = {
        str(r["_id"]): {"id": str(r["_id"]), "name": r.get("name")}
        for r in db[ROOMS].find({"_id": {"$in": [oid(r) for r in room_ids]}}, {"name": 1})
    }

    res = []
    for n in ordered:
        res.append({
            "id": n["id"],
            "type": n.get("type"),
            "message": n.get("message"),
            "is_read": n.get("is_read", False),
            "created_at": n.get("created_at"),
            "from_user": senders.get(n.get("from_user"), n.get("from_user")),
            "room_id": n.get("room_id"),
            "room": rooms.get(n.get("room_id")),
            "path": notification_path(n),
        })
    return res


def mark_read(db: Database, user_id: str, notification_id: str) -> None:
    matched = update_document(
        db,
        USERS,
        {"_id": oid(user_id), "notifications.id": notification_id},
        {"$set": {"notifications.$.is_read": True}},
    )
    if not matched:
        raise NotFound("Notification not found")
