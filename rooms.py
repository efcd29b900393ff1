"""Room membership: creation, join requests, approval, membership edits and themes.

Every membership change is a single conditional update on the room document
so concurrent approve/leave calls cannot interleave half-applied writes.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pymongo.database import Database

import notifications
from database import ROOMS, USERS, create_document, delete_document, get_documents, oid, update_document
from errors import Conflict, Forbidden, Invalid, NotFound
from realtime import FanOutRouter
from schemas import Notification, NotificationType, Room, RoomTheme

logger = logging.getLogger(__name__)

PUBLIC_FIELDS = {"first_name": 1, "last_name": 1, "email": 1}


def room_out(room: Dict[str, Any], people: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    def expand(ids):
        if people is None:
            return list(ids)
        return [people[i] for i in ids if i in people]

    return {
        "id": str(room["_id"]),
        "name": room.get("name"),
        "description": room.get("description"),
        "tags": room.get("tags", []),
        "is_private": room.get("is_private", False),
        "created_by": room.get("created_by"),
        "members": expand(room.get("members", [])),
        "join_requests": expand(room.get("join_requests", [])),
        "theme": room.get("theme"),
        "created_at": room.get("created_at"),
        "updated_at": room.get("updated_at"),
    }


def _populated(db: Database, rooms: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = set()
    for r in rooms:
        ids.update(r.get("members", []))
        ids.update(r.get("join_requests", []))
    people = {
        str(u["_id"]): {"id": str(u["_id"]), "first_name": u.get("first_name"),
                        "last_name": u.get("last_name"), "email": u.get("email")}
        for u in db[USERS].find({"_id": {"$in": [oid(i) for i in ids]}}, PUBLIC_FIELDS)
    }
    return [room_out(r, people) for r in rooms]


def get_room(db: Database, room_id: str) -> Dict[str, Any]:
    room = db[ROOMS].find_one({"_id": oid(room_id)})
    if not room:
        raise NotFound("Room not found")
    return room


def _require_admin(room: Dict[str, Any], user_id: str, detail: str = "Not authorized") -> None:
    if room.get("created_by") != user_id:
        raise Forbidden(detail)


def _user_id_for_email(db: Database, email: str) -> str:
    user = db[USERS].find_one({"email": email}, {"_id": 1})
    if not user:
        raise NotFound("User not found")
    return str(user["_id"])


# ---------- Queries ----------

def create_room(db: Database, owner_id: str, name: str, description: Optional[str] = None,
                tags: Optional[List[str]] = None, is_private: bool = False) -> Dict[str, Any]:
    room = Room(
        name=name,
        description=description,
        tags=tags or [],
        is_private=is_private,
        created_by=owner_id,
        members=[owner_id],
    )
    room_id = create_document(db, ROOMS, room.model_dump(mode="json"))
    logger.info("User %s created room %s (private=%s)", owner_id, room_id, is_private)
    return room_out(get_room(db, room_id))


def list_rooms(db: Database, user_id: str) -> List[Dict[str, Any]]:
    rooms = get_documents(db, ROOMS, {"$or": [{"is_private": False}, {"members": user_id}]})
    return _populated(db, rooms)


def search_rooms(db: Database, q: str) -> List[Dict[str, Any]]:
    pattern = {"$regex": re.escape(q or ""), "$options": "i"}
    rooms = get_documents(db, ROOMS, {"$or": [{"name": pattern}, {"description": pattern}, {"tags": pattern}]})
    return _populated(db, rooms)


def list_my_rooms(db: Database, user_id: str) -> List[Dict[str, Any]]:
    return [room_out(r) for r in get_documents(db, ROOMS, {"members": user_id})]


def get_room_for_member(db: Database, user_id: str, room_id: str) -> Dict[str, Any]:
    room = get_room(db, room_id)
    if user_id not in room.get("members", []):
        raise Forbidden("You are not a member of this room")
    return _populated(db, [room])[0]


# ---------- Membership ----------

async def request_join(db: Database, fanout: FanOutRouter, user: Dict[str, Any], room_id: str) -> Dict[str, Any]:
    user_id = user["id"]
    room = db[ROOMS].find_one({"_id": oid(room_id)})
    if not room or not room.get("is_private"):
        raise NotFound("Room not found or not private")
    if user_id in room.get("members", []):
        raise Conflict("Already a member")

    matched = update_document(
        db, ROOMS,
        {"_id": room["_id"], "members": {"$ne": user_id}},
        {"$addToSet": {"join_requests": user_id}},
    )
    if not matched:
        raise Conflict("Already a member")

    notif = Notification(
        type=NotificationType.JOIN_REQUEST.value,
        message=f'{user.get("first_name") or "Someone"} requested to join "{room["name"]}"',
        room_id=str(room["_id"]),
        from_user=user_id,
    )
    admin_id = room["created_by"]
    try:
        doc = notifications.append(db, admin_id, notif)
    except NotFound:
        # admin account was deleted; the request still stands
        logger.warning("Room %s admin %s no longer exists", room_id, admin_id)
        return notif.model_dump()
    await fanout.emit_to_user(admin_id, "notification", doc)
    return doc


def approve(db: Database, admin_id: str, room_id: str, user_id: str) -> None:
    room = get_room(db, room_id)
    _require_admin(room, admin_id)
    if user_id not in room.get("join_requests", []):
        raise Invalid("User not in join requests")

    matched = update_document(
        db, ROOMS,
        {"_id": room["_id"], "created_by": admin_id, "join_requests": user_id},
        {"$pull": {"join_requests": user_id}, "$addToSet": {"members": user_id}},
    )
    if not matched:
        raise Invalid("User not in join requests")
    logger.info("User %s approved into room %s", user_id, room_id)


def join_public(db: Database, user_id: str, room_id: str) -> None:
    room = get_room(db, room_id)
    if room.get("is_private"):
        raise Forbidden("Cannot join private room directly")
    update_document(db, ROOMS, {"_id": room["_id"], "is_private": False}, {"$addToSet": {"members": user_id}})


def leave(db: Database, user_id: str, room_id: str) -> None:
    room = get_room(db, room_id)
    update_document(db, ROOMS, {"_id": room["_id"]}, {"$pull": {"members": user_id}})


def add_member(db: Database, admin_id: str, room_id: str, email: str) -> None:
    room = get_room(db, room_id)
    _require_admin(room, admin_id, "Only admin can add users")
    member_id = _user_id_for_email(db, email)
    update_document(db, ROOMS, {"_id": room["_id"]}, {"$addToSet": {"members": member_id}})


def remove_member(db: Database, admin_id: str, room_id: str, email: str) -> None:
    room = get_room(db, room_id)
    _require_admin(room, admin_id, "Only admin can remove users")
    member_id = _user_id_for_email(db, email)
    update_document(db, ROOMS, {"_id": room["_id"]}, {"$pull": {"members": member_id}})


def rename(db: Database, admin_id: str, room_id: str, name: Optional[str]) -> Dict[str, Any]:
    room = get_room(db, room_id)
    _require_admin(room, admin_id, "Only admin can rename room")
    if name:
        update_document(db, ROOMS, {"_id": room["_id"], "created_by": admin_id}, {"$set": {"name": name}})
    return room_out(get_room(db, room_id))


def delete_room(db: Database, admin_id: str, room_id: str) -> None:
    room = get_room(db, room_id)
    _require_admin(room, admin_id, "Only admin can delete room")
    delete_document(db, ROOMS, {"_id": room["_id"]})
    logger.info("Room %s deleted by %s", room_id, admin_id)


def validate_theme(theme: Any) -> str:
    try:
        return RoomTheme(theme).value
    except ValueError:
        raise Invalid("Invalid theme")


async def set_theme(db: Database, fanout: FanOutRouter, user_id: str, room_id: str, theme: Any) -> str:
    theme = validate_theme(theme)
    room = get_room(db, room_id)
    if user_id not in room.get("members", []):
        raise Forbidden("Only members can change theme")

    matched = update_document(db, ROOMS, {"_id": room["_id"], "members": user_id}, {"$set": {"theme": theme}})
    if not matched:
        raise Forbidden("Only members can change theme")
    await fanout.emit_to_room(room_id, "theme_updated", {"room_id": room_id, "theme": theme})
    return theme
