import logging
from typing import Any, Dict, List

from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

import notifications
from database import MESSAGES, USERS, create_document, delete_document, get_documents, oid
from errors import Forbidden, NotFound
from realtime import FanOutRouter
from rooms import get_room
from schemas import Message, Notification, NotificationType

logger = logging.getLogger(__name__)


def _senders(db: Database, sender_ids) -> Dict[str, Dict[str, Any]]:
    return {
        str(u["_id"]): {"id": str(u["_id"]), "first_name": u.get("first_name"), "email": u.get("email")}
        for u in db[USERS].find({"_id": {"$in": [oid(s) for s in set(sender_ids)]}}, {"first_name": 1, "email": 1})
    }


def message_out(msg: Dict[str, Any], senders: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": str(msg["_id"]),
        "room_id": msg.get("room_id"),
        "sender": senders.get(msg.get("sender_id"), {"id": msg.get("sender_id")}),
        "content": msg.get("content"),
        "created_at": msg.get("created_at"),
    }


async def send_message(db: Database, fanout: FanOutRouter, sender: Dict[str, Any], room_id: str,
                       text: str) -> Dict[str, Any]:
    """Persist a message, broadcast it to the room and notify the other members."""
    sender_id = sender["id"]
    room = get_room(db, room_id)
    room_id = str(room["_id"])

    msg = Message(room_id=room_id, sender_id=sender_id, content=text)
    msg_id = create_document(db, MESSAGES, msg.model_dump())
    stored = db[MESSAGES].find_one({"_id": oid(msg_id)})
    out = message_out(stored, _senders(db, [sender_id]))

    await fanout.emit_to_room(room_id, "receive_message", {**out, "room": room_id})

    recipients = [m for m in room.get("members", []) if m != sender_id]
    if not recipients:
        return out

    notif = Notification(
        type=NotificationType.MESSAGE.value,
        message=f'{sender.get("first_name") or "Someone"} sent a message in "{room["name"]}"',
        room_id=room_id,
        from_user=sender_id,
    )
    try:
        doc = notifications.append_many(db, recipients, notif)
    except PyMongoError:
        logger.exception("Message %s saved but member notifications failed for room %s", msg_id, room_id)
        raise
    payload = {**doc, "path": notifications.notification_path(doc)}
    for member_id in recipients:
        await fanout.emit_to_user(member_id, "notification", payload)
    return out


def list_for_room(db: Database, room_id: str) -> List[Dict[str, Any]]:
    msgs = get_documents(db, MESSAGES, {"room_id": room_id}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)])
    senders = _senders(db, [m.get("sender_id") for m in msgs if m.get("sender_id")])
    return [message_out(m, senders) for m in msgs]


def delete_one(db: Database, user_id: str, message_id: str) -> None:
    msg = db[MESSAGES].find_one({"_id": oid(message_id)})
    if not msg:
        raise NotFound("Message not found")
    if msg.get("sender_id") != user_id:
        raise Forbidden("You can only delete your own messages")
    delete_document(db, MESSAGES, {"_id": msg["_id"]})


def clear_room(db: Database, user_id: str, room_id: str) -> int:
    room = get_room(db, room_id)
    if user_id not in room.get("members", []):
        raise Forbidden("You must be a member to clear chat")
    result = db[MESSAGES].delete_many({"room_id": room_id})
    logger.info("User %s cleared %d messages in room %s", user_id, result.deleted_count, room_id)
    return result.deleted_count
