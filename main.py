import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import auth
import config
import database
import messages
import notifications
import rooms
from database import ROOMS, USERS, get_db, oid, update_document
from errors import Forbidden, Invalid, NotFound, Unauthorized
from realtime import FanOutRouter
from schemas import NotificationType, ThemePreference

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the fan-out router and make sure indexes exist."""
    app.state.fanout = FanOutRouter()
    try:
        database.ensure_indexes(database.get_db())
    except (PyMongoError, RuntimeError) as e:
        logger.error("Could not ensure indexes: %s", e)
    logger.info("Connectly API started")
    yield
    logger.info("Shutting down, closing live connections")
    await app.state.fanout.close()


app = FastAPI(title="Connectly API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def mongo_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# -----------------------------
# Dependencies
# -----------------------------

def get_fanout(request: Request) -> FanOutRouter:
    return request.app.state.fanout


db_dependency = Annotated[Database, Depends(get_db)]
user_dependency = Annotated[Dict[str, Any], Depends(auth.get_current_user)]
fanout_dependency = Annotated[FanOutRouter, Depends(get_fanout)]


# -----------------------------
# Models
# -----------------------------
class RegisterRequest(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    email: EmailStr
    password: str
    repassword: str
    dob: Optional[datetime] = None
    security_question: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str
    new_password: str


class CreateRoomRequest(BaseModel):
    name: str
    description: Optional[str] = None
    tags: List[str] = []
    is_private: bool = False


class RenameRoomRequest(BaseModel):
    name: Optional[str] = None


class ApproveRequest(BaseModel):
    user_id: str


class MemberEmailRequest(BaseModel):
    email: str


class RoomThemeRequest(BaseModel):
    theme: str


class SendMessageRequest(BaseModel):
    room_id: str
    message: str = Field(..., min_length=1)


# -----------------------------
# Routes
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Connectly API running"}


# Auth
@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: db_dependency):
    user_id = auth.register_user(
        db,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        password=payload.password,
        repassword=payload.repassword,
        dob=payload.dob,
        security_question=payload.security_question,
    )
    return {"msg": "User registered successfully", "user_id": user_id}


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: db_dependency):
    return auth.login_user(db, payload.email, payload.password)


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: db_dependency):
    auth.start_password_reset(db, payload.email)
    return {"msg": "OTP sent to email"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, db: db_dependency):
    auth.reset_password(db, payload.email, payload.otp, payload.new_password)
    return {"msg": "Password reset successful"}


# Rooms
@app.post("/api/rooms/create", status_code=status.HTTP_201_CREATED)
def create_room(payload: CreateRoomRequest, db: db_dependency, user: user_dependency):
    return rooms.create_room(db, user["id"], payload.name, payload.description, payload.tags, payload.is_private)


@app.get("/api/rooms")
def list_rooms(db: db_dependency, user: user_dependency):
    return rooms.list_rooms(db, user["id"])


@app.get("/api/rooms/search")
def search_rooms(db: db_dependency, user: user_dependency, q: str = ""):
    return rooms.search_rooms(db, q)


@app.get("/api/rooms/my")
def list_my_rooms(db: db_dependency, user: user_dependency):
    return rooms.list_my_rooms(db, user["id"])


@app.get("/api/rooms/{room_id}")
def get_room(room_id: str, db: db_dependency, user: user_dependency):
    return rooms.get_room_for_member(db, user["id"], room_id)


@app.post("/api/rooms/{room_id}/request")
async def request_join(room_id: str, db: db_dependency, user: user_dependency, fanout: fanout_dependency):
    await rooms.request_join(db, fanout, user, room_id)
    return {"msg": "Join request (re)sent successfully"}


@app.post("/api/rooms/{room_id}/approve")
def approve_join(room_id: str, payload: ApproveRequest, db: db_dependency, user: user_dependency):
    rooms.approve(db, user["id"], room_id, payload.user_id)
    return {"msg": "User approved and added to room"}


@app.post("/api/rooms/{room_id}/join")
def join_room(room_id: str, db: db_dependency, user: user_dependency):
    rooms.join_public(db, user["id"], room_id)
    return {"msg": "Joined room"}


@app.put("/api/rooms/{room_id}")
def rename_room(room_id: str, payload: RenameRoomRequest, db: db_dependency, user: user_dependency):
    return rooms.rename(db, user["id"], room_id, payload.name)


@app.post("/api/rooms/{room_id}/leave")
def leave_room(room_id: str, db: db_dependency, user: user_dependency):
    rooms.leave(db, user["id"], room_id)
    return {"msg": "Left the room"}


@app.delete("/api/rooms/{room_id}")
def delete_room(room_id: str, db: db_dependency, user: user_dependency):
    rooms.delete_room(db, user["id"], room_id)
    return {"msg": "Room deleted"}


@app.post("/api/rooms/{room_id}/add")
def add_member(room_id: str, payload: MemberEmailRequest, db: db_dependency, user: user_dependency):
    rooms.add_member(db, user["id"], room_id, payload.email)
    return {"msg": "User added"}


@app.post("/api/rooms/{room_id}/remove")
def remove_member(room_id: str, payload: MemberEmailRequest, db: db_dependency, user: user_dependency):
    rooms.remove_member(db, user["id"], room_id, payload.email)
    return {"msg": "User removed"}


@app.post("/api/rooms/{room_id}/theme")
async def set_room_theme(room_id: str, payload: RoomThemeRequest, db: db_dependency, user: user_dependency,
                         fanout: fanout_dependency):
    theme = await rooms.set_theme(db, fanout, user["id"], room_id, payload.theme)
    return {"msg": "Theme updated", "theme": theme}


# Messages
@app.post("/api/messages", status_code=status.HTTP_201_CREATED)
async def send_message(payload: SendMessageRequest, db: db_dependency, user: user_dependency,
                       fanout: fanout_dependency):
    return await messages.send_message(db, fanout, user, payload.room_id, payload.message)


@app.get("/api/messages/{room_id}")
def get_messages(room_id: str, db: db_dependency, user: user_dependency):
    return messages.list_for_room(db, room_id)


@app.delete("/api/messages/room/{room_id}")
def clear_room_messages(room_id: str, db: db_dependency, user: user_dependency):
    deleted = messages.clear_room(db, user["id"], room_id)
    return {"msg": "Chat cleared successfully", "deleted": deleted}


@app.delete("/api/messages/{msg_id}")
def delete_message(msg_id: str, db: db_dependency, user: user_dependency):
    messages.delete_one(db, user["id"], msg_id)
    return {"msg": "Message deleted"}


# Users
@app.get("/api/users")
def list_users(db: db_dependency):
    users = db[USERS].find({}, {"first_name": 1, "last_name": 1, "email": 1})
    return [{"id": str(u["_id"]), "first_name": u.get("first_name"), "last_name": u.get("last_name"),
             "email": u.get("email")} for u in users]


@app.get("/api/users/me")
def get_me(db: db_dependency, user: user_dependency):
    doc = db[USERS].find_one({"_id": oid(user["id"])}, {"password_hash": 0, "otp": 0, "otp_expires": 0})
    if not doc:
        raise NotFound("User not found")
    doc["id"] = str(doc.pop("_id"))
    return doc


@app.get("/api/users/notifications")
def list_notifications(db: db_dependency, user: user_dependency):
    return notifications.list_for_user(db, user["id"])


@app.post("/api/users/notifications/{notif_id}/read")
def mark_notification_read(notif_id: str, db: db_dependency, user: user_dependency):
    notifications.mark_read(db, user["id"], notif_id)
    return {"msg": "Notification marked as read"}


@app.delete("/api/users/delete")
def delete_me(db: db_dependency, user: user_dependency):
    database.delete_document(db, USERS, {"_id": oid(user["id"])})
    return {"msg": "User deleted"}


@app.put("/api/users/theme")
def update_theme(payload: ThemePreference, db: db_dependency, user: user_dependency):
    theme = payload.model_dump()
    if not update_document(db, USERS, {"_id": oid(user["id"])}, {"$set": {"theme": theme}}):
        raise NotFound("User not found")
    return theme


# -----------------------------
# WebSocket
# -----------------------------
def _str_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise Invalid(f"{key} must be a non-empty string")
    return value


async def _on_send_message(db: Database, fanout: FanOutRouter, conn_id: str, data: Dict[str, Any]):
    user_id = fanout.user_for(conn_id)
    if not user_id:
        raise Invalid("Register before sending messages")
    room_id = _str_field(data, "roomId")
    text = data.get("message")
    if not isinstance(text, str) or not text:
        raise Invalid("Message text is required")
    sender = db[USERS].find_one({"_id": oid(user_id)}, {"first_name": 1})
    if not sender:
        raise NotFound("User not found")
    await messages.send_message(db, fanout, {"id": user_id, "first_name": sender.get("first_name")}, room_id, text)


async def _on_join_request_notification(db: Database, fanout: FanOutRouter, data: Dict[str, Any]):
    room_id = _str_field(data, "roomId")
    to_user_id = _str_field(data, "toUserId")
    room = db[ROOMS].find_one({"_id": oid(room_id)}, {"name": 1})
    if not room:
        return
    from_user = data.get("fromUser") or {}
    first_name = from_user.get("firstName") if isinstance(from_user, dict) else None
    await fanout.emit_to_user(to_user_id, "notification", {
        "type": NotificationType.JOIN_REQUEST.value,
        "room_id": room_id,
        "from_user": from_user,
        "message": f'{first_name or "Someone"} requested to join "{room["name"]}"',
    })


def _on_register(fanout: FanOutRouter, conn_id: str, token: Optional[str], data: Any):
    """Bind the connection to the user named by the ``token`` query parameter."""
    if not token:
        raise Unauthorized("No token, access denied")
    claims = auth.decode_access_token(token)
    if data is not None and data != claims["id"]:
        raise Forbidden("Cannot register as another user")
    fanout.register(claims["id"], conn_id)


async def handle_socket_event(db: Database, fanout: FanOutRouter, conn_id: str, event: str, data: Any,
                              token: Optional[str] = None):
    if event == "register":
        _on_register(fanout, conn_id, token, data)
    elif event == "join_room":
        if not isinstance(data, str) or not data:
            raise Invalid("join_room expects a room id")
        fanout.join_room_topic(conn_id, data)
    elif event in ("send_message", "theme_update", "join_request_notification"):
        if not isinstance(data, dict):
            raise Invalid(f"{event} expects an object")
        if event == "send_message":
            await _on_send_message(db, fanout, conn_id, data)
        elif event == "theme_update":
            theme = rooms.validate_theme(data.get("theme"))
            room_id = _str_field(data, "roomId")
            await fanout.emit_to_room(room_id, "theme_updated", {"room_id": room_id, "theme": theme})
        else:
            await _on_join_request_notification(db, fanout, data)
    else:
        raise Invalid(f"Unknown event: {event}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    fanout: FanOutRouter = websocket.app.state.fanout
    token = websocket.query_params.get("token")
    await websocket.accept()
    conn_id = fanout.connect(websocket)
    logger.info("Connected: %s", conn_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise Invalid("Frames must be JSON objects")
                await handle_socket_event(get_db(), fanout, conn_id, frame.get("type"), frame.get("payload"), token)
            except ValueError:
                await websocket.send_json({"type": "error", "payload": {"detail": "Malformed frame"}})
            except HTTPException as e:
                await websocket.send_json({"type": "error", "payload": {"detail": e.detail}})
            except PyMongoError as e:
                logger.error("Database error on socket %s", conn_id, exc_info=e)
                await websocket.send_json({"type": "error", "payload": {"detail": "Internal server error"}})
    except WebSocketDisconnect:
        pass
    finally:
        fanout.disconnect(conn_id)
        logger.info("Disconnected: %s", conn_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
