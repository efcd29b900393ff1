from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, EmailStr, Field


class RoomTheme(str, Enum):
    BLUE = "blue"
    PINK = "pink"
    GREEN = "green"
    ORANGE = "orange"
    PURPLE = "purple"
    GRAY = "gray"
    DARK = "dark"


class NotificationType(str, Enum):
    MESSAGE = "message"
    NEW_MESSAGE = "new_message"
    JOIN_REQUEST = "join_request"


# Notification types that link to a chat instead of the dashboard
CHAT_NOTIFICATION_TYPES = {NotificationType.MESSAGE.value, NotificationType.NEW_MESSAGE.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ThemePreference(BaseModel):
    background: str = Field("#ffffff", description="Page background colour")
    text_color: str = Field("#000000", description="Body text colour")
    accent_color: str = Field("#3b82f6", description="Accent colour for buttons and links")


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: str(ObjectId()), description="Id unique within the owner's list")
    type: str = Field(..., description="message, new_message, join_request, ...")
    message: str = Field(..., description="Human readable text")
    room_id: Optional[str] = Field(None, description="Room the event refers to")
    from_user: Optional[str] = Field(None, description="User that caused the event")
    is_read: bool = Field(False, description="Whether the owner has read it")
    created_at: datetime = Field(default_factory=_utcnow)


class User(BaseModel):
    first_name: str = Field(..., description="Given name")
    last_name: Optional[str] = Field(None, description="Family name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="Argon2 password hash")
    dob: Optional[datetime] = Field(None, description="Date of birth")
    security_question: Optional[str] = Field(None, description="Security question answer")
    notifications: List[Notification] = Field(default_factory=list)
    theme: ThemePreference = Field(default_factory=ThemePreference)


class Room(BaseModel):
    name: str = Field(..., description="Room name")
    description: Optional[str] = Field(None, description="Free text description")
    tags: List[str] = Field(default_factory=list, description="Search tags")
    is_private: bool = Field(False, description="Private rooms are joined by request")
    created_by: str = Field(..., description="Admin user ID")
    members: List[str] = Field(default_factory=list, description="Member user IDs")
    join_requests: List[str] = Field(default_factory=list, description="Pending requester user IDs")
    theme: RoomTheme = Field(RoomTheme.BLUE, description="Theme shared by all members")


class Message(BaseModel):
    room_id: str = Field(..., description="Room ID")
    sender_id: str = Field(..., description="User ID of sender")
    content: str = Field(..., min_length=1, description="Message text content")
