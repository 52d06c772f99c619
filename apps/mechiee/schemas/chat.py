"""Schemas for chat rooms, sessions, and messages.

Documents are stored with snake_case keys; the live wire format and the chat
routes emit camelCase (``senderId``, ``readBy``...) because the client UIs
consume those names.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mechiee.core.exceptions import ValidationError
from mechiee.schemas.booking import BookingRecord


class UserRole(str, Enum):
    customer = "customer"
    garage = "garage"
    mechanic = "mechanic"
    admin = "admin"


class RoomKind(str, Enum):
    booking = "booking"
    support = "support"
    admin_support = "admin_support"


# Longest prefix first so `admin_support_` never parses as a shorter tag.
_ROOM_PREFIXES = (
    ("admin_support_", RoomKind.admin_support),
    ("booking_", RoomKind.booking),
    ("support_", RoomKind.support),
)


@dataclass(frozen=True)
class RoomId:
    """Tagged room identifier: `booking_<id>`, `support_<id>`, `admin_support_<id>`."""

    kind: RoomKind
    target_id: str

    @classmethod
    def parse(cls, raw: str) -> "RoomId":
        value = (raw or "").strip()
        for prefix, kind in _ROOM_PREFIXES:
            if value.startswith(prefix) and len(value) > len(prefix):
                return cls(kind=kind, target_id=value[len(prefix) :])
        raise ValidationError(
            "Invalid room format",
            details="Room must start with 'booking_', 'support_' or 'admin_support_'",
        )

    @property
    def is_booking_scoped(self) -> bool:
        return self.kind in {RoomKind.booking, RoomKind.support}

    @property
    def channel(self) -> str:
        """Delivery group for the underlying conversation.

        `support_<id>` and `booking_<id>` are two labels for one booking
        conversation, so both map to the same group.
        """
        if self.is_booking_scoped:
            return f"booking_{self.target_id}"
        return str(self)

    def __str__(self) -> str:
        return f"{self.kind.value}_{self.target_id}"


def room_id_for(booking: BookingRecord) -> RoomId:
    """Current room tag for a booking's conversation.

    The tag is derived from live booking status on every call: `support_` while
    the booking is pending, `booking_` once a garage has accepted it.
    """
    kind = RoomKind.booking if booking.is_established else RoomKind.support
    return RoomId(kind=kind, target_id=booking.id)


class MessageType(str, Enum):
    text = "text"
    image = "image"
    file = "file"
    location = "location"
    system = "system"


class SupportStatus(str, Enum):
    open = "open"
    in_progress = "in_progress"
    resolved = "resolved"
    closed = "closed"


OPEN_TICKET_STATUSES = frozenset({SupportStatus.open, SupportStatus.in_progress})


class SupportPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class SupportCategory(str, Enum):
    technical_issue = "technical_issue"
    booking_issue = "booking_issue"
    payment_issue = "payment_issue"
    service_quality = "service_quality"
    other = "other"


class SupportType(str, Enum):
    technical = "technical"
    billing = "billing"
    general = "general"
    complaint = "complaint"
    feedback = "feedback"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, validate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Caller(BaseModel):
    """Authenticated identity handed to the core by the transport layer."""

    user_id: str = Field(min_length=1)
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


class ReadReceipt(_WireModel):
    user_id: str
    read_at: datetime


class Reaction(_WireModel):
    user_id: str
    emoji: str
    timestamp: datetime


class MessageLocation(_WireModel):
    lat: float
    lng: float
    address: Optional[str] = None


class ChatMessage(_WireModel):
    id: str
    session_id: str
    seq: int
    sender_id: str
    sender_role: str
    sender_name: str
    content: str
    message_type: MessageType = MessageType.text
    file_url: Optional[str] = None
    location: Optional[MessageLocation] = None
    read_by: List[ReadReceipt] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    is_deleted: bool = False
    is_system_message: bool = False
    is_support_message: bool = False
    priority: Optional[SupportPriority] = None
    timestamp: datetime

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> "ChatMessage":
        out = dict(doc)
        out["id"] = str(out.pop("_id"))
        return cls.model_validate(out)

    def is_read_by(self, user_id: str) -> bool:
        return any(r.user_id == user_id for r in self.read_by)


class ChatPermissions(_WireModel):
    can_send_message: bool = True
    can_send_files: bool = True
    can_send_location: bool = True


class Participants(_WireModel):
    """Participant snapshot taken when the session is created or re-synced."""

    customer_id: Optional[str] = None
    garage_id: Optional[str] = None
    mechanic_id: Optional[str] = None
    admin_id: Optional[str] = None

    def user_ids(self) -> List[str]:
        return [
            uid
            for uid in (self.customer_id, self.garage_id, self.mechanic_id, self.admin_id)
            if uid
        ]


class ChatSession(_WireModel):
    id: str
    booking_id: Optional[str] = None
    is_admin_chat: bool = False
    support_type: SupportType = SupportType.general
    support_status: SupportStatus = SupportStatus.open
    category: SupportCategory = SupportCategory.other
    priority: SupportPriority = SupportPriority.medium
    assigned_admin: Optional[str] = None
    created_by: Optional[str] = None
    participants: Participants = Field(default_factory=Participants)
    title: Optional[str] = None
    description: Optional[str] = None
    message_seq: int = 0
    is_active: bool = True
    permissions: ChatPermissions = Field(default_factory=ChatPermissions)
    last_activity: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> "ChatSession":
        out = dict(doc)
        out["id"] = str(out.pop("_id"))
        out.pop("open_ticket_owner", None)
        return cls.model_validate(out)

    @property
    def is_ticket(self) -> bool:
        return self.is_admin_chat and not self.booking_id

    def info(self, room_id: RoomId | str) -> dict[str, Any]:
        """Metadata sent to a connection as `chatSessionInfo` after it joins."""
        return {
            "roomId": str(room_id),
            "sessionId": self.id,
            "isAdminChat": self.is_admin_chat,
            "supportStatus": self.support_status.value,
            "priority": self.priority.value,
            "category": self.category.value,
            "title": self.title,
        }


class ResolvedRoom(BaseModel):
    """A room id bound to the session it resolved to."""

    room_id: str
    kind: RoomKind
    session: ChatSession
    booking: Optional[BookingRecord] = None

    @property
    def channel(self) -> str:
        return RoomId.parse(self.room_id).channel


class TicketCreate(BaseModel):
    category: SupportCategory
    priority: SupportPriority = SupportPriority.medium
    support_type: SupportType = SupportType.general
    description: Optional[str] = None


class TicketUpdate(BaseModel):
    support_status: Optional[SupportStatus] = None
    priority: Optional[SupportPriority] = None
    assigned_admin: Optional[str] = None


class SendMessageRequest(BaseModel):
    room_id: str = Field(min_length=1, alias="roomId")
    content: str = Field(min_length=1)
    message_type: MessageType = Field(default=MessageType.text, alias="messageType")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    location: Optional[MessageLocation] = None

    model_config = ConfigDict(validate_by_name=True)


class RoomSummary(_WireModel):
    id: str
    type: RoomKind
    chat_id: str
    booking_id: Optional[str] = None
    participants: Participants
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0
    support_status: Optional[SupportStatus] = None
    priority: Optional[SupportPriority] = None
    category: Optional[SupportCategory] = None
    created_at: datetime
    updated_at: datetime


class SupportStats(BaseModel):
    total_chats: int
    open_chats: int
    in_progress_chats: int
    status_breakdown: dict[str, int]
