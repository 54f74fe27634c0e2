# tripchat/models/models.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """Verified user bound to a session handle at connect time."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    room_id: str
    sender_id: str
    sender_display_name: str = ""
    body: str
    created_at: datetime
    # Set on the copy a store hands back for a repeated idempotency key
    replayed: bool = Field(default=False, exclude=True)
    # ...and whether the room already received it live
    delivered: bool = Field(default=False, exclude=True)

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape shared by the ``new-message`` event and the history route."""
        return {
            "id": self.id,
            "roomId": self.room_id,
            "senderId": self.sender_id,
            "senderDisplayName": self.sender_display_name or self.sender_id,
            "body": self.body,
            "createdAt": self.created_at.isoformat(),
        }


# ============================================================================
# CLIENT -> SERVER EVENT PAYLOADS
# ============================================================================

class RoomEvent(BaseModel):
    room_id: str = Field(min_length=1, validation_alias=AliasChoices("roomId", "room_id", "tripId"))


class SendMessageEvent(RoomEvent):
    body: str = Field(validation_alias=AliasChoices("body", "message", "content"))
    # Display only; the handle's bound identity is what gets stored
    sender_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderId", "userId"))
    idempotency_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("idempotencyKey", "idempotency_key")
    )


class HistoryResponse(BaseModel):
    roomId: str
    messages: List[Dict[str, Any]]
