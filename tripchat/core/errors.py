# tripchat/core/errors.py

from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """
    Base class for every refusal the gateway reports to a single handle.

    ``code`` is the machine-readable value sent in the ``error`` frame.
    """

    code = "chat_error"

    def __init__(self, message: str = "", *, room_id: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.room_id = room_id


class AuthenticationRequired(ChatError):
    code = "authentication_required"


class NotAMember(ChatError):
    code = "not_a_member"


class NotJoined(ChatError):
    code = "not_joined"


class ValidationError(ChatError):
    code = "validation_error"


class StoreUnavailable(ChatError):
    code = "store_unavailable"
