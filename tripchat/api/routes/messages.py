# tripchat/api/routes/messages.py

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from tripchat.core.errors import StoreUnavailable
from tripchat.models.models import HistoryResponse, Identity
from tripchat.services.auth_service import get_current_user

router = APIRouter()

# ============================================================================
# CHAT HISTORY ENDPOINT
# ============================================================================

@router.get("/rooms/{room_id}/messages", response_model=HistoryResponse)
async def list_messages(
    room_id: str,
    request: Request,
    since: Optional[int] = Query(default=None, description="Only messages with an id greater than this"),
    current_user: Identity = Depends(get_current_user),
):
    """
    Persisted chat history for a room, oldest first.

    Loaded by the trip page before the live connection attaches; each item
    has the same shape as a "new-message" broadcast, so the client can merge
    the two streams by message id.

    Raises:
        HTTPException: 401 without a valid session, 403 if the user is not
        a member of the trip, 503 if the message store cannot be read
    """
    gateway = request.app.state.gateway

    if not await gateway.can_view(current_user.user_id, room_id):
        raise HTTPException(status_code=403, detail="You are not a member of this trip")

    try:
        messages = await gateway.history(room_id, since)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message)

    return {"roomId": room_id, "messages": [m.to_payload() for m in messages]}
