from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..core.config import CHAT_HISTORY_LIMIT
from ..models import User
from ..schemas import (
    ChatMessageIn,
    ChatMessageOut,
    ChatSettingsIn,
    ChatSettingsOut,
    ModerationActionIn,
    ModerationActionOut,
    ModerationStatusOut,
    ModerationStatusPatch,
)
from ..services.chat import ChatService
from .deps import get_chat_service, get_current_user, require_admin

router = APIRouter()


@router.get("/messages", response_model=List[ChatMessageOut])
def list_messages(
    stream_id: Optional[str] = None,
    limit: int = Query(CHAT_HISTORY_LIMIT, ge=1, le=500),
    _: User = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.get_messages(stream_id=stream_id, limit=limit)


@router.post("/messages", response_model=ChatMessageOut, status_code=status.HTTP_201_CREATED)
def send_message(
    payload: ChatMessageIn,
    current_user: User = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.send_message(current_user, payload.message, stream_id=payload.stream_id)


@router.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_message(
    message_id: str,
    _: User = Depends(require_admin),
    chat: ChatService = Depends(get_chat_service),
):
    chat.delete_message(message_id)


@router.delete("/users/{user_id}/messages")
def delete_user_messages(
    user_id: str,
    _: User = Depends(require_admin),
    chat: ChatService = Depends(get_chat_service),
):
    return {"deleted": chat.bulk_delete_user_messages(user_id)}


@router.post(
    "/moderation/actions",
    response_model=ModerationActionOut,
    status_code=status.HTTP_201_CREATED,
)
def create_moderation_action(
    payload: ModerationActionIn,
    moderator: User = Depends(require_admin),
    chat: ChatService = Depends(get_chat_service),
):
    action, _ = chat.moderate_user(
        payload.user_id,
        payload.action_type,
        payload.reason,
        moderator,
        duration=payload.duration,
        expected_version=payload.expected_version,
    )
    return action


@router.get(
    "/moderation/users/{user_id}/history",
    response_model=List[ModerationActionOut],
)
def get_moderation_history(
    user_id: str,
    _: User = Depends(require_admin),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.get_user_moderation_history(user_id)


@router.get(
    "/moderation/users/{user_id}/status",
    response_model=Optional[ModerationStatusOut],
)
def get_moderation_status(
    user_id: str,
    current_user: User = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    if user_id != current_user.id and not current_user.is_admin:
        # Non-admins may only look at their own standing.
        user_id = current_user.id
    return chat.get_user_moderation_status(user_id)


@router.patch(
    "/moderation/users/{user_id}/status",
    response_model=ModerationStatusOut,
)
def patch_moderation_status(
    user_id: str,
    payload: ModerationStatusPatch,
    _: User = Depends(require_admin),
    chat: ChatService = Depends(get_chat_service),
):
    changes = payload.model_dump(exclude_unset=True)
    expected_version = changes.pop("expected_version", None)
    return chat.update_user_moderation_status(
        user_id, changes, expected_version=expected_version
    )


@router.get("/settings", response_model=ChatSettingsOut)
def get_settings(
    _: User = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.get_chat_settings()


@router.put("/settings", response_model=ChatSettingsOut)
def put_settings(
    payload: ChatSettingsIn,
    _: User = Depends(require_admin),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.update_chat_settings(payload.model_dump())
