"""
Chat log, moderation audit log, per-user moderation status, and chat settings.

Messages are never removed, only flagged ``is_deleted``. Moderation actions
are append-only. Moderation status is patched field by field and carries a
``version`` so two moderators cannot silently overwrite each other.

Settings are enforced when a message is sent: bans and unexpired mutes
reject, banned keywords reject, slow mode rejects early messages, and
auto-delete keywords store the message already hidden.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import bleach
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import (
    CHAT_DEFAULT_SLOW_MODE_DELAY,
    CHAT_HISTORY_LIMIT,
    CHAT_MESSAGE_MAX_LENGTH,
)
from ..core.errors import (
    ChatForbidden,
    ModerationConflict,
    NotFound,
    RemoteWriteFailed,
    SlowModeActive,
    ValidationFailed,
)
from ..core.events import EventHub
from ..models import ChatMessage, ChatModerationAction, ChatSettings, User, UserModerationStatus

logger = logging.getLogger(__name__)

CHAT_TOPIC = "chat.message"
MODERATION_TOPIC = "chat.moderation"
SETTINGS_ID = "global"

ACTION_TYPES = ("mute", "ban", "warning", "unmute", "unban")
_REASON_REQUIRED = {"mute", "ban", "warning"}


def default_chat_settings() -> Dict[str, Any]:
    return {
        "slow_mode": False,
        "slow_mode_delay": CHAT_DEFAULT_SLOW_MODE_DELAY,
        "banned_keywords": [],
        "auto_delete_keywords": [],
    }


def _settings_dict(row: ChatSettings) -> Dict[str, Any]:
    return {
        "slow_mode": bool(row.slow_mode),
        "slow_mode_delay": int(row.slow_mode_delay or 0),
        "banned_keywords": list(row.banned_keywords or []),
        "auto_delete_keywords": list(row.auto_delete_keywords or []),
    }


def _contains_keyword(text: str, keywords: List[str]) -> Optional[str]:
    lowered = text.lower()
    for keyword in keywords:
        if keyword and keyword.lower() in lowered:
            return keyword
    return None


def serialize_message(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "user_id": message.user_id,
        "username": message.username,
        "message": message.message,
        "timestamp": message.timestamp.isoformat() if message.timestamp else None,
        "stream_id": message.stream_id,
    }


def sanitize_message(text: str) -> str:
    cleaned = bleach.clean(text or "", tags=[], strip=True, strip_comments=True)
    return cleaned.replace("\r\n", "\n").strip()


class ChatService:
    def __init__(self, db: Session, hub: Optional[EventHub] = None) -> None:
        self.db = db
        self.hub = hub

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error while trying to %s", action)
            raise RemoteWriteFailed(f"Failed to {action}") from exc

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.hub is not None:
            self.hub.publish(topic, payload)

    # Messages

    def send_message(self, user: User, text: str, stream_id: Optional[str] = None) -> ChatMessage:
        body = sanitize_message(text)
        if not body:
            raise ValidationFailed("Message cannot be empty")
        if len(body) > CHAT_MESSAGE_MAX_LENGTH:
            raise ValidationFailed(
                f"Message must be at most {CHAT_MESSAGE_MAX_LENGTH} characters"
            )

        now = datetime.utcnow()
        status = self.get_user_moderation_status(user.id)
        if status is not None:
            if status.is_banned:
                raise ChatForbidden("You are banned from chat")
            if status.is_muted:
                if status.mute_expires_at is not None and status.mute_expires_at <= now:
                    self.update_user_moderation_status(
                        user.id,
                        {"is_muted": False, "mute_expires_at": None},
                        username=user.username,
                    )
                    status = self.get_user_moderation_status(user.id)
                else:
                    raise ChatForbidden("You are muted")

        settings = self.get_chat_settings()
        keyword = _contains_keyword(body, settings["banned_keywords"])
        if keyword is not None:
            raise ValidationFailed("Message contains a banned word")
        if settings["slow_mode"] and status is not None and status.last_message_at is not None:
            wait_until = status.last_message_at + timedelta(seconds=settings["slow_mode_delay"])
            if now < wait_until:
                remaining = max(1, int((wait_until - now).total_seconds()))
                raise SlowModeActive(f"Slow mode is on, wait {remaining}s before sending again")

        hidden = _contains_keyword(body, settings["auto_delete_keywords"]) is not None
        message = ChatMessage(
            user_id=user.id,
            username=user.username,
            message=body,
            timestamp=now,
            is_deleted=hidden,
            stream_id=stream_id,
        )
        self.db.add(message)
        # Slow-mode bookkeeping rides on the message commit and leaves the
        # moderation version alone.
        if status is None:
            self.db.add(
                UserModerationStatus(
                    user_id=user.id,
                    username=user.username,
                    is_muted=False,
                    is_banned=False,
                    version=0,
                    last_message_at=now,
                )
            )
        else:
            status.last_message_at = now
        self._commit("send message")
        self.db.refresh(message)
        if hidden:
            logger.info("Message %s from %s auto-deleted by keyword filter", message.id, user.id)
        else:
            self._publish(CHAT_TOPIC, {"event": "created", "message": serialize_message(message)})
        return message

    def get_messages(
        self,
        stream_id: Optional[str] = None,
        limit: int = CHAT_HISTORY_LIMIT,
    ) -> List[ChatMessage]:
        query = self.db.query(ChatMessage).filter(ChatMessage.is_deleted.is_(False))
        if stream_id:
            query = query.filter(ChatMessage.stream_id == stream_id)
        normalized_limit = min(max(int(limit), 1), 500)
        return query.order_by(ChatMessage.timestamp.desc()).limit(normalized_limit).all()

    def delete_message(self, message_id: str) -> None:
        message = self.db.query(ChatMessage).filter(ChatMessage.id == message_id).first()
        if message is None:
            raise NotFound("Message not found")
        message.is_deleted = True
        self._commit("delete message")
        self._publish(CHAT_TOPIC, {"event": "deleted", "ids": [message_id]})

    def bulk_delete_user_messages(self, user_id: str) -> int:
        ids = [
            row.id
            for row in self.db.query(ChatMessage.id)
            .filter(ChatMessage.user_id == user_id, ChatMessage.is_deleted.is_(False))
            .all()
        ]
        if ids:
            self.db.execute(
                update(ChatMessage)
                .where(ChatMessage.id.in_(ids))
                .values(is_deleted=True)
                .execution_options(synchronize_session="fetch")
            )
        self._commit("delete messages")
        if ids:
            self._publish(CHAT_TOPIC, {"event": "deleted", "ids": ids})
        return len(ids)

    # Moderation log

    def create_moderation_action(
        self, action: ChatModerationAction, commit: bool = True
    ) -> ChatModerationAction:
        if action.action_type not in ACTION_TYPES:
            raise ValidationFailed("Unknown moderation action")
        if action.created_at is None:
            action.created_at = datetime.utcnow()
        self.db.add(action)
        if not commit:
            self.db.flush()
            return action
        self._commit("record moderation action")
        self.db.refresh(action)
        return action

    def get_user_moderation_history(self, user_id: str) -> List[ChatModerationAction]:
        return (
            self.db.query(ChatModerationAction)
            .filter(ChatModerationAction.user_id == user_id)
            .order_by(ChatModerationAction.created_at.desc())
            .all()
        )

    # Moderation status

    def get_user_moderation_status(self, user_id: str) -> Optional[UserModerationStatus]:
        return (
            self.db.query(UserModerationStatus)
            .filter(UserModerationStatus.user_id == user_id)
            .first()
        )

    def update_user_moderation_status(
        self,
        user_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
        username: Optional[str] = None,
    ) -> UserModerationStatus:
        allowed = {"is_muted", "is_banned", "mute_expires_at", "last_message_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationFailed(f"Unknown status fields: {', '.join(sorted(unknown))}")

        status = self.get_user_moderation_status(user_id)
        if status is None:
            if expected_version not in (None, 0):
                self.db.rollback()
                raise ModerationConflict()
            if username is None:
                profile = self.db.query(User).filter(User.id == user_id).first()
                if profile is None:
                    raise NotFound("User not found")
                username = profile.username
            status = UserModerationStatus(
                user_id=user_id,
                username=username,
                is_muted=False,
                is_banned=False,
                version=0,
            )
            self.db.add(status)
            self.db.flush()

        current_version = status.version or 0
        values = dict(changes)
        values["version"] = current_version + 1
        values["updated_at"] = datetime.utcnow()
        if username is not None:
            values["username"] = username
        # Compare-and-set on the version read above.
        result = self.db.execute(
            update(UserModerationStatus)
            .where(
                UserModerationStatus.user_id == user_id,
                UserModerationStatus.version == (
                    current_version if expected_version is None else expected_version
                ),
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise ModerationConflict()
        self._commit("update moderation status")
        self.db.refresh(status)
        return status

    def moderate_user(
        self,
        target_user_id: str,
        action_type: str,
        reason: str,
        moderator: User,
        duration: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[ChatModerationAction, Optional[UserModerationStatus]]:
        if action_type not in ACTION_TYPES:
            raise ValidationFailed("Unknown moderation action")
        reason = (reason or "").strip()
        if action_type in _REASON_REQUIRED and not reason:
            raise ValidationFailed(f"Please provide a reason for the {action_type}.")
        target = self.db.query(User).filter(User.id == target_user_id).first()
        if target is None:
            raise NotFound("User not found")

        now = datetime.utcnow()
        expires_at = None
        if action_type == "mute":
            if duration is None or duration <= 0:
                raise ValidationFailed("Mute duration must be a positive number of minutes")
            expires_at = now + timedelta(minutes=duration)

        action = self.create_moderation_action(
            ChatModerationAction(
                user_id=target.id,
                username=target.username,
                action_type=action_type,
                reason=reason,
                duration=duration if action_type == "mute" else None,
                moderator_id=moderator.id,
                moderator_username=moderator.username,
                created_at=now,
                expires_at=expires_at,
            ),
            commit=False,
        )

        changes = {
            "mute": {"is_muted": True, "mute_expires_at": expires_at},
            "ban": {"is_banned": True, "is_muted": False, "mute_expires_at": None},
            "unmute": {"is_muted": False, "mute_expires_at": None},
            "unban": {"is_banned": False},
        }.get(action_type)
        # The log entry and the status change land in one commit; a version
        # conflict discards both.
        status = None
        if changes is not None:
            status = self.update_user_moderation_status(
                target.id,
                changes,
                expected_version=expected_version,
                username=target.username,
            )
        else:
            self._commit("record moderation action")
        self.db.refresh(action)
        logger.info(
            "%s applied %s to %s", moderator.username, action_type, target.username
        )
        self._publish(
            MODERATION_TOPIC,
            {
                "user_id": target.id,
                "action_type": action_type,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return action, status

    # Settings

    def get_chat_settings(self) -> Dict[str, Any]:
        row = self.db.query(ChatSettings).filter(ChatSettings.id == SETTINGS_ID).first()
        if row is None:
            return default_chat_settings()
        return _settings_dict(row)

    def update_chat_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        merged = default_chat_settings()
        merged.update(settings)
        if int(merged["slow_mode_delay"]) < 0:
            raise ValidationFailed("Slow mode delay cannot be negative")
        row = self.db.query(ChatSettings).filter(ChatSettings.id == SETTINGS_ID).first()
        if row is None:
            row = ChatSettings(id=SETTINGS_ID)
            self.db.add(row)
        row.slow_mode = bool(merged["slow_mode"])
        row.slow_mode_delay = int(merged["slow_mode_delay"])
        row.banned_keywords = list(merged["banned_keywords"])
        row.auto_delete_keywords = list(merged["auto_delete_keywords"])
        self._commit("update chat settings")
        return self.get_chat_settings()
