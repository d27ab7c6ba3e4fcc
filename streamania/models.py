import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    DateTime,
    Integer,
    Boolean,
    ForeignKey,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def generate_id() -> str:
    return str(uuid.uuid4())


# Identity provider tables. Profiles live in "users" and share the credential id.


class Credential(Base):
    __tablename__ = "credentials"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(120), nullable=True)
    email_verified = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(String(36), primary_key=True, default=generate_id)
    credential_id = Column(String(36), ForeignKey("credentials.id"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    jti = Column(String(36), primary_key=True)
    credential_id = Column(String(36), ForeignKey("credentials.id"), nullable=False)
    revoked_at = Column(DateTime, default=datetime.utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), ForeignKey("credentials.id"), primary_key=True)
    email = Column(String(255), index=True, nullable=False)
    # Uniqueness is checked by a pre-query at write time, not by a constraint.
    username = Column(String(50), index=True, nullable=False)
    is_admin = Column(Boolean, default=False)
    wallet = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    email_verified = Column(Boolean, default=False)

    answers = relationship("QuizAnswer", back_populates="user")


class StreamConfig(Base):
    __tablename__ = "stream_configs"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(200), nullable=False)
    platform = Column(String(20), default="youtube", nullable=False)
    stream_ref = Column(String(11), nullable=False)
    is_active = Column(Boolean, default=False, index=True)
    is_live = Column(Boolean, default=False)
    viewer_count = Column(Integer, nullable=True)
    thumbnail_url = Column(String(500), nullable=True)
    status_available = Column(Boolean, nullable=True)
    status_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(String(36), primary_key=True, default=generate_id)
    question = Column(Text, nullable=False)
    options = Column(JSON, default=list)
    correct_option_id = Column(String(20), nullable=False)
    is_active = Column(Boolean, default=False, index=True)
    time_limit = Column(Integer, default=30)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    activated_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    answers = relationship("QuizAnswer", back_populates="quiz", cascade="all, delete")


class QuizAnswer(Base):
    __tablename__ = "quiz_answers"
    __table_args__ = (UniqueConstraint("quiz_id", "user_id", name="uq_quiz_answer_user"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    quiz_id = Column(String(36), ForeignKey("quizzes.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    username = Column(String(50), nullable=False)
    selected_option_id = Column(String(20), nullable=False)
    bet_amount = Column(Integer, nullable=False)
    is_correct = Column(Boolean, nullable=True)
    points_won = Column(Integer, nullable=True)
    submitted_at = Column(DateTime, default=datetime.utcnow)

    quiz = relationship("Quiz", back_populates="answers")
    user = relationship("User", back_populates="answers")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String(50), nullable=False)
    message = Column(String(1000), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    is_deleted = Column(Boolean, default=False)
    stream_id = Column(String(36), nullable=True, index=True)


class ChatModerationAction(Base):
    __tablename__ = "chat_moderation_actions"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), nullable=False, index=True)
    username = Column(String(50), nullable=False)
    action_type = Column(String(20), nullable=False)
    reason = Column(Text, default="")
    duration = Column(Integer, nullable=True)
    moderator_id = Column(String(36), nullable=False)
    moderator_username = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    expires_at = Column(DateTime, nullable=True)


class UserModerationStatus(Base):
    __tablename__ = "user_moderation_status"

    user_id = Column(String(36), primary_key=True)
    username = Column(String(50), nullable=False)
    is_muted = Column(Boolean, default=False)
    is_banned = Column(Boolean, default=False)
    mute_expires_at = Column(DateTime, nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    version = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ChatSettings(Base):
    __tablename__ = "chat_settings"

    id = Column(String(20), primary_key=True, default="global")
    slow_mode = Column(Boolean, default=False)
    slow_mode_delay = Column(Integer, default=10)
    banned_keywords = Column(JSON, default=list)
    auto_delete_keywords = Column(JSON, default=list)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
