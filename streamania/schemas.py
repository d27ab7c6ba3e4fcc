from typing import List, Literal, Optional
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field, field_validator


class UserCreate(BaseModel):
    email: EmailStr
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def username_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        if len(value) > 50:
            raise ValueError("must be at most 50 characters")
        return value


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserOut(BaseModel):
    id: str
    email: str
    username: str
    is_admin: bool = False
    wallet: int = 0
    created_at: Optional[datetime] = None
    email_verified: bool = False

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class UserUpdate(BaseModel):
    username: str
    email: EmailStr


class PasswordResetIn(BaseModel):
    email: EmailStr


class PasswordResetConfirmIn(BaseModel):
    token: str
    new_password: str


class PasswordChangeIn(BaseModel):
    new_password: str


class WalletTopUpIn(BaseModel):
    amount: int


class StreamCreate(BaseModel):
    title: str
    source: str = Field(..., description="YouTube URL or 11-character video id")


class StreamUpdate(BaseModel):
    title: Optional[str] = None
    source: Optional[str] = None


class StreamOut(BaseModel):
    id: str
    title: str
    platform: str
    stream_ref: str
    is_active: bool
    is_live: bool
    viewer_count: Optional[int] = None
    thumbnail_url: Optional[str] = None
    status_available: Optional[bool] = None
    status_checked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    embed_url: Optional[str] = None

    class Config:
        from_attributes = True


class StreamStatusOut(BaseModel):
    available: bool
    stream: Optional[StreamOut] = None


class QuizOptionIn(BaseModel):
    id: Optional[str] = None
    text: str


class QuizOption(BaseModel):
    id: str
    text: str


class QuizCreate(BaseModel):
    question: str
    options: List[QuizOptionIn]
    correct_option_id: str
    time_limit: Optional[int] = None


class QuizOut(BaseModel):
    id: str
    question: str
    options: List[QuizOption]
    correct_option_id: Optional[str] = None
    is_active: bool
    time_limit: int
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettlementOut(BaseModel):
    quiz_id: str
    answers: int
    winners: int
    paid_out: int


class QuizAnswerIn(BaseModel):
    selected_option_id: str
    bet_amount: int


class QuizAnswerOut(BaseModel):
    id: str
    quiz_id: str
    user_id: str
    username: str
    selected_option_id: str
    bet_amount: int
    is_correct: Optional[bool] = None
    points_won: Optional[int] = None
    submitted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChatMessageIn(BaseModel):
    message: str
    stream_id: Optional[str] = None


class ChatMessageOut(BaseModel):
    id: str
    user_id: str
    username: str
    message: str
    timestamp: Optional[datetime] = None
    is_deleted: bool = False
    stream_id: Optional[str] = None

    class Config:
        from_attributes = True


ModerationActionType = Literal["mute", "ban", "warning", "unmute", "unban"]


class ModerationActionIn(BaseModel):
    user_id: str
    action_type: ModerationActionType
    reason: str = ""
    duration: Optional[int] = Field(None, description="Minutes, required for mute")
    expected_version: Optional[int] = None


class ModerationActionOut(BaseModel):
    id: str
    user_id: str
    username: str
    action_type: str
    reason: str
    duration: Optional[int] = None
    moderator_id: str
    moderator_username: str
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ModerationStatusPatch(BaseModel):
    is_muted: Optional[bool] = None
    is_banned: Optional[bool] = None
    mute_expires_at: Optional[datetime] = None
    expected_version: Optional[int] = None


class ModerationStatusOut(BaseModel):
    user_id: str
    username: str
    is_muted: bool
    is_banned: bool
    mute_expires_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class ChatSettingsIn(BaseModel):
    slow_mode: bool = False
    slow_mode_delay: int = Field(10, ge=0)
    banned_keywords: List[str] = []
    auto_delete_keywords: List[str] = []

    @field_validator("banned_keywords", "auto_delete_keywords")
    @classmethod
    def strip_keywords(cls, value: List[str]) -> List[str]:
        cleaned: List[str] = []
        for raw in value:
            keyword = raw.strip()
            if keyword and keyword not in cleaned:
                cleaned.append(keyword)
        return cleaned


class ChatSettingsOut(ChatSettingsIn):
    pass
