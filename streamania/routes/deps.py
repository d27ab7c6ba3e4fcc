from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from ..core.errors import Forbidden, NotAuthenticated
from ..core.events import EventHub
from ..db import get_db
from ..models import User
from ..services.chat import ChatService
from ..services.identity import Identity, IdentityProvider, IdentityService, SessionContext
from ..services.quizzes import QuizService
from ..services.streams import StreamService, YouTubeClient


def get_hub(request: Request) -> EventHub:
    return request.app.state.hub


def get_sessions(request: Request) -> SessionContext:
    return request.app.state.sessions


def get_youtube(request: Request) -> YouTubeClient:
    return request.app.state.youtube


def get_identity_provider(
    request: Request,
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_hub),
) -> IdentityProvider:
    return IdentityProvider(db, hub, reset_delivery=request.app.state.reset_delivery)


def get_identity_service(
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
    sessions: SessionContext = Depends(get_sessions),
) -> IdentityService:
    return IdentityService(db, provider, sessions)


def get_stream_service(
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_hub),
    youtube: YouTubeClient = Depends(get_youtube),
) -> StreamService:
    return StreamService(db, hub, youtube)


def get_quiz_service(
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_hub),
) -> QuizService:
    return QuizService(db, hub)


def get_chat_service(
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_hub),
) -> ChatService:
    return ChatService(db, hub)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def get_current_identity(
    authorization: Optional[str] = Header(None),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
    token = _bearer_token(authorization)
    if token is None:
        raise NotAuthenticated()
    return provider.verify_token(token)


def get_current_user(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> User:
    user = db.query(User).filter(User.id == identity.user_id).first()
    if not user:
        raise NotAuthenticated("User profile not found")
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise Forbidden()
    return current_user
