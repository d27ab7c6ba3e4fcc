"""
Identity provider, session context, and the profile facade built on them.

``IdentityProvider`` owns credentials: account creation, sign-in, token
revocation, password reset and change. It announces every auth-state change
on the ``auth.state`` topic.

``SessionContext`` is created once by the application factory. It subscribes
to ``auth.state`` at startup, re-reads the profile on each change, and
republishes identity and profile together as a ``SessionSnapshot``.

``IdentityService`` is the per-request facade the routes call. Username
uniqueness is a pre-query, so two concurrent sign-ups with the same username
can both pass the check.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import (
    ADMIN_EMAILS,
    PASSWORD_MIN_LENGTH,
    PASSWORD_RESET_TTL_MINUTES,
    STARTING_WALLET,
)
from ..core.errors import (
    DuplicateUsername,
    InvalidCredentials,
    NotAuthenticated,
    NotFound,
    RemoteWriteFailed,
    StreamaniaError,
    ValidationFailed,
)
from ..core.events import EventHub
from ..core.security import (
    create_access_token,
    decode_access_token,
    get_password_hash,
    hash_reset_token,
    new_reset_token,
    verify_password,
)
from ..models import Credential, PasswordResetToken, RevokedToken, User

logger = logging.getLogger(__name__)

AUTH_STATE_TOPIC = "auth.state"
SESSION_TOPIC = "session"

ResetDelivery = Callable[[str, str], None]


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    display_name: Optional[str]
    token_id: Optional[str] = None


@dataclass(frozen=True)
class SessionSnapshot:
    identity: Optional[Identity]
    profile: Optional[User]


def log_reset_delivery(email: str, token: str) -> None:
    logger.info("Password reset requested for %s (token issued, delivery not configured)", email)


def _validate_password(password: str) -> None:
    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise ValidationFailed(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")


class IdentityProvider:
    def __init__(
        self,
        db: Session,
        hub: EventHub,
        reset_delivery: ResetDelivery = log_reset_delivery,
    ) -> None:
        self.db = db
        self.hub = hub
        self.reset_delivery = reset_delivery

    def announce(self, user_id: str, event: str) -> None:
        self.hub.publish(AUTH_STATE_TOPIC, {"user_id": user_id, "event": event})

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Identity write failed during %s", action)
            raise RemoteWriteFailed(f"Failed to {action}") from exc

    def create_account(self, email: str, password: str) -> Credential:
        _validate_password(password)
        email = email.strip().lower()
        if self.db.query(Credential).filter(Credential.email == email).first():
            raise ValidationFailed("Email already registered")
        credential = Credential(email=email, password_hash=get_password_hash(password))
        self.db.add(credential)
        # Flushed, not committed: the caller writes the profile in the same unit.
        self.db.flush()
        return credential

    def issue_token(self, credential: Credential) -> str:
        return create_access_token(
            {"sub": credential.id, "email": credential.email, "name": credential.display_name}
        )

    def sign_in(self, email: str, password: str) -> tuple[Credential, str]:
        credential = (
            self.db.query(Credential).filter(Credential.email == email.strip().lower()).first()
        )
        if not credential or not verify_password(password, credential.password_hash):
            raise InvalidCredentials()
        token = self.issue_token(credential)
        self.announce(credential.id, "signed_in")
        return credential, token

    def verify_token(self, token: str) -> Identity:
        payload = decode_access_token(token)
        if payload is None:
            raise NotAuthenticated("Invalid token")
        jti = payload["jti"]
        if self.db.query(RevokedToken).filter(RevokedToken.jti == jti).first():
            raise NotAuthenticated("Session has ended")
        credential = self.db.query(Credential).filter(Credential.id == payload["sub"]).first()
        if not credential:
            raise NotAuthenticated("Invalid token")
        return Identity(
            user_id=credential.id,
            email=credential.email,
            display_name=credential.display_name,
            token_id=jti,
        )

    def sign_out(self, identity: Identity) -> None:
        if identity.token_id:
            self.db.merge(RevokedToken(jti=identity.token_id, credential_id=identity.user_id))
            self._commit("sign out")
        self.announce(identity.user_id, "signed_out")

    def send_password_reset(self, email: str) -> None:
        email = email.strip().lower()
        credential = self.db.query(Credential).filter(Credential.email == email).first()
        if not credential:
            # Same outward behavior whether or not the account exists.
            logger.info("Password reset requested for unknown email")
            return
        token, digest = new_reset_token()
        self.db.add(
            PasswordResetToken(
                credential_id=credential.id,
                token_hash=digest,
                expires_at=datetime.utcnow() + timedelta(minutes=PASSWORD_RESET_TTL_MINUTES),
            )
        )
        self._commit("send password reset email")
        self.reset_delivery(credential.email, token)

    def confirm_password_reset(self, token: str, new_password: str) -> None:
        _validate_password(new_password)
        record = (
            self.db.query(PasswordResetToken)
            .filter(PasswordResetToken.token_hash == hash_reset_token(token))
            .first()
        )
        if not record or record.used_at is not None or record.expires_at < datetime.utcnow():
            raise ValidationFailed("Reset link is invalid or has expired")
        credential = self.db.query(Credential).filter(Credential.id == record.credential_id).one()
        credential.password_hash = get_password_hash(new_password)
        record.used_at = datetime.utcnow()
        self._commit("reset password")

    def update_password(self, user_id: str, new_password: str) -> None:
        credential = self.db.query(Credential).filter(Credential.id == user_id).first()
        if not credential:
            raise NotAuthenticated("No user logged in")
        credential.password_hash = get_password_hash(new_password)
        self._commit("change password")

    def update_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        commit: bool = True,
    ) -> Credential:
        credential = self.db.query(Credential).filter(Credential.id == user_id).first()
        if not credential:
            raise NotFound("User not found")
        if display_name is not None:
            credential.display_name = display_name
        if email is not None:
            credential.email = email.strip().lower()
        if commit:
            self._commit("update profile")
            self.announce(user_id, "updated")
        return credential


class SessionContext:
    """Cache of identity and profile per signed-in user, refreshed on auth-state changes."""

    def __init__(self, session_factory: sessionmaker, hub: EventHub) -> None:
        self.session_factory = session_factory
        self.hub = hub
        self._sessions: Dict[str, SessionSnapshot] = {}
        self._listeners: List[Callable[[SessionSnapshot], None]] = []
        self._lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.hub.subscribe(AUTH_STATE_TOPIC, self._on_auth_state)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            self._sessions.clear()

    def subscribe(self, listener: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def get(self, user_id: str) -> Optional[SessionSnapshot]:
        with self._lock:
            return self._sessions.get(user_id)

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def _on_auth_state(self, topic: str, payload: dict) -> None:
        user_id = payload.get("user_id")
        if not user_id:
            return
        if payload.get("event") == "signed_out":
            self.clear(user_id)
            snapshot = SessionSnapshot(identity=None, profile=None)
        else:
            snapshot = self._load(user_id)
            with self._lock:
                self._sessions[user_id] = snapshot
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snapshot)
        self.hub.publish(
            SESSION_TOPIC,
            {
                "user_id": user_id,
                "authenticated": snapshot.identity is not None,
                "profile": _profile_payload(snapshot.profile),
            },
        )

    def _load(self, user_id: str) -> SessionSnapshot:
        db = self.session_factory()
        try:
            credential = db.query(Credential).filter(Credential.id == user_id).first()
            profile = db.query(User).filter(User.id == user_id).first()
            if profile is not None:
                db.expunge(profile)
        except SQLAlchemyError:
            logger.exception("Error fetching user data for %s", user_id)
            return SessionSnapshot(identity=None, profile=None)
        finally:
            db.close()
        if credential is None:
            return SessionSnapshot(identity=None, profile=None)
        identity = Identity(
            user_id=credential.id,
            email=credential.email,
            display_name=credential.display_name,
        )
        return SessionSnapshot(identity=identity, profile=profile)


def _profile_payload(profile: Optional[User]) -> Optional[dict]:
    if profile is None:
        return None
    return {
        "id": profile.id,
        "email": profile.email,
        "username": profile.username,
        "is_admin": bool(profile.is_admin),
        "wallet": int(profile.wallet or 0),
        "email_verified": bool(profile.email_verified),
    }


class IdentityService:
    def __init__(
        self,
        db: Session,
        provider: IdentityProvider,
        sessions: Optional[SessionContext] = None,
    ) -> None:
        self.db = db
        self.provider = provider
        self.sessions = sessions

    def is_username_unique(self, username: str, exclude_user_id: Optional[str] = None) -> bool:
        rows = self.db.query(User.id).filter(User.username == username).all()
        if exclude_user_id:
            return all(row.id == exclude_user_id for row in rows)
        return not rows

    def sign_up(self, email: str, password: str, username: str) -> tuple[User, str]:
        username = (username or "").strip()
        if not username:
            raise ValidationFailed("Username is required")
        if not self.is_username_unique(username):
            raise DuplicateUsername()
        try:
            credential = self.provider.create_account(email, password)
            credential.display_name = username
            profile = User(
                id=credential.id,
                email=credential.email,
                username=username,
                is_admin=credential.email in ADMIN_EMAILS,
                wallet=STARTING_WALLET,
                created_at=datetime.utcnow(),
                email_verified=bool(credential.email_verified),
            )
            self.db.add(profile)
            self.db.commit()
        except StreamaniaError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Sign up error")
            raise RemoteWriteFailed("Failed to create account") from exc
        self.db.refresh(profile)
        token = self.provider.issue_token(credential)
        logger.info("Account created for %s", username)
        self.provider.announce(profile.id, "signed_in")
        return profile, token

    def sign_in(self, email: str, password: str) -> tuple[User, str]:
        credential, token = self.provider.sign_in(email, password)
        profile = self.db.query(User).filter(User.id == credential.id).first()
        if profile is None:
            raise NotFound("User profile not found")
        return profile, token

    def logout(self, identity: Identity) -> None:
        # Local state goes first so readers see the signed-out state immediately.
        if self.sessions is not None:
            self.sessions.clear(identity.user_id)
        self.provider.sign_out(identity)

    def reset_password(self, email: str) -> None:
        self.provider.send_password_reset(email)

    def confirm_password_reset(self, token: str, new_password: str) -> None:
        self.provider.confirm_password_reset(token, new_password)

    def change_password(self, identity: Optional[Identity], new_password: str) -> None:
        if identity is None:
            raise NotAuthenticated("No user logged in")
        _validate_password(new_password)
        self.provider.update_password(identity.user_id, new_password)

    def get_profile(self, user_id: str) -> User:
        profile = self.db.query(User).filter(User.id == user_id).first()
        if profile is None:
            raise NotFound("User not found")
        return profile

    def update_user_profile(self, identity: Identity, username: str, email: str) -> User:
        username = (username or "").strip()
        if not username:
            raise ValidationFailed("Username is required")
        if not self.is_username_unique(username, exclude_user_id=identity.user_id):
            raise DuplicateUsername()
        profile = self.get_profile(identity.user_id)
        profile.username = username
        profile.email = email.strip().lower()
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Profile update error")
            raise RemoteWriteFailed("Failed to update profile") from exc
        # Second, independent write: a failure here leaves the two records out of step.
        self.provider.update_profile(identity.user_id, display_name=username, email=email)
        self.db.refresh(profile)
        return profile

    def get_all_users(self) -> List[User]:
        return self.db.query(User).order_by(User.created_at.desc()).all()

    def top_up_user_wallet(self, user_id: str, amount: int) -> User:
        try:
            result = self.db.execute(
                update(User).where(User.id == user_id).values(wallet=User.wallet + amount)
            )
            if result.rowcount == 0:
                self.db.rollback()
                raise NotFound("User not found")
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error topping up wallet")
            raise RemoteWriteFailed("Failed to top up wallet") from exc
        profile = self.get_profile(user_id)
        self.db.refresh(profile)
        logger.info("Wallet of %s adjusted by %s", user_id, amount)
        self.provider.announce(user_id, "updated")
        return profile
