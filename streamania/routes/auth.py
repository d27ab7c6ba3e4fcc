from fastapi import APIRouter, Depends, status

from ..schemas import (
    PasswordChangeIn,
    PasswordResetConfirmIn,
    PasswordResetIn,
    Token,
    UserCreate,
    UserLogin,
)
from ..services.identity import Identity, IdentityService
from .deps import get_current_identity, get_identity_service

router = APIRouter()


@router.post("/signup", response_model=Token, status_code=status.HTTP_201_CREATED)
def signup(payload: UserCreate, identity: IdentityService = Depends(get_identity_service)):
    profile, token = identity.sign_up(payload.email, payload.password, payload.username)
    return {"access_token": token, "token_type": "bearer", "user": profile}


@router.post("/login", response_model=Token)
def login(payload: UserLogin, identity: IdentityService = Depends(get_identity_service)):
    profile, token = identity.sign_in(payload.email, payload.password)
    return {"access_token": token, "token_type": "bearer", "user": profile}


@router.post("/logout")
def logout(
    current: Identity = Depends(get_current_identity),
    identity: IdentityService = Depends(get_identity_service),
):
    identity.logout(current)
    return {"status": "ok"}


@router.post("/password/reset")
def request_password_reset(
    payload: PasswordResetIn,
    identity: IdentityService = Depends(get_identity_service),
):
    identity.reset_password(payload.email)
    # Same answer whether or not the address is registered.
    return {"status": "ok"}


@router.post("/password/reset/confirm")
def confirm_password_reset(
    payload: PasswordResetConfirmIn,
    identity: IdentityService = Depends(get_identity_service),
):
    identity.confirm_password_reset(payload.token, payload.new_password)
    return {"status": "ok"}


@router.post("/password/change")
def change_password(
    payload: PasswordChangeIn,
    current: Identity = Depends(get_current_identity),
    identity: IdentityService = Depends(get_identity_service),
):
    identity.change_password(current, payload.new_password)
    return {"status": "ok"}
