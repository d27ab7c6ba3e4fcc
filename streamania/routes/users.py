from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..models import User
from ..schemas import UserOut, UserUpdate, WalletTopUpIn
from ..services.identity import Identity, IdentityService
from .deps import get_current_identity, get_current_user, get_identity_service, require_admin

router = APIRouter()


@router.get("/me", response_model=UserOut)
def get_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.patch("/me", response_model=UserOut)
def update_me(
    payload: UserUpdate,
    current: Identity = Depends(get_current_identity),
    identity: IdentityService = Depends(get_identity_service),
):
    return identity.update_user_profile(current, payload.username, payload.email)


@router.get("/", response_model=List[UserOut])
def list_users(
    _: User = Depends(require_admin),
    identity: IdentityService = Depends(get_identity_service),
):
    return identity.get_all_users()


@router.post("/{user_id}/wallet/top-up", response_model=UserOut)
def top_up_wallet(
    user_id: str,
    payload: WalletTopUpIn,
    _: User = Depends(require_admin),
    identity: IdentityService = Depends(get_identity_service),
):
    if payload.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be positive")
    return identity.top_up_user_wallet(user_id, payload.amount)
