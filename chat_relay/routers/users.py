from fastapi import APIRouter, Depends, HTTPException

from chat_relay.repositories.user_repository import UserRepository
from chat_relay.schemas.user import UserProfile, UserProfileUpdate
from chat_relay.utils.dependencies import get_current_user_id, get_user_repo


router = APIRouter(prefix="/users", tags=["users"])


@router.put("/me", response_model=UserProfile)
async def update_profile(body: UserProfileUpdate, current_user_id: str = Depends(get_current_user_id), repo: UserRepository = Depends(get_user_repo)):
    return await repo.upsert_profile(current_user_id, body)


@router.get("/{user_id}", response_model=UserProfile)
async def get_profile(user_id: str, current_user_id: str = Depends(get_current_user_id), repo: UserRepository = Depends(get_user_repo)):
    profile = await repo.get_profile(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return profile
