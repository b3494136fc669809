from fastapi import APIRouter, Depends
from kidfun.database.supabase_client import get_supabase
from kidfun.modules.profiles.schemas import ProfileUpdate, ProfileResponse
from kidfun.modules.profiles.service import ProfileService
from kidfun.core.dependencies import get_current_user_id
from supabase import Client
from typing import Dict

router = APIRouter(prefix="/profiles", tags=["profiles"])


def get_profile_service(supabase: Client = Depends(get_supabase)) -> ProfileService:
    return ProfileService(supabase)


@router.get("/me", response_model=ProfileResponse)
async def get_my_profile(
    user_data: Dict = Depends(get_current_user_id),
    service: ProfileService = Depends(get_profile_service)
):
    return service.get_profile(user_data["id"])


@router.put("/me", response_model=ProfileResponse)
async def update_my_profile(
    profile_data: ProfileUpdate,
    user_data: Dict = Depends(get_current_user_id),
    service: ProfileService = Depends(get_profile_service)
):
    """Update the names other parents see on shared plans"""
    return service.update_profile(user_data["id"], profile_data)
