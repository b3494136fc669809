from supabase import Client
from kidfun.config.settings import settings
from kidfun.modules.profiles.models import PROFILES_TABLE
from kidfun.modules.profiles.schemas import ProfileUpdate, ProfileResponse, ProfileSummary
from typing import Dict, Iterable, Optional
from fastapi import HTTPException
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def display_name(profile: Optional[ProfileSummary]) -> str:
    """First name as shown in thread cards and the event feed."""
    if profile and profile.first_name:
        return profile.first_name
    return settings.unknown_display_name


class ProfileService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ProfileResponse]:
        """Bulk lookup keyed by user_id. Lookup failures degrade to an empty map."""
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        try:
            result = self.supabase.table(PROFILES_TABLE)\
                .select("user_id, first_name, last_name, email")\
                .in_("user_id", ids)\
                .execute()
            return {p["user_id"]: ProfileResponse(**p) for p in (result.data or [])}
        except Exception as e:
            logger.error(f"Error loading profiles: {e}")
            return {}

    def get_profile(self, user_id: str) -> ProfileResponse:
        try:
            result = self.supabase.table(PROFILES_TABLE)\
                .select("*")\
                .eq("user_id", user_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Profile not found")

            return ProfileResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting profile {user_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to load profile")

    def update_profile(self, user_id: str, profile_data: ProfileUpdate) -> ProfileResponse:
        try:
            update_data = {"updated_at": datetime.now(timezone.utc).isoformat()}
            if profile_data.first_name is not None:
                update_data["first_name"] = profile_data.first_name.strip()
            if profile_data.last_name is not None:
                update_data["last_name"] = profile_data.last_name.strip()

            result = self.supabase.table(PROFILES_TABLE)\
                .update(update_data)\
                .eq("user_id", user_id)\
                .execute()

            if not result.data:
                raise HTTPException(status_code=404, detail="Profile not found")

            return ProfileResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating profile {user_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to update profile")
