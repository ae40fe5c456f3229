from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserProfileUpdate(BaseModel):

    model_config = ConfigDict(extra="forbid")

    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(default=None, max_length=120)
    profile_image_url: Optional[str] = None


class UserProfile(UserProfileUpdate):

    id: str
