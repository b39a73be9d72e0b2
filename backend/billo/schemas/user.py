from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from billo.models.user import SubscriptionTier


class UserSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    id: str
    email: str
    name: str | None = None
    image_url: str | None = Field(default=None, alias="imageUrl")


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    currency_code: str = Field(alias="currencyCode")


class TierUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: str = Field(alias="userId")
    tier: SubscriptionTier


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    email: str
    name: str | None
    image_url: str | None
    currency_code: str
    tier: SubscriptionTier


class UsageResponse(BaseModel):
    remaining: int
    used: int
    limit: int
    resets_at: datetime
    is_limited: bool


class UserSearchResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str | None
    email: str
    image_url: str | None
