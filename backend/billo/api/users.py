import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from billo.api.deps import get_settings, get_usage_limiter
from billo.core.auth import get_current_user, get_current_user_id
from billo.core.config import Settings
from billo.core.database import get_db
from billo.models.user import User
from billo.schemas.user import (
    PreferencesUpdate, TierUpdate, UsageResponse, UserResponse, UserSearchResult, UserSyncRequest,
)
from billo.services.usage_service import UsageLimiter
from billo.services.user_service import search_users, set_tier, sync_user, update_preferences

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    return user


@router.get("/search", response_model=list[UserSearchResult])
async def search(
    email: str = Query(default="", max_length=254),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await search_users(db, user.id, email)


@router.post("/sync", response_model=UserResponse)
async def sync(
    body: UserSyncRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if body.id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot sync another user")
    return await sync_user(
        db, user_id, body.email, body.name, body.image_url, default_currency=settings.default_currency
    )


@router.patch("/me/preferences", response_model=UserResponse)
async def preferences(
    body: PreferencesUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await update_preferences(db, user, body.currency_code)


@router.get("/me/usage", response_model=UsageResponse)
async def usage(
    user: User = Depends(get_current_user),
    limiter: UsageLimiter = Depends(get_usage_limiter),
):
    snapshot = await limiter.peek_usage(user.id, user.tier)
    return UsageResponse(
        remaining=snapshot.remaining,
        used=snapshot.used,
        limit=snapshot.limit,
        resets_at=snapshot.resets_at,
        is_limited=snapshot.is_limited,
    )


@router.post("/tier", response_model=UserResponse)
async def tier(
    body: TierUpdate,
    x_billing_key: str = Header(default=""),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not settings.billing_api_key or not hmac.compare_digest(x_billing_key, settings.billing_api_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid billing key")
    return await set_tier(db, body.user_id, body.tier)
