import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.errors import NotFoundError, ValidationError
from billo.models.user import SubscriptionTier, User
from billo.utils.currency_utils import is_supported_currency

logger = logging.getLogger(__name__)


async def sync_user(
    db: AsyncSession,
    user_id: str,
    email: str,
    name: str | None = None,
    image_url: str | None = None,
    default_currency: str = "USD",
) -> User:
    """Create or refresh the local copy of an identity-provider user."""
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id, email=email, name=name, image_url=image_url, currency_code=default_currency)
        db.add(user)
        logger.info(f"Created user {user_id}")
    else:
        user.email = email
        user.name = name
        user.image_url = image_url
    await db.commit()
    await db.refresh(user)
    return user


async def update_preferences(db: AsyncSession, user: User, currency_code: str) -> User:
    code = currency_code.strip().upper()
    if not is_supported_currency(code):
        raise ValidationError(f"Unsupported currency: {currency_code}", field="currencyCode")
    user.currency_code = code
    await db.commit()
    await db.refresh(user)
    return user


async def set_tier(db: AsyncSession, user_id: str, tier: SubscriptionTier) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    user.tier = SubscriptionTier(tier)
    await db.commit()
    await db.refresh(user)
    logger.info(f"User {user_id} moved to {user.tier.value} tier")
    return user


async def search_users(db: AsyncSession, actor_id: str, email_query: str | None, limit: int = 10) -> list[User]:
    """Case-insensitive partial email match, excluding the caller."""
    query = (email_query or "").strip()
    if not query:
        return []
    result = await db.execute(
        select(User)
        .where(User.email.icontains(query, autoescape=True), User.id != actor_id)
        .order_by(User.email)
        .limit(limit)
    )
    return list(result.scalars().all())
