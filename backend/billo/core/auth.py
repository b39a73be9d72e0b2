import logging

import httpx
import jwt as pyjwt
from jwt import PyJWK
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.database import get_db
from billo.core.errors import IdentityError
from billo.models.user import User

logger = logging.getLogger(__name__)

security = HTTPBearer()


class JWKSClient:
    """Fetches and caches the identity provider's signing keys.

    One instance is created at startup and shared through ``app.state``.
    """

    def __init__(self, jwks_url: str, issuer: str = ""):
        self.jwks_url = jwks_url
        self.issuer = issuer
        self._keys: list[PyJWK] | None = None

    async def get_keys(self, refresh: bool = False) -> list[PyJWK]:
        if self._keys is not None and not refresh:
            return self._keys
        if not self.jwks_url:
            raise IdentityError("Identity provider is not configured")
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(self.jwks_url)
                resp.raise_for_status()
                keys = resp.json().get("keys", [])
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch JWKS from {self.jwks_url}: {e}")
            raise IdentityError("Unable to verify token") from e
        self._keys = [PyJWK(k) for k in keys]
        return self._keys

    async def _find_key(self, kid: str | None) -> PyJWK:
        for refresh in (False, True):
            for k in await self.get_keys(refresh=refresh):
                if k.key_id == kid:
                    return k
        raise IdentityError("Invalid token")

    async def verify(self, token: str) -> str:
        """Return the verified user id (``sub``) carried by ``token``."""
        try:
            header = pyjwt.get_unverified_header(token)
            key = await self._find_key(header.get("kid"))
            options = {"verify_aud": False}
            payload = pyjwt.decode(
                token,
                key,
                algorithms=["RS256"],
                issuer=self.issuer or None,
                options=options,
            )
        except pyjwt.InvalidTokenError as e:
            raise IdentityError("Invalid token") from e

        user_id = payload.get("sub")
        if not user_id:
            raise IdentityError("Invalid token")
        return user_id


def get_jwks_client(request: Request) -> JWKSClient:
    return request.app.state.jwks_client


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    jwks: JWKSClient = Depends(get_jwks_client),
) -> str:
    return await jwks.verify(credentials.credentials)


async def get_current_user(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise IdentityError("User not found")
    return user
