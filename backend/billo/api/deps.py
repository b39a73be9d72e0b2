from fastapi import Request

from billo.core.config import Settings
from billo.services.usage_service import UsageLimiter


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_usage_limiter(request: Request) -> UsageLimiter:
    return request.app.state.usage_limiter
