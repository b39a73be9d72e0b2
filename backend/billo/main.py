import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from billo.api.groups import router as groups_router
from billo.api.receipts import router as receipts_router
from billo.api.settlements import router as settlements_router
from billo.api.users import router as users_router
from billo.core.auth import JWKSClient
from billo.core.config import Settings, settings as default_settings
from billo.core.database import create_engine, create_session_factory
from billo.core.errors import BilloError
from billo.services.usage_service import SqlCounterStore, UsageLimiter

logger = logging.getLogger("billo")


class TimingMiddleware:
    """Lightweight ASGI middleware, no BaseHTTPMiddleware overhead."""
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        t0 = time.perf_counter()
        status_code = 0

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        await self.app(scope, receive, send_wrapper)
        ms = int((time.perf_counter() - t0) * 1000)
        method = scope.get("method", "?")
        path = scope.get("path", "?")
        logger.info(f"{method} {path} -> {status_code} in {ms}ms")


async def billo_error_handler(request: Request, exc: BilloError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_engine(settings.database_url)
        session_factory = create_session_factory(engine)
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.jwks_client = JWKSClient(settings.clerk_jwks_url, settings.clerk_issuer)
        app.state.usage_limiter = UsageLimiter.from_settings(SqlCounterStore(session_factory), settings)
        logger.info("Billo API started")
        yield
        await engine.dispose()

    app = FastAPI(title="Billo API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BilloError, billo_error_handler)

    app.include_router(users_router)
    app.include_router(groups_router)
    app.include_router(receipts_router)
    app.include_router(settlements_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
