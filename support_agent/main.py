import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from support_agent.core.config import settings
from support_agent.core.errors import register_exception_handlers
from support_agent.core.logging_config import setup_logging
from support_agent.database import Database
from support_agent.routers import chat, health
from support_agent.services.cache import CacheService
from support_agent.services.conversation import SessionLocks
from support_agent.services.llm_service import LlmService

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Opens the database, cache and LLM client handles and closes them on shutdown."""
    database = Database(
        settings.database_url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        ssl_mode=settings.DATABASE_SSL_MODE,
    ).open()
    database.create_all()

    cache = CacheService.from_settings(settings)
    await cache.connect()

    llm = LlmService.from_settings(settings)

    app.state.database = database
    app.state.cache = cache
    app.state.llm = llm
    app.state.session_locks = SessionLocks()
    logger.info(f"Support agent API {settings.API_VERSION} started ({settings.ENVIRONMENT})")

    try:
        yield
    finally:
        await llm.close()
        await cache.close()
        database.close()
        logger.info("Support agent API stopped")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="AI Support Agent API",
        version=settings.API_VERSION,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type"],
        allow_credentials=False,
        max_age=86400,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start_time) * 1000)
        client = request.client.host if request.client else "-"
        logger.info(
            f"HTTP {request.method} {request.url.path} {response.status_code} {duration_ms}ms ip={client}"
        )
        return response

    register_exception_handlers(app)

    app.include_router(health.router, prefix=API_PREFIX)
    app.include_router(chat.router, prefix=API_PREFIX)

    @app.get("/")
    async def root():
        return {
            "name": "AI Support Agent API",
            "version": settings.API_VERSION,
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


setup_logging()
app = create_app()
