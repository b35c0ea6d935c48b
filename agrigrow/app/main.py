from fastapi import FastAPI
from loguru import logger

from agrigrow.app.config import settings
from agrigrow.app.api.errors import register_exception_handlers
from agrigrow.app.api.v1.router import api_v1_router
from agrigrow.app.core.ai_cache import AIResponseCache
from agrigrow.app.core.rate_limit import RateLimiter
from agrigrow.app.db.connection import initialize_connection_pool, close_connection_pool
from agrigrow.app.prompts.prompt_engine import PromptEngine
from agrigrow.app.services.analytics_service import AnalyticsRecorder
from agrigrow.app.services.chat_service import ChatService
from agrigrow.app.services.feed_service import FeedService
from agrigrow.app.services.group_post_service import GroupPostService
from agrigrow.app.services.model_service import ModelService
from agrigrow.app.services.notification_service import Notifier


def build_services(app: FastAPI):
    """Construct the per-process services and attach them to ``app.state``."""
    app.state.ai_cache = AIResponseCache(settings.ai_cache)
    app.state.rate_limiter = RateLimiter(settings.rate_limit)
    app.state.analytics = AnalyticsRecorder(settings.analytics)
    app.state.model_service = ModelService(settings.models.chat)
    app.state.prompt_engine = PromptEngine(
        template_dir=settings.prompts.engine.template_dir,
        default_version=settings.prompts.engine.default_version,
    )
    app.state.chat_service = ChatService(
        model_service=app.state.model_service,
        prompt_engine=app.state.prompt_engine,
        cache=app.state.ai_cache,
        limiter=app.state.rate_limiter,
        recorder=app.state.analytics,
    )
    app.state.feed_service = FeedService(settings.feed)
    app.state.notifier = Notifier()
    app.state.group_post_service = GroupPostService(app.state.notifier)


def create_app(with_lifecycle: bool = True) -> FastAPI:
    app = FastAPI(title="AgriGrow API")
    register_exception_handlers(app)
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        logger.debug("API GET / (FastAPI root) called.")
        return {
            "message": "AgriGrow API",
            "api_docs_url": "/docs",
            "redoc_url": "/redoc",
            "health_check": "/health",
        }

    @app.get("/health", tags=["Health Check"])
    async def health_check():
        return {"status": "ok", "message": "API is healthy"}

    if not with_lifecycle:
        return app

    @app.on_event("startup")
    async def startup_event():
        logger.info("FastAPI Event: Application startup initiated...")
        try:
            initialize_connection_pool()
            logger.info("Database connection pool initialized successfully.")
        except Exception as e:
            logger.critical(
                f"Failed to initialize database connection pool: {e}", exc_info=True
            )

        build_services(app)
        app.state.analytics.start()
        logger.info("FastAPI Event: Services initialized. Application startup complete.")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("FastAPI Event: Application shutdown initiated...")
        await app.state.analytics.stop()
        await app.state.notifier.drain()
        await app.state.model_service.close()
        close_connection_pool()
        logger.info(
            "FastAPI Event: Database connection pool closed. Application shutdown complete."
        )

    return app


app = create_app()
logger.info("Main FastAPI application instance created.")
