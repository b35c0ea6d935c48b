import sys
from pathlib import Path

import uvicorn
from loguru import logger

PROJECT_ROOT_PATH = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT_PATH) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT_PATH))

# Secrets never reach the startup log
_SETTINGS_LOG_EXCLUDE = {
    "database": {"password"},
    "models": {"chat": {"api_key"}},
}


def main():
    try:
        from agrigrow.app.config import settings
    except Exception as e:
        logger.remove()
        logger.add(sys.stderr, level="ERROR")
        logger.critical(f"run.py: failed to load AgriGrow settings: {e}", exc_info=True)
        sys.exit("Critical error: could not load configuration for the AgriGrow API.")

    chat = settings.models.chat
    logger.info(
        f"Starting AgriGrow API on {settings.backend.host}:{settings.backend.port} "
        f"(chat model: {chat.class_name}/{chat.model_name}, "
        f"AI cache: {'on' if settings.ai_cache.enabled else 'off'}, "
        f"rate limit: {'on' if settings.rate_limit.enabled else 'off'})"
    )
    logger.debug(
        f"Effective settings: {settings.model_dump_json(indent=2, exclude=_SETTINGS_LOG_EXCLUDE)}"
    )

    uvicorn.run(
        "agrigrow.app.main:app",
        host=settings.backend.host,
        port=settings.backend.port,
        reload=settings.backend.reload,
        reload_dirs=[str(PROJECT_ROOT_PATH / "agrigrow")],
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
