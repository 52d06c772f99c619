import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Environment is loaded by Pydantic Settings (see mechiee.core.settings).
from mechiee.api import register_routes
from mechiee.core.dependencies import get_database
from mechiee.core.exceptions import register_exception_handlers
from mechiee.core.logging import setup_logging
from mechiee.core.settings import get_settings
from mechiee.db.mongo import ensure_indexes

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    cfg = get_settings()
    setup_logging(cfg.log_level or cfg.log_level_fallback)

    app = FastAPI(title="Mechiee Dispatch API")
    register_exception_handlers(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_routes(app)

    @app.on_event("startup")
    async def _ensure_indexes_on_startup() -> None:
        """Create the unique indexes room creation and tickets rely on. Failure aborts startup."""
        await ensure_indexes(
            get_database(), notification_ttl_seconds=cfg.notification_ttl_seconds
        )
        logger.info("Chat and booking indexes ensured")

    logger.info("Mechiee API initialized")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mechiee.main:app", host="0.0.0.0", port=8000)
