from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from agents.chaser.errors import StoreUnavailableError
from backend.apps.chaser.api import router as chaser_router
from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.health import router as health_router
from backend.core.observability.logging import logger


async def _store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("store_unavailable", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"error": "store_unavailable", "detail": str(exc)}},
    )


def create_app() -> FastAPI:
    init_observability(enable_metrics=settings.enable_metrics)

    app = FastAPI(title="Credit Control Chaser")

    # Routers
    app.include_router(health_router)
    app.include_router(chaser_router)

    app.add_exception_handler(StoreUnavailableError, _store_unavailable)

    return app


# ASGI app instance
app = create_app()
