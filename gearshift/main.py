import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import settings
from .db import Base, engine
from .errors import RentalEngineError
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .routes.condition_logs import router as condition_logs_router
from .routes.equipment import router as equipment_router
from .routes.flags import router as flags_router
from .routes.rentals import router as rentals_router, ws_router as rentals_ws_router


logger = structlog.get_logger(__name__)


async def rental_error_handler(request: Request, exc: RentalEngineError) -> JSONResponse:
    logger.info(
        "request_rejected",
        path=request.url.path,
        error=exc.code,
        message=exc.message,
        status=exc.http_status,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(RentalEngineError, rental_error_handler)

    # Routers
    app.include_router(equipment_router)
    app.include_router(rentals_router)
    app.include_router(condition_logs_router)
    app.include_router(flags_router)
    app.include_router(rentals_ws_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("tables_verified", tables=len(Base.metadata.tables))
        logger.info("startup_complete", app=settings.app_name, environment=settings.environment)

    return app


app = create_app()
