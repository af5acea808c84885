from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .errors import DomainError
from .logging import setup_logging, RequestIdMiddleware
from .routes.time_entries import router as time_entries_router
from .routes.break_compliance import router as break_compliance_router
from .routes.settings import router as settings_router
from .routes.tasks import router as tasks_router

log = structlog.get_logger(__name__)


async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        log.error("domain_error", code=exc.code, detail=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


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

    app.add_exception_handler(DomainError, domain_error_handler)

    # Routers
    app.include_router(time_entries_router)
    app.include_router(break_compliance_router)
    app.include_router(settings_router)
    app.include_router(tasks_router)

    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            log.info("database_ready", url=engine.url.render_as_string(hide_password=True))
        if settings.scheduler_enabled:
            from .services.scheduler import start_scheduler
            start_scheduler()

    @app.on_event("shutdown")
    def _shutdown():
        from .services.scheduler import shutdown_scheduler
        shutdown_scheduler()

    return app


app = create_app()
