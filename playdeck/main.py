from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from playdeck.core.config import get_settings
from playdeck.core.database import create_db_and_tables, engine as default_engine
from playdeck.core.exceptions import (
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    PlaydeckError,
    ValidationError,
)
from playdeck.core.logging import setup_logging
from playdeck.routers import audit as audit_router, core, forms, inventory, playbooks, runs, vaults, webhooks
from playdeck.services import AuditService, NotificationService, RunCoordinator, SchedulerService, SSHTransport

settings = get_settings()
logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (ConfigurationError, 422),
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
]


def status_for(exc: PlaydeckError) -> int:
    for exc_type, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return code
    return 500


def create_app(
    engine: Optional[Engine] = None,
    transport: Optional[SSHTransport] = None,
    notifier: Optional[NotificationService] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Builds the API application around one coordinator and one scheduler.

    Args:
        engine: Database engine; defaults to the configured DATABASE_URL.
        transport: SSH collaborator; tests pass a fake.
        notifier: Notification collaborator.
        start_scheduler: Start the APScheduler tick loop on startup.
    """
    bind = engine or default_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manages engine lifecycle events.

        On Startup:
        - Creates database tables if missing.
        - Fails runs interrupted by a previous shutdown or crash.
        - Removes decrypted vault files left on disk.
        - Recomputes every schedule's next fire time and starts the tick.

        On Shutdown:
        - Stops the scheduler, then interrupts in-flight runs.
        """
        setup_logging()
        logger.info(f"{settings.APP_NAME} starting up...")
        create_db_and_tables(bind)

        audit = AuditService(bind)
        coordinator = RunCoordinator(bind, audit, transport=transport, notifier=notifier)
        scheduler = SchedulerService(bind, coordinator, audit)
        app.state.engine = bind
        app.state.audit = audit
        app.state.coordinator = coordinator
        app.state.scheduler = scheduler

        interrupted = await coordinator.recover()
        if interrupted:
            logger.warning(f"Recovered {interrupted} interrupted runs")
        await scheduler.sync_all()
        if start_scheduler:
            scheduler.start()
        logger.info(f"{settings.APP_NAME} started successfully.")

        yield

        logger.info(f"{settings.APP_NAME} shutting down...")
        scheduler.shutdown()
        await coordinator.shutdown()

    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)

    @app.exception_handler(PlaydeckError)
    async def playdeck_exception_handler(request: Request, exc: PlaydeckError):
        code = status_for(exc)
        if code == 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=code, content={"error": exc.message, "details": exc.details})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catches unhandled exceptions and returns clean error responses."""
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"error": "Internal Server Error", "details": {}})

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    app.include_router(core.router)
    app.include_router(runs.router)
    app.include_router(forms.router)
    app.include_router(inventory.router)
    app.include_router(playbooks.router)
    app.include_router(vaults.router)
    app.include_router(webhooks.router)
    app.include_router(audit_router.router)
    return app


app = create_app()
