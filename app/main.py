"""Plasticity Results Sync - FastAPI app entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import Settings, get_settings
from app.core.errors import IdentityError, NotFoundError, StoreError, ValidationError
from app.db.session import create_tables, make_engine, make_sessionmaker
from app.db.store import SqlTableStore
from app.routers import api
from app.services.identity import TokenIdentityResolver
from app.services.pending_queue import JsonFileQueueStorage, MemoryQueueStorage
from app.services.results import ResultsService

logger = logging.getLogger(__name__)


def build_results_service(settings: Settings, store) -> ResultsService:
    """Wire the engine from settings; the queue lives in memory when no path is set."""
    queue_storage = JsonFileQueueStorage(settings.queue_path) if settings.queue_path else MemoryQueueStorage()
    return ResultsService(
        store,
        TokenIdentityResolver(settings),
        queue_storage,
        base_delay_s=settings.flush_base_delay_s,
        max_delay_s=settings.flush_max_delay_s,
        online_delay_s=settings.online_flush_delay_s,
        local_session_limit=settings.local_session_limit,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(settings.database_url, echo=settings.debug)
        if settings.auto_create_tables:
            await create_tables(engine)

        store = SqlTableStore(make_sessionmaker(engine), timeout_s=settings.store_timeout_s)
        service = build_results_service(settings, store)
        app.state.results_service = service
        service.start()
        logger.info(f"Results sync ready on {engine.url.render_as_string(hide_password=True)}")

        yield

        await service.aclose()
        await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        description="Game session results: create, append trials, finalize, offline retry queue",
        lifespan=lifespan,
    )

    @app.exception_handler(IdentityError)
    async def identity_error(request: Request, exc: IdentityError):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error(f"Store failure on {request.url.path}: {exc!r}")
        return JSONResponse(status_code=502, content={"detail": str(exc), "kind": exc.kind.value})

    app.include_router(api.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
