import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .core.config import Settings, get_settings
from .database.database import create_db_engine, init_db, make_session_factory
from .manager.lifecycle import LifecycleManager
from .manager.locks import LocalFunctionLocks, RedisFunctionLocks
from .manager.proxy import ExecutionProxy
from .orchestrators import build_orchestrator
from .repository.functions import SQLAlchemyFunctionStore
from .routers import functions
from .storage.code_storage import LocalCodeStorage

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_manager(settings: Settings) -> LifecycleManager:
    """Wire the lifecycle manager and its collaborators from settings."""
    engine = create_db_engine(settings.SQLALCHEMY_DATABASE_URI)
    init_db(engine)
    store = SQLAlchemyFunctionStore(make_session_factory(engine))

    code_storage = LocalCodeStorage(settings.FUNCTION_STORAGE_DIR)
    orchestrator = build_orchestrator(settings, code_storage)

    if settings.REDIS_URL:
        locks = RedisFunctionLocks.from_url(
            settings.REDIS_URL,
            timeout=settings.LOCK_TIMEOUT,
            blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT,
        )
        logger.info("Using Redis for per-function locks")
    else:
        locks = LocalFunctionLocks()

    return LifecycleManager(
        store=store,
        code_storage=code_storage,
        orchestrator=orchestrator,
        proxy=ExecutionProxy(timeout=settings.EXECUTION_TIMEOUT),
        locks=locks,
        provision_timeout=settings.PROVISION_TIMEOUT,
        execution_timeout=settings.EXECUTION_TIMEOUT,
    )


def create_app(settings: Optional[Settings] = None, manager: Optional[LifecycleManager] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    logger.info(f"Bootstrapping service with deployment env {settings.DEPLOYMENT_ENV}")

    if manager is None:
        manager = build_manager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await run_in_threadpool(manager.restart_running_functions)
        except Exception as e:
            logger.error(f"Error during function restart: {str(e)}")
        yield
        logger.info("Shutting down server...")
        try:
            await run_in_threadpool(manager.cleanup_all_functions)
        except Exception as e:
            logger.error(f"Error during function cleanup: {str(e)}")
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="API for managing and executing functions as a service",
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.settings = settings

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "invalid request body", "errors": jsonable_encoder(exc.errors())})

    app.include_router(functions.router)

    @app.get("/")
    def root():
        return {
            "message": f"Welcome to the {settings.PROJECT_NAME} API",
            "version": settings.VERSION,
            "deployment_env": settings.DEPLOYMENT_ENV,
            "orchestrator": manager.orchestrator.name,
        }

    return app


def run():
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.LISTEN_HOST, port=settings.LISTEN_PORT)


if __name__ == "__main__":
    run()
