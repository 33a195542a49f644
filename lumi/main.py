"""Lumi reading log - FastAPI entrypoint."""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ServerSelectionTimeoutError

from lumi.api import auth, link_codes, links, students
from lumi.config import settings
from lumi.db import MongoAuditSink, MongoRateLimiter, MongoStore, db_shutdown, db_startup, watch_changes
from lumi.errors import ServiceError
from lumi.services.fcm import FcmDispatcher
from lumi.services.rate_limit import InProcessRateLimiter
from lumi.triggers import TriggerRouter

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database = await db_startup()
    except ServerSelectionTimeoutError as e:
        logger.error("MongoDB is not running. Start it with: docker compose up -d")
        raise RuntimeError("MongoDB connection failed. Start MongoDB (e.g. docker compose up -d).") from e

    store = MongoStore(database)
    app.state.store = store
    app.state.audit_sink = MongoAuditSink(database)
    if settings.rate_limit_backend == "memory":
        app.state.rate_limiter = InProcessRateLimiter()
    else:
        app.state.rate_limiter = MongoRateLimiter(database)
    app.state.dispatcher = FcmDispatcher()

    watcher = None
    if settings.enable_change_streams:
        router = TriggerRouter.build(store, app.state.dispatcher)
        watcher = asyncio.create_task(watch_changes(database, router))
    yield
    if watcher:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    await db_shutdown()


app = FastAPI(
    title=settings.app_name,
    description="Server-side reading stats, achievements and parent link codes",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
app.include_router(link_codes.router, prefix="/api/link-codes", tags=["Link Codes"])
app.include_router(links.router, prefix="/api/links", tags=["Parent Links"])
app.include_router(students.router, prefix="/api/schools", tags=["Students"])


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.app_name}
