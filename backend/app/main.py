"""
FastAPI app entrypoint.

Drop scheduler: operator API under /api, per-shop event socket at /ws, lifecycle loops driven by
APScheduler (one interval job per shop with connected subscribers).
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load .env from backend/ before any app code
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from app.api.routes import catalog, debug, drops, events
from app.api.routes import settings as settings_routes
from app.config import settings
from app.core.errors import DropSchedulerError, error_to_http
from app.scheduler.engine import DropEngine
from app.services.catalog.shopify_catalog import ShopifyCatalog

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = BackgroundScheduler(timezone="UTC")
    # Tests install their own engine (fake catalog, fixed clock) before startup
    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = DropEngine(ShopifyCatalog(), scheduler=scheduler)
        app.state.engine = engine
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Drop scheduler ready; lifecycle tick every %ss", settings.lifecycle_tick_seconds)
    yield
    engine.shutdown()
    scheduler.shutdown(wait=False)


app = FastAPI(title="Drop Scheduler", version="0.1.0", lifespan=lifespan)

# CORS: dev origins + optional CORS_ORIGINS env (comma-separated) for the deployed operator UI
_cors_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_cors_origins.extend(settings.cors_origin_list())
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DropSchedulerError)
async def drop_scheduler_error(request: Request, exc: DropSchedulerError) -> JSONResponse:
    http = error_to_http(exc)
    if http.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": http.detail}, status_code=http.status_code)


app.include_router(drops.router, prefix="/api/drops", tags=["drops"])
app.include_router(settings_routes.router, prefix="/api/settings", tags=["settings"])
app.include_router(catalog.router, prefix="/api", tags=["catalog"])
app.include_router(debug.router, prefix="/api/debug", tags=["debug"])
app.include_router(events.router, tags=["events"])


@app.get("/", include_in_schema=False)
def root():
    """Root: point to API docs and health."""
    return {"message": "Drop Scheduler API", "docs": "/docs", "health": "/health"}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
