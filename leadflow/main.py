import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadflow.config import settings
from leadflow.container import build_container
from leadflow.database import SessionLocal
from leadflow.logging_config import get_logger, setup_logging
from leadflow.routers import flows, leads, sync

setup_logging(settings.log_level)

app = FastAPI(
    title="Leadflow API",
    description="Chatbot flow engine and funnel/chat lead consistency",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(flows.router)
app.include_router(sync.router)
app.include_router(leads.router)

logger = get_logger("main")


def _background_workers_allowed() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.background_workers_enabled


@app.on_event("startup")
async def start_services() -> None:
    if getattr(app.state, "container", None) is None:
        app.state.container = build_container(
            settings.model_copy(update={"background_workers_enabled": _background_workers_allowed()}),
            SessionLocal,
        )
    await app.state.container.start()


@app.on_event("shutdown")
async def stop_services() -> None:
    container = getattr(app.state, "container", None)
    if container is None:
        return
    await container.stop()
    logger.info("Services stopped")


@app.get("/health")
async def health():
    return {"status": "ok"}
