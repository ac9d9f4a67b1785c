"""Application assembly for the mediavault HTTP surface."""
from __future__ import annotations

import logging
import os

from fastapi import APIRouter, FastAPI
from pydantic import BaseModel

from mediavault.common.error_envelope import install_error_handlers
from mediavault.config import runtime_config
from mediavault.diagnostics.routes import router as diagnostics_router
from mediavault.file_manager.routes import router as storage_router
from mediavault.quota.routes import router as quota_router
from mediavault.uploads.routes import router as uploads_router

logger = logging.getLogger(__name__)

health_router = APIRouter(tags=["system"])


class HealthStatus(BaseModel):
    status: str
    version: str = "0.1.0"
    storage_backend: str
    content_backend: str


@health_router.get("/health", response_model=HealthStatus)
def health_check():
    return HealthStatus(
        status="ok",
        storage_backend=runtime_config.get_storage_backend(),
        content_backend=runtime_config.get_content_backend(),
    )


def create_app() -> FastAPI:
    app = FastAPI(title="mediavault", version="0.1.0")
    install_error_handlers(app)
    app.include_router(health_router)
    app.include_router(storage_router)
    app.include_router(quota_router)
    app.include_router(uploads_router)
    app.include_router(diagnostics_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if runtime_config.is_debug() else logging.INFO)
    logger.info(f"Starting mediavault with {runtime_config.config_snapshot()}")
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
