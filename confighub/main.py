import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from confighub.config import settings
from confighub.core.dependencies import get_vault
from confighub.core.exceptions import AppError, WorkflowStepError
from confighub.providers.router import router as git_router
from confighub.vault.keychain import KeychainIntegration
from confighub.vault.router import router as credentials_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if settings.legacy_keychain_service != settings.keychain_service:
        result = await get_vault().migrate_keychain(
            KeychainIntegration(settings.legacy_keychain_service),
            KeychainIntegration(settings.keychain_service),
        )
        for error in result.errors:
            logger.warning(error)
    yield


app = FastAPI(
    title="Config Hub",
    version="1.0.0",
    description="Credential vault and Bitbucket Server/Cloud access for configuration repositories.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowStepError)
async def workflow_error_handler(request: Request, exc: WorkflowStepError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "step": exc.step, "state": exc.state},
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
    )


# ── Credential vault ──────────────────────────────────────────────────────────
app.include_router(credentials_router)

# ── Git providers ─────────────────────────────────────────────────────────────
app.include_router(git_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "1.0.0"}
