import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import RedirectResponse

from .errors import (
    InterfaceNotFoundError,
    InvalidTransitionError,
    LockTimeoutError,
    MissingPrerequisiteError,
    NetworkError,
    UsageError,
)
from .routes.auth import router as auth_router
from .routes.network import router as network_router
from .services.auto_evaluator import auto_evaluator


logger = logging.getLogger(__name__)

app = FastAPI(title="DangerPrep Network")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


def http_status_for(exc: NetworkError) -> int:
    if isinstance(exc, (UsageError, InvalidTransitionError)):
        return 400
    if isinstance(exc, InterfaceNotFoundError):
        return 404
    if isinstance(exc, MissingPrerequisiteError):
        return 409
    if isinstance(exc, LockTimeoutError):
        return 423
    return 500


@app.exception_handler(NetworkError)
async def network_error_handler(request: Request, exc: NetworkError) -> JSONResponse:
    code = http_status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.on_event("startup")
async def on_startup() -> None:
    # each tick is a no-op while auto mode is off
    await auto_evaluator.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await auto_evaluator.stop()


app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(network_router, prefix="/api/network", tags=["network"])


@app.get("/")
async def root() -> RedirectResponse:
    return RedirectResponse(url="/docs")


@app.get("/api/health")
async def health() -> dict:
    return {"ok": True, "auto_evaluation": auto_evaluator.running}
