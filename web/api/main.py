"""FastAPI admin hub API - duels, player stats, admin users, step-up sign-in."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from hub.errors import HubError, ProviderError
from hub.models import init_db

from web.auth import get_identity_provider
from web.api.admin_routes import router as admin_router
from web.api.auth_routes import router as auth_router
from web.api.notify_routes import router as notify_router
from web.api.player_routes import router as player_router

logger = logging.getLogger("hub.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await get_identity_provider().close()


app = FastAPI(title="Admin Hub API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(player_router)
app.include_router(notify_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    # Details stay in the log; the client only gets the generic message
    logger.warning("%s %s: provider error: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(HubError)
async def hub_error_handler(request: Request, exc: HubError):
    logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=422,
        content={"error": f"{field}: {msg}" if field else msg},
    )


@app.get("/api/health")
async def health():
    return {"status": "ok"}
