from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from depthwise.api.routes import chat, chats, models, research, usage
from depthwise.config import settings
from depthwise.exceptions import ForbiddenContextError, ProviderDisabledError, StorageError
from depthwise.services.database import close_redis
from depthwise.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("depthwise starting")
    yield
    await close_redis()
    logger.info("depthwise stopped")


app = FastAPI(
    title="depthwise",
    description="Conversational search with adaptive research depth",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ForbiddenContextError)
async def forbidden_handler(request: Request, exc: ForbiddenContextError):
    return PlainTextResponse(str(exc), status_code=403)


@app.exception_handler(ProviderDisabledError)
async def provider_disabled_handler(request: Request, exc: ProviderDisabledError):
    return PlainTextResponse(str(exc), status_code=404)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse({"error": "Storage unavailable", "status": 500}, status_code=500)


# Routes
app.include_router(chat.router)
app.include_router(research.router)
app.include_router(chats.router)
app.include_router(usage.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "depthwise"}
