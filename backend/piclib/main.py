from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from piclib.api.v1 import api_router
from piclib.core.config import settings
from piclib.core.errors import PicLibError
from piclib.core.logging_config import configure_logging
from piclib.core.redis_client import close_redis
from piclib.core.sentry import init_sentry
from piclib.middleware import RequestLoggingMiddleware
from piclib.schemas.error import ErrorResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis()


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "libraries", "description": "Picture libraries"},
        {"name": "folders", "description": "Folder tree and aggregate statistics"},
        {"name": "files", "description": "Upload, metadata and content streaming"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    Path(settings.media_root).mkdir(parents=True, exist_ok=True)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(PicLibError)
    async def piclib_exception_handler(request: Request, exc: PicLibError):
        payload = ErrorResponse(detail=exc.detail, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
