from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cylinder_ledger.api.v1 import api_router
from cylinder_ledger.core.config import settings
from cylinder_ledger.core.errors import DepositError
from cylinder_ledger.core.logging_config import configure_logging
from cylinder_ledger.middleware import RequestLoggingMiddleware
from cylinder_ledger.schemas.error import ErrorResponse
from cylinder_ledger.services import credit_expiration_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    credit_expiration_scheduler.start(app)
    try:
        yield
    finally:
        await credit_expiration_scheduler.stop(app)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    tags_metadata = [
        {"name": "deposits", "description": "Deposit rates, charges, refunds and balances"},
        {"name": "empty-returns", "description": "Empty return credits and brand reconciliation"},
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
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(DepositError)
    async def deposit_error_handler(request: Request, exc: DepositError):
        detail = {"message": exc.detail, **exc.extra} if exc.extra else exc.detail
        payload = ErrorResponse(detail=detail, code=exc.code)
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
