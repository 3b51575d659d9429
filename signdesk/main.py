from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from signdesk.api.routes import health, signing_requests, webhooks
from signdesk.core.config import get_settings
from signdesk.core.errors import (
    AuthenticationError,
    ConcurrencyError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ProviderRegistrationError,
    RateLimitError,
    SigningError,
    ValidationError,
)
from signdesk.core.logging import configure_logging, get_logger
from signdesk.db.session import lifespan


configure_logging()
logger = get_logger(__name__)

ERROR_STATUS_CODES: tuple[tuple[type[SigningError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (ConcurrencyError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
)


def status_code_for(exc: SigningError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def signing_error_handler(request: Request, exc: SigningError) -> JSONResponse:
    code = status_code_for(exc)
    content: dict[str, str] = {"detail": exc.message}
    if isinstance(exc, ProviderRegistrationError):
        content["signing_request_id"] = exc.signing_request_id
    if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("request.failed", path=request.url.path, error=exc.message, status_code=code)
    return JSONResponse(status_code=code, content=content)


async def database_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    logger.error("database.unavailable", path=request.url.path, error=str(exc.orig))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "storage temporarily unavailable"},
    )


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(signing_requests.router)
    application.include_router(webhooks.router)
    application.add_exception_handler(SigningError, signing_error_handler)
    application.add_exception_handler(DBAPIError, database_error_handler)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    logger.info("application.configured", environment=settings.environment)
    return application


app = create_application()
