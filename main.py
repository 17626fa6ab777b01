import logging
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from db_models import ContactResponse, ErrorDetail, ErrorResponse, FinalResponse, IdentifyRequest
from db_setup import ContactStore
from errors import InvalidInput, StoreUnavailable
from resolver import IdentityResolver


def configure_logging(settings: Settings):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_invalid_input(request: Request, exc: InvalidInput) -> JSONResponse:
    logger.info("invalid_input", path=request.url.path, reason=str(exc))
    return _error(400, "INVALID_INPUT", str(exc))


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
    return _error(422, "VALIDATION_ERROR", "Request body is invalid")


async def _handle_store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.warning("store_unavailable", path=request.url.path, error=str(exc))
    return _error(503, "STORE_UNAVAILABLE", "Service temporarily unavailable")


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
    return _error(500, "INTERNAL_ERROR", "Internal server error")


def get_resolver(request: Request) -> IdentityResolver:
    return IdentityResolver(request.app.state.store, retries=request.app.state.settings.resolve_retries)


def create_app(settings: Optional[Settings] = None, store: Optional[ContactStore] = None) -> FastAPI:
    """Build the API. The contact store is created once, at startup."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.store = store or ContactStore(settings.db_name, timeout=settings.db_timeout)
        app.state.store.init_db()
        yield

    app = FastAPI(
        title="Contact Reconciliation API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(InvalidInput, _handle_invalid_input)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(StoreUnavailable, _handle_store_unavailable)
    app.add_exception_handler(Exception, _handle_unexpected)

    @app.get("/")
    async def root():
        return {"message": "Contact reconciliation API is up"}

    @app.post("/identify", response_model=FinalResponse)
    def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
        identity = resolver.resolve(request.email, request.phoneNumber)
        return FinalResponse(contact=ContactResponse.from_identity(identity))

    return app


configure_logging(get_settings())

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=get_settings().host, port=get_settings().port)
