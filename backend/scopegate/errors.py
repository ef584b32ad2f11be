import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .core.exceptions import DomainException, StoreUnavailableException

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Render DomainException subclasses with their own status, code and details."""

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        http_exc = exc.to_http_exception()
        if isinstance(exc, StoreUnavailableException):
            logger.error(f"[AUTHZ] {request.method} {request.url.path}: {exc.message}")
        elif http_exc.status_code >= 500:
            logger.exception(f"Unhandled service error on {request.url.path}")
        return JSONResponse(
            status_code=http_exc.status_code,
            content={"detail": jsonable_encoder(http_exc.detail)},
            headers=http_exc.headers,
        )
