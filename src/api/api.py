import logging
from contextlib import asynccontextmanager
from datetime import datetime
from time import perf_counter
from typing import Annotated, AsyncGenerator, Awaitable, Callable
from uuid import UUID

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from api.dependencies import get_context, get_quote_service
from domain.errors import (
    InfrastructureError,
    InvalidFormatError,
    InvalidIdError,
    NotFoundError,
    QuoteServiceError,
    UnsupportedCurrencyError,
)
from domain.quotes import QuoteStatus
from main import AppContext, build_app_context
from services.quote_service import QuoteService

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[QuoteServiceError], int] = {
    InvalidFormatError: status.HTTP_400_BAD_REQUEST,
    UnsupportedCurrencyError: status.HTTP_400_BAD_REQUEST,
    InvalidIdError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InfrastructureError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class UpdateRequest(BaseModel):
    pair: str = ""


class UpdateAccepted(BaseModel):
    update_id: UUID
    status: QuoteStatus


class LatestQuoteResponse(BaseModel):
    base: str
    quote: str
    price: str
    updated_at: datetime


class QuoteUpdateResponse(BaseModel):
    update_id: UUID
    base: str
    quote: str
    status: QuoteStatus
    price: str | None = None
    updated_at: datetime | None = None
    error: str | None = None


def error_status_code(exc: QuoteServiceError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(context: AppContext | None = None) -> FastAPI:
    """Build the HTTP app; without ``context`` one is built from the environment on startup."""

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
        app_context = context or build_app_context()
        fastapi_app.state.context = app_context
        yield
        if context is None:
            app_context.close()

    app = FastAPI(title="FX quotes", lifespan=lifespan)

    @app.middleware("http")
    async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        start_time = perf_counter()
        response = await call_next(request)
        process_time = perf_counter() - start_time
        logger.info("%s %s -> %s in %.4fs", request.method, request.url.path, response.status_code, process_time)
        return response

    @app.exception_handler(QuoteServiceError)
    async def handle_quote_service_error(request: Request, exc: QuoteServiceError) -> JSONResponse:
        code = error_status_code(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"error": str(exc)})

    @app.post("/quotes/update", status_code=status.HTTP_202_ACCEPTED)
    def request_update(
        body: UpdateRequest, service: Annotated[QuoteService, Depends(get_quote_service)]
    ) -> UpdateAccepted:
        update_id, update_status = service.request_update(body.pair)
        return UpdateAccepted(update_id=update_id, status=update_status)

    @app.get("/quotes/latest")
    def get_latest(
        service: Annotated[QuoteService, Depends(get_quote_service)], base: str = "", quote: str = ""
    ) -> LatestQuoteResponse:
        return LatestQuoteResponse.model_validate(service.get_latest(base, quote).model_dump())

    @app.get("/quotes/{update_id}", response_model_exclude_none=True)
    def get_result(update_id: str, service: Annotated[QuoteService, Depends(get_quote_service)]) -> QuoteUpdateResponse:
        view = service.get_result(update_id)
        return QuoteUpdateResponse.model_validate(view.model_dump())

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "OK"

    @app.get("/readyz")
    def readyz(app_context: Annotated[AppContext, Depends(get_context)]) -> JSONResponse:
        try:
            app_context.repository.ping()
            app_context.cache.ping()
        except Exception as exc:
            logger.warning("Readiness check failed: %s", exc)
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unavailable"})
        return JSONResponse(content={"status": "ready"})

    return app


app = create_app()
