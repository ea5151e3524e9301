from typing import Annotated

from fastapi import Depends, Request

from main import AppContext
from services.quote_service import QuoteService


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_quote_service(context: Annotated[AppContext, Depends(get_context)]) -> QuoteService:
    return context.service
