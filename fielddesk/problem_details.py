"""RFC 7807 Problem Details helpers."""
from __future__ import annotations

import logging
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .domain_errors import DomainError

logger = logging.getLogger(__name__)

PROBLEM_TYPE_BASE = "https://api.fielddesk.local/problems/"


def build_problem_details_response(exc: DomainError, *, instance: str | None = None) -> JSONResponse:
    """Render DomainError as RFC 7807 payload with stable domain code."""
    try:
        title = HTTPStatus(exc.http_status).phrase
    except ValueError:
        title = "Domain Error"

    payload: dict[str, object] = {
        "type": f"{PROBLEM_TYPE_BASE}{exc.code.lower()}",
        "title": title,
        "status": exc.http_status,
        "detail": exc.message,
        "code": exc.code,
    }
    if instance:
        payload["instance"] = instance
    if exc.details is not None:
        payload["details"] = exc.details

    headers = None
    if exc.http_status == 429 and exc.details and "retryAfter" in exc.details:
        headers = {"Retry-After": str(exc.details["retryAfter"])}

    return JSONResponse(
        status_code=exc.http_status,
        content=payload,
        media_type="application/problem+json",
        headers=headers,
    )


def install_problem_handlers(app: FastAPI) -> None:
    """Map every DomainError raised by a route to a problem+json response."""

    async def _handle_domain_error(request: Request, exc: DomainError):
        if exc.http_status >= 500:
            logger.error("Domain error %s on %s: %s", exc.code, request.url.path, exc.message)
        return build_problem_details_response(exc, instance=request.url.path)

    app.add_exception_handler(DomainError, _handle_domain_error)
