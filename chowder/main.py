import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .clamav import ClamAV, VirusScanner
from .config import Settings
from .errors import ClamdError
from .metrics import BYTE_COUNTERS, ByteCounters
from .middleware.auth import HeaderAuthMiddleware
from .middleware.request_context import RequestContextMiddleware
from .schemas import MessageResponse, MetricsResponse, ScanResponse
from .streams import RequestBodyReader

logger = logging.getLogger(__name__)


def _json(body: BaseModel, status_code: int) -> JSONResponse:
    # Empty message/error fields are left out of every body
    return JSONResponse(body.model_dump(exclude_none=True), status_code=status_code)


def create_app(
    scanner: Optional[VirusScanner] = None,
    users: Optional[Dict[str, str]] = None,
    counters: Optional[ByteCounters] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the gateway application.

    ``scanner`` defaults to a ``ClamAV`` client for ``settings.antivirus``.
    ``users`` maps tokens to usernames; an empty map disables auth.
    """
    settings = settings or Settings()
    counters = counters if counters is not None else BYTE_COUNTERS
    if scanner is None:
        scanner = ClamAV(settings.antivirus, counters=counters)

    app = FastAPI(
        title="Chowder",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.scanner = scanner
    app.state.counters = counters

    # Last added runs first: log around auth so rejected requests are logged too
    app.add_middleware(HeaderAuthMiddleware, users=users or {})
    app.add_middleware(RequestContextMiddleware)

    @app.post("/scan", response_model=ScanResponse)
    async def scan(request: Request):
        logger.debug("received scan request")
        try:
            result = await scanner.scan_stream(RequestBodyReader(request.stream()))
        except ClamdError as e:
            logger.error(
                "failed to scan",
                extra={"request_id": request.state.request_id, "daemon_response": e.reply, "error": str(e)},
            )
            return _json(
                MessageResponse(message=e.reply or None, error=str(e)),
                status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        logger.info(
            "scan completed",
            extra={
                "request_id": request.state.request_id,
                "daemon_response": result.message,
                "infected": result.infected,
            },
        )
        return _json(
            ScanResponse(infected=result.infected, message=result.message or None),
            status.HTTP_200_OK,
        )

    @app.get("/healthz", response_model=MessageResponse)
    async def healthz(request: Request):
        logger.debug("received health request")
        try:
            result = await scanner.ping()
        except ClamdError as e:
            logger.error(
                "failed to ping daemon",
                extra={"request_id": request.state.request_id, "daemon_response": e.reply, "error": str(e)},
            )
            return _json(
                MessageResponse(message="Down", error=f"{e} - daemon response: {e.reply}"),
                status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        if not result.healthy:
            logger.error(
                "pinged daemon",
                extra={"request_id": request.state.request_id, "daemon_response": result.message, "ok": False},
            )
            return _json(
                MessageResponse(message="Down", error=result.message or None),
                status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        logger.debug(
            "pinged daemon",
            extra={"request_id": request.state.request_id, "daemon_response": result.message, "ok": True},
        )
        return _json(MessageResponse(message="Ok"), status.HTTP_200_OK)

    @app.get("/metrics", response_model=MetricsResponse)
    async def metrics():
        return MetricsResponse(**counters.snapshot())

    return app
