"""
nullanchor - HTTP Boundary

Thin FastAPI surface over the relayer for vertical applications. Every
failure leaves as ``{code, message}`` with the HTTP status carried by the
error class; raw exceptions never cross this boundary.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

from typing import Any

import structlog
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .errors import DuplicateSubmission, NullAnchorError, SchemaError
from .relayer import Outcome, Relayer, SubmissionResult


logger = structlog.get_logger(__name__)


def _result_response(result: SubmissionResult) -> JSONResponse:
    if result.outcome == Outcome.REJECTED or isinstance(result.error, DuplicateSubmission):
        error = result.error
        return JSONResponse(
            status_code=error.status_code,
            content={**error.to_dict(), "outcome": result.outcome.value, "digest": result.digest},
        )
    status_code = 202 if result.outcome == Outcome.PENDING_CONFIRMATION else 200
    return JSONResponse(status_code=status_code, content=result.to_response())


def create_app(relayer: Relayer) -> FastAPI:
    """Create the FastAPI application around a configured relayer."""
    app = FastAPI(
        title="nullanchor relayer",
        description="Verifiable deletion: warrant and attestation anchoring with soulbound receipts.",
        version=__version__,
    )
    app.state.relayer = relayer

    @app.post("/warrants")
    def submit_warrant(document: dict[str, Any] = Body(...)) -> JSONResponse:
        return _result_response(relayer.submit_warrant(document))

    @app.post("/attestations")
    def submit_attestation(document: dict[str, Any] = Body(...)) -> JSONResponse:
        return _result_response(relayer.submit_attestation(document))

    @app.get("/status/{key}")
    def get_status(key: str) -> dict:
        return relayer.get_status(key)

    @app.get("/health")
    def health() -> dict:
        ledger = relayer.ledger
        return {
            "status": "paused" if ledger.paused else "ok",
            "totalAnchors": ledger.total_anchors,
            "receiptsMinted": relayer.issuer.total_minted,
        }

    @app.exception_handler(NullAnchorError)
    async def protocol_error_handler(request: Request, exc: NullAnchorError) -> JSONResponse:
        logger.warning(
            "request_failed",
            method=request.method,
            path=request.url.path,
            code=exc.code,
            status_code=exc.status_code,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def body_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = SchemaError("Request body must be a JSON object")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            method=request.method,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    return app
