"""
HTTP API for the dentbill service.

Exposes billing derivation for a single encounter, payment confirmation, the
pre-submission claim check and the monthly claim file.  Every typed failure
raised by the service modules is converted into an ``HTTPException`` and
rendered with the standard error envelope ``{"success": false, "error": {...}}``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Literal, Optional, Tuple

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from dentbill import db
from dentbill.billing import BillingError, confirm_payment, derive_billing, set_document_provided
from dentbill.claims import ClaimGenerationError, generate_monthly_claim
from dentbill.config import get_settings
from dentbill.receipt_check import rule_counts, run_receipt_check
from dentbill.time_utils import parse_year_month


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(get_settings().log_level)
logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[str | None] = ContextVar("trace_id", default=None)


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None

    model_config = {"extra": "allow"}


def _success_payload(data: Any) -> Dict[str, Any]:
    """Return a ``SuccessResponse`` merged with dictionary data for flat clients."""

    payload = SuccessResponse(data=data).model_dump()
    if isinstance(data, dict):
        for key, value in data.items():
            if key not in payload:
                payload[key] = value
    return payload


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


_ERROR_MESSAGE_KEYS: Tuple[str, ...] = ("message", "detail", "error", "msg")
_ERROR_RESERVED_KEYS = {"code", "details", *_ERROR_MESSAGE_KEYS}


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    code: int | str | None = status_code
    message = "An error occurred"
    details: Any | None = None
    extras: Dict[str, Any] = {}

    if isinstance(payload, dict):
        if payload.get("code") not in (None, ""):
            code = payload["code"]
        if "details" in payload:
            details = payload["details"]
        for key in _ERROR_MESSAGE_KEYS:
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
        else:
            message = str(payload) if payload else message
        extras = {k: v for k, v in payload.items() if k not in _ERROR_RESERVED_KEYS}
    elif payload not in (None, ""):
        message = str(payload)

    error_payload: Dict[str, Any] = {"message": message}
    if code is not None:
        error_payload["code"] = code
    if details is not None:
        error_payload["details"] = details
    if extras:
        error_payload.update(extras)
    return ErrorResponse(error=ErrorDetail(**error_payload))


_ERROR_MESSAGES = {
    "encounter_not_found": "Encounter not found",
    "fee_table_empty": "Fee master has no rows for the current revision",
    "persistence_failure": "Failed to store billing",
    "billing_not_found": "No billing exists for this encounter",
    "no_paid_billings": "No paid billings for the requested month",
    "query_failure": "Failed to read billings",
}


def _http_error(exc: BillingError | ClaimGenerationError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "code": exc.kind,
            "message": _ERROR_MESSAGES.get(exc.kind, exc.kind),
            "details": exc.detail or None,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly
    db.init_schema()
    logger.info("lifespan_startup")
    yield
    logger.info("lifespan_shutdown_complete")


app = FastAPI(title="dentbill API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")
        _TRACE_ID_CTX.reset(token)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(),
        headers=dict(exc.headers or {}),
    )


class DeriveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encounter_id: str = Field(..., min_length=1, alias="encounterId")


class ReceiptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    year_month: str = Field(..., alias="yearMonth")
    format: Literal["json", "uke"] = "json"

    @field_validator("year_month")
    @classmethod
    def _check_year_month(cls, value: str) -> str:
        parse_year_month(value)
        return value


class ReceiptCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    year_month: str = Field(..., alias="yearMonth")
    billing_ids: Optional[List[int]] = Field(default=None, alias="billingIds")

    @field_validator("year_month")
    @classmethod
    def _check_year_month(cls, value: str) -> str:
        parse_year_month(value)
        return value


class DocumentRequest(BaseModel):
    provided: bool = True


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/billing/derive")
def derive_billing_endpoint(req: DeriveRequest, session: Session = Depends(db.get_session)):
    try:
        result = derive_billing(session, req.encounter_id)
    except BillingError as exc:
        logger.warning("billing.derive_failed", encounter_id=req.encounter_id, kind=exc.kind)
        raise _http_error(exc) from exc
    return _success_payload(result.to_dict())


@app.post("/api/billing/{encounter_id}/payment")
def confirm_payment_endpoint(encounter_id: str, session: Session = Depends(db.get_session)):
    try:
        data = confirm_payment(session, encounter_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return _success_payload(data)


@app.put("/api/billing/{encounter_id}/document")
def document_provided_endpoint(
    encounter_id: str, req: DocumentRequest, session: Session = Depends(db.get_session)
):
    try:
        data = set_document_provided(session, encounter_id, req.provided)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return _success_payload(data)


@app.post("/api/receipts/check")
def check_receipts_endpoint(req: ReceiptCheckRequest, session: Session = Depends(db.get_session)):
    try:
        report = run_receipt_check(session, req.year_month, billing_ids=req.billing_ids)
    except ClaimGenerationError as exc:
        logger.warning("receipt_check.failed", year_month=req.year_month, kind=exc.kind)
        raise _http_error(exc) from exc
    return _success_payload(report.to_dict())


@app.get("/api/receipts/check")
def receipt_check_rules_endpoint(session: Session = Depends(db.get_session)):
    try:
        counts = rule_counts(session)
    except ClaimGenerationError as exc:
        raise _http_error(exc) from exc
    return _success_payload({"status": "ready", "rules": counts})


@app.post("/api/receipts/generate")
def generate_receipts_endpoint(req: ReceiptRequest, session: Session = Depends(db.get_session)):
    """Return the claim preview as JSON or the encoded ``.UKE`` file."""

    try:
        claim = generate_monthly_claim(session, req.year_month, mark_billed=req.format == "uke")
    except ClaimGenerationError as exc:
        logger.warning("claims.generate_failed", year_month=req.year_month, kind=exc.kind)
        raise _http_error(exc) from exc

    if req.format == "uke":
        return Response(
            content=claim.encode(get_settings().claim_encoding),
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{claim.filename}"'},
        )
    return _success_payload(claim.to_dict())


__all__ = ["app", "configure_logging"]
