# provisioning/main.py

import logging
import time
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from provisioning.api.deps import client_ip
from provisioning.api.v1 import health, invitations, registration, verification
from provisioning.core.config import Settings, settings as default_settings
from provisioning.core.email import EmailSender
from provisioning.core.errors import (
    DeliveryError,
    ProvisioningError,
    StorageError,
    SubjectNotFoundError,
    ValidationError,
    install_request_id_logging,
    log_exception_with_context,
)
from provisioning.core.rate_limit import build_register_limiter
from provisioning.core.request_context import begin_request, end_request, get_request_id
from provisioning.core.security import hash_password
from provisioning.core.sms import SmsSender
from provisioning.db.repositories import SqlInvitationStore, SqlVerificationStore
from provisioning.db.session import create_db_engine, create_session_factory
from provisioning.ports import Clock
from provisioning.services.invitation_service import InvitationService
from provisioning.services.verification_service import VerificationService

# --- Logging setup ---
# LogRecordFactory runs for EVERY record, globally, so %(request_id)s never
# raises KeyError even for third-party loggers the filter is not attached to.
_old_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    record = _old_factory(*args, **kwargs)
    if not hasattr(record, "request_id"):
        record.request_id = "-"
    return record


logging.setLogRecordFactory(_record_factory)

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s %(name)s request_id=%(request_id)s %(message)s",
)
install_request_id_logging()

logger = logging.getLogger("provisioning")


def _get_request_id(request: Request) -> str:
    """
    Use an incoming request id if present (common in proxies),
    otherwise generate one.
    """
    incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
    if incoming and incoming.strip():
        return incoming.strip()[:128]
    return uuid.uuid4().hex


def _rid_from_request(request: Request) -> str:
    # Prefer request.state (set by middleware), fall back to request_context, then generate.
    rid = getattr(request.state, "request_id", None)
    if isinstance(rid, str) and rid.strip():
        return rid
    rid2 = get_request_id()
    if rid2 and rid2 != "-":
        return rid2
    return uuid.uuid4().hex


def _error_payload(code: str, message: str, request_id: str, extra: Optional[dict] = None) -> dict:
    """
    Standardized error contract:
    - code/message/request_id at the top level
    - detail repeats code/message plus any structured fields
    """
    payload: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": request_id,
        "detail": {"code": code, "message": message},
    }
    if extra:
        payload.update(extra)
    return payload


def _json_error(status_code: int, payload: dict, request_id: str) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["X-Request-ID"] = request_id
    return resp


def _http_exception_payload(exc: HTTPException, *, request_id: str) -> dict:
    """
    If exc.detail is a dict, it is merged into payload["detail"] and its
    `code` (when given) becomes the top-level code. Handlers raise e.g.
        HTTPException(400, detail={"code": "code_invalid", "message": "..."})
    String details keep the generic HTTP_<status> code.
    """
    code = f"HTTP_{exc.status_code}"

    if isinstance(exc.detail, dict):
        msg = exc.detail.get("message")
        if not isinstance(msg, str) or not msg.strip():
            msg = "Request failed."
        detail_code = exc.detail.get("code")
        if isinstance(detail_code, str) and detail_code.strip():
            code = detail_code

        merged_detail: dict[str, Any] = {"code": code, "message": msg}
        merged_detail.update(exc.detail)

        return _error_payload(code=code, message=msg, request_id=request_id, extra={"detail": merged_detail})

    msg = exc.detail if isinstance(exc.detail, str) else "Request failed."
    return _error_payload(code=code, message=msg, request_id=request_id)


# --- Exception handlers (standardized error contract) ---

async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = _rid_from_request(request)
    payload = _http_exception_payload(exc, request_id=request_id)
    resp = _json_error(exc.status_code, payload, request_id)
    if exc.headers:
        resp.headers.update(exc.headers)
    return resp


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = _rid_from_request(request)
    payload = _error_payload(
        code="VALIDATION_ERROR",
        message="Validation error. Check request body/query parameters.",
        request_id=request_id,
        extra={"errors": exc.errors()},
    )
    return _json_error(422, payload, request_id)


async def provisioning_exception_handler(request: Request, exc: ProvisioningError):
    """
    Maps service exceptions to the error contract.

    Validation and missing-subject errors are the caller's fault and echo their
    context. Storage and delivery faults are logged with a stack trace and
    answered with a generic message only.
    """
    request_id = _rid_from_request(request)

    if isinstance(exc, ValidationError):
        payload = _error_payload(exc.code, exc.message, request_id)
        payload["detail"].update(exc.context)
        return _json_error(400, payload, request_id)

    if isinstance(exc, SubjectNotFoundError):
        return _json_error(404, _error_payload(exc.code, exc.message, request_id), request_id)

    log_exception_with_context(
        f"{type(exc).__name__} while handling request",
        request_id=request_id,
        extra={"method": request.method, "path": request.url.path},
    )

    if isinstance(exc, DeliveryError):
        payload = _error_payload(
            exc.code,
            f"Could not deliver the {exc.channel} message. Try again later.",
            request_id,
        )
        return _json_error(502, payload, request_id)

    if isinstance(exc, StorageError):
        payload = _error_payload(exc.code, "A storage error occurred. Try again later.", request_id)
        return _json_error(500, payload, request_id)

    return _json_error(500, _error_payload("INTERNAL_ERROR", "Internal Server Error", request_id), request_id)


# --- Observability middleware: request id + timing + structured logs ---

async def request_observability(request: Request, call_next):
    request_id = _get_request_id(request)
    request.state.request_id = request_id
    metrics = begin_request(request_id)

    start = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 200) or 200
        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        # Expected errors are already turned into responses by the handlers above;
        # anything reaching here is a genuine bug.
        logger.exception(
            "Unhandled error method=%s path=%s error=%s",
            request.method,
            request.url.path,
            str(e),
        )
        status_code = 500
        return _json_error(
            500,
            _error_payload(code="INTERNAL_ERROR", message="Internal Server Error", request_id=request_id),
            request_id,
        )

    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        db = metrics.snapshot()
        slow_http_ms = float(request.app.state.settings.slow_http_ms)

        log_fn = logger.warning if duration_ms >= slow_http_ms else logger.info
        log_fn(
            "req method=%s path=%s status=%s duration_ms=%.2f db_total_ms=%.2f db_q=%s db_slowest_ms=%.2f ip=%s",
            request.method,
            request.url.path,
            status_code,
            duration_ms,
            db["db_total_ms"],
            db["db_query_count"],
            db["db_slowest_ms"],
            client_ip(request),
        )

        end_request()


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    verification_store=None,
    invitation_store=None,
    email_sender=None,
    sms_sender=None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Build the API around explicit collaborators.

    Anything not passed in is built from settings: a SQLAlchemy engine for
    DATABASE_URL, SQL stores on top of it, and the configured email/SMS
    providers. Tests pass in-memory stores and a fake clock instead.
    """
    s = app_settings or default_settings
    config = s.verification_config()

    if session_factory is None and (verification_store is None or invitation_store is None):
        session_factory = create_session_factory(create_db_engine(s.database_url, s))
        logger.info("DB backend detected: %s", (s.database_url or "").split(":", 1)[0])

    verification_store = verification_store or SqlVerificationStore(session_factory)
    invitation_store = invitation_store or SqlInvitationStore(session_factory)
    email_sender = email_sender or EmailSender(s)
    sms_sender = sms_sender or SmsSender(s)

    app = FastAPI(
        title="Provisioning API",
        openapi_url="/api/v1/openapi.json",
        docs_url="/api/v1/docs" if not s.is_prod else None,
        redoc_url=None,
    )

    app.state.settings = s
    app.state.register_limiter = build_register_limiter(s)
    app.state.session_factory = session_factory
    app.state.verification_service = VerificationService(
        verification_store, email_sender, sms_sender, config, clock
    )
    app.state.invitation_service = InvitationService(
        invitation_store, email_sender, config, hash_password, clock
    )

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ProvisioningError, provisioning_exception_handler)
    app.middleware("http")(request_observability)

    allowed = s.origins_list()
    logger.info("CORS allow_origins=%s", allowed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(verification.router, prefix="/api/v1")
    app.include_router(invitations.router, prefix="/api/v1")
    app.include_router(registration.router, prefix="/api/v1")

    return app


app = create_app()
