import logging
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Iterator, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .backend import Backend
from .credentials import CredentialStore
from .db import connect_db
from .errors import AuthenticationError, InternalError, NotFoundError, ValidationError
from .gateway import Gateway

log = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def error_body(code: int, **extra: Any) -> dict:
    body = {"status": HTTPStatus(code).phrase, "timestamp": _timestamp()}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def accepted(job_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=HTTPStatus.ACCEPTED,
        content={"status": HTTPStatus.ACCEPTED.phrase, "jobId": job_id, "timestamp": _timestamp()},
    )


# ---------- Dependencies ----------
def current_principal(request: Request) -> str:
    store: CredentialStore = request.app.state.credentials
    principal = store.resolve(request.headers.get(API_KEY_HEADER))
    if principal is None:
        raise AuthenticationError("no valid API key")
    return principal


def get_gateway(request: Request) -> Iterator[Gateway]:
    # opened and closed on threadpool threads other than the handler's
    conn = connect_db(request.app.state.db_path, check_same_thread=False)
    try:
        yield Gateway(conn, request.app.state.backend, request.app.state.credentials)
    finally:
        conn.close()


# ---------- App ----------
def create_app(backend: Backend, db_path: Optional[str] = None,
               credentials: Optional[CredentialStore] = None) -> FastAPI:
    app = FastAPI(title="ledgerq gateway")
    app.state.backend = backend
    app.state.db_path = db_path
    app.state.credentials = credentials or CredentialStore(db_path)

    @app.exception_handler(AuthenticationError)
    async def _unauthorized(_request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content=error_body(401, reason=exc.reason))

    @app.exception_handler(ValidationError)
    async def _bad_request(_request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content=error_body(400, reason=exc.reason, message=exc.message,
                               errors=exc.errors or None),
        )

    @app.exception_handler(RequestValidationError)
    async def _malformed(_request: Request, exc: RequestValidationError):
        errors = [{"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg", "")}
                  for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content=error_body(400, reason=ValidationError.reason,
                               message="Invalid request body", errors=errors or None),
        )

    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, _exc: NotFoundError):
        return JSONResponse(status_code=404, content=error_body(404))

    @app.exception_handler(InternalError)
    async def _internal(request: Request, exc: InternalError):
        log.error("Internal error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content=error_body(500))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.status_code))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=error_body(500))

    # ---------- Records ----------
    @app.get("/records")
    def list_records(principal: str = Depends(current_principal),
                     gw: Gateway = Depends(get_gateway)):
        log.debug("Get all records request received")
        return gw.list_records(principal)

    @app.post("/records", status_code=202)
    def create_record(body: Any = Body(None), principal: str = Depends(current_principal),
                      gw: Gateway = Depends(get_gateway)):
        log.debug("Create record request received: %s", body)
        return accepted(gw.create_message(principal, body))

    @app.get("/records/{record_id}")
    def read_record(record_id: str, principal: str = Depends(current_principal),
                    gw: Gateway = Depends(get_gateway)):
        log.debug("Read record request received for ID %s", record_id)
        return gw.read_record(principal, record_id)

    @app.put("/records/{record_id}", status_code=202)
    def update_record(record_id: str, body: Any = Body(None),
                      principal: str = Depends(current_principal),
                      gw: Gateway = Depends(get_gateway)):
        log.debug("Update record request received for ID %s", record_id)
        return accepted(gw.update_message(principal, record_id, body))

    @app.patch("/records/{record_id}", status_code=202)
    def transfer_record(record_id: str, body: Any = Body(None),
                        principal: str = Depends(current_principal),
                        gw: Gateway = Depends(get_gateway)):
        log.debug("Transfer record request received for ID %s", record_id)
        return accepted(gw.transfer_message(principal, record_id, body))

    @app.delete("/records/{record_id}", status_code=202)
    def delete_record(record_id: str, principal: str = Depends(current_principal),
                      gw: Gateway = Depends(get_gateway)):
        log.debug("Delete record request received for ID %s", record_id)
        return accepted(gw.delete_message(principal, record_id))

    # ---------- Jobs ----------
    @app.get("/jobs/{job_id}")
    def job_status(job_id: str, principal: str = Depends(current_principal),
                   gw: Gateway = Depends(get_gateway)):
        return gw.get_job_status(principal, job_id).to_status()

    return app
