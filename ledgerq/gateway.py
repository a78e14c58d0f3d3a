"""
Gateway service: turns caller requests into immediate reads or queued writes.

Reads go straight to `Backend.evaluate`. Writes are validated, enqueued and
acknowledged with a job id; their outcome is only visible through job status.
"""
import json
import logging
import math
from typing import List, Optional, Sequence

from .backend import Backend, Identity
from .credentials import CredentialStore
from .errors import InternalError, NotFoundError, ValidationError
from .models import (
    Job, CREATE_MESSAGE, READ_MESSAGE, UPDATE_MESSAGE, DELETE_MESSAGE,
    TRANSFER_MESSAGE, GET_ALL_MESSAGES,
)
from .repository import enqueue_job, get_job

log = logging.getLogger(__name__)

# (field, kind) in contract argument order
MESSAGE_FIELDS = (
    ("id", "string"),
    ("messageId", "number"),
    ("userId", "number"),
    ("content", "string"),
    ("type", "number"),
    ("createdAt", "string"),
)


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, str) and value.strip():
        try:
            return math.isfinite(float(value))
        except ValueError:
            return False
    return False


def _as_arg(value) -> str:
    if isinstance(value, str):
        return value
    # 3.0 -> "3"; keeps ints looking like ints on the ledger
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def validate_fields(body, fields) -> List[str]:
    """Check `body` against (field, kind) pairs; return contract args in order."""
    if not isinstance(body, dict):
        raise ValidationError(errors=[{"field": "", "message": "body must contain a message object"}])
    errors = []
    for name, kind in fields:
        value = body.get(name)
        if kind == "number" and not _is_number(value):
            errors.append({"field": name, "message": "must be a number"})
        elif kind == "string" and (not isinstance(value, str) or not value.strip()):
            errors.append({"field": name, "message": "must be a string"})
    if errors:
        raise ValidationError(errors=errors)
    return [_as_arg(body[name]) for name, _ in fields]


class Gateway:
    """
    One gateway per request (or CLI command), bound to a job store connection.
    `principal` is the already-resolved caller; it is trusted as given.
    """

    def __init__(self, conn, backend: Backend, credentials: CredentialStore):
        self.conn = conn
        self.backend = backend
        self.credentials = credentials

    # ---------- Writes ----------
    def create_job(self, principal: str, operation: str, args: Sequence[str],
                   record_key: Optional[str] = None) -> str:
        job_id = enqueue_job(
            self.conn, principal=principal, operation=operation,
            arguments=args, record_key=record_key,
        )
        log.info("Accepted %s%r for %s as job %s", operation, tuple(args), principal, job_id)
        return job_id

    def create_message(self, principal: str, body) -> str:
        args = validate_fields(body, MESSAGE_FIELDS)
        return self.create_job(principal, CREATE_MESSAGE, args)

    def update_message(self, principal: str, record_id: str, body) -> str:
        args = validate_fields(body, MESSAGE_FIELDS)
        if body["id"] != record_id:
            raise ValidationError("ID must match", reason="ID_MISMATCH")
        return self.create_job(principal, UPDATE_MESSAGE, args)

    def transfer_message(self, principal: str, record_id: str, body) -> str:
        (new_user_id,) = validate_fields(body, (("userId", "number"),))
        return self.create_job(principal, TRANSFER_MESSAGE, [record_id, new_user_id])

    def delete_message(self, principal: str, record_id: str) -> str:
        if not record_id or not record_id.strip():
            raise ValidationError(errors=[{"field": "id", "message": "must be a string"}])
        return self.create_job(principal, DELETE_MESSAGE, [record_id])

    # ---------- Reads ----------
    def _identity(self, principal: str) -> Identity:
        identity = self.credentials.get_identity(principal)
        if identity is None:
            log.error("No backend identity registered for %s", principal)
            raise InternalError("no backend identity for caller")
        return identity

    def _evaluate(self, principal: str, operation: str, *args: str) -> bytes:
        identity = self._identity(principal)
        try:
            return self.backend.evaluate(identity, operation, *args)
        except NotFoundError:
            raise
        except Exception as e:
            log.error("Evaluate %s%r failed: %s", operation, args, e)
            raise InternalError("backend evaluate failed") from e

    def read_record(self, principal: str, record_id: str) -> dict:
        data = self._evaluate(principal, READ_MESSAGE, record_id)
        try:
            return json.loads(data)
        except ValueError as e:
            log.error("Record %s is not valid JSON: %s", record_id, e)
            raise InternalError("backend returned malformed record") from e

    def list_records(self, principal: str) -> list:
        data = self._evaluate(principal, GET_ALL_MESSAGES)
        if not data:
            return []
        try:
            return json.loads(data)
        except ValueError as e:
            log.error("Record listing is not valid JSON: %s", e)
            raise InternalError("backend returned malformed listing") from e

    # ---------- Job status ----------
    def get_job_status(self, principal: str, job_id: str) -> Job:
        job = get_job(self.conn, job_id)
        # other principals' jobs are reported as missing
        if job is None or job.principal != principal:
            raise NotFoundError(f"job {job_id} not found")
        return job
