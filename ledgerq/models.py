import json
from dataclasses import dataclass, field
from typing import List, Optional

# Job States
QUEUED = "queued"
IN_FLIGHT = "in_flight"
SUCCEEDED = "succeeded"
FAILED = "failed"

STATES = (QUEUED, IN_FLIGHT, SUCCEEDED, FAILED)
TERMINAL_STATES = (SUCCEEDED, FAILED)

# Ledger operations exposed through the gateway
CREATE_MESSAGE = "CreateMessage"
READ_MESSAGE = "ReadMessage"
UPDATE_MESSAGE = "UpdateMessage"
DELETE_MESSAGE = "DeleteMessage"
TRANSFER_MESSAGE = "TransferMessage"
MESSAGE_EXISTS = "MessageExists"
GET_ALL_MESSAGES = "GetAllMessages"
INIT_LEDGER = "InitLedger"


@dataclass
class Job:
    id: str
    principal: str
    operation: str
    arguments: List[str] = field(default_factory=list)
    record_key: str = ""
    state: str = QUEUED
    attempts: int = 0
    max_attempts: int = 5
    result: Optional[bytes] = None
    last_error: Optional[str] = None
    enqueued_at: str = ""
    updated_at: str = ""
    next_run_at: Optional[str] = None
    picked_by: Optional[str] = None
    seq: int = 0

    @classmethod
    def from_row(cls, row) -> "Job":
        result = row["result"]
        return cls(
            id=row["id"],
            principal=row["principal"],
            operation=row["operation"],
            arguments=json.loads(row["arguments"]),
            record_key=row["record_key"],
            state=row["state"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            result=bytes(result) if result is not None else None,
            last_error=row["last_error"],
            enqueued_at=row["enqueued_at"],
            updated_at=row["updated_at"],
            next_run_at=row["next_run_at"],
            picked_by=row["picked_by"],
            seq=row["seq"],
        )

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_status(self) -> dict:
        """Shape returned to callers polling a job."""
        out = {
            "jobId": self.id,
            "state": self.state,
            "operation": self.operation,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "enqueuedAt": self.enqueued_at,
            "updatedAt": self.updated_at,
        }
        if self.state == SUCCEEDED:
            out["result"] = (self.result or b"").decode("utf-8", errors="replace")
        elif self.last_error is not None:
            out["lastError"] = self.last_error
        return out


@dataclass
class Message:
    id: str
    messageId: float
    userId: float
    content: str
    type: float
    createdAt: str
    docType: str = "message"
