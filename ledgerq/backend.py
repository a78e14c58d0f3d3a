"""
Backend client seam.

Anything that can evaluate and submit named transactions satisfies `Backend`.
The job queue only ever talks to this protocol; `LocalLedger` is the bundled
implementation, a SQLite world state running the message contract.
"""
import json
import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

from .config import LEDGER_DB_FILE
from .errors import (
    InternalError, NotFoundError, PermanentSubmitError, TransientSubmitError,
)
from .models import (
    Message, CREATE_MESSAGE, READ_MESSAGE, UPDATE_MESSAGE, DELETE_MESSAGE,
    TRANSFER_MESSAGE, MESSAGE_EXISTS, GET_ALL_MESSAGES, INIT_LEDGER,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Opaque credential set a principal's transactions are signed with."""

    principal: str
    msp_id: str
    credential: str = ""


class Backend(Protocol):
    def evaluate(self, identity: Identity, operation: str, *args: str) -> bytes:
        """Read-only call. Raises NotFoundError or InternalError."""
        ...

    def submit(self, identity: Identity, operation: str, *args: str) -> bytes:
        """Mutating call. Raises TransientSubmitError or PermanentSubmitError."""
        ...


# ---------- Bundled ledger ----------
LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS world_state (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL
);
"""

SEED_MESSAGES = [
    Message(id="1", messageId=3, userId=5, content="Hello World!", type=0,
            createdAt="2025-04-04T10:00:00Z"),
    Message(id="2", messageId=3, userId=4, content="Fabric Smart Contracts are cool!",
            type=0, createdAt="2025-04-04T10:05:00Z"),
]


class ContractError(Exception):
    """Business-rule rejection raised inside a contract function."""


class MissingKeyError(ContractError):
    pass


def _number(value: str, name: str):
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ContractError(f"{name} must be a number, got {value!r}")
    return int(n) if n.is_integer() else n


def _encode(doc: dict) -> bytes:
    # deterministic: sorted keys, no whitespace
    return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")


class LocalLedger:
    """
    SQLite-backed ledger implementing the message contract.

    Each contract call runs in one SQLite transaction, so a committed call is
    atomic and durable. Contract rejections ("already exists", "does not
    exist", bad arguments) are permanent; lock contention is transient.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or LEDGER_DB_FILE
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        self._conn.executescript(LEDGER_SCHEMA)

    def close(self):
        with self._lock:
            self._conn.close()

    # ---------- Backend protocol ----------
    def evaluate(self, identity: Identity, operation: str, *args: str) -> bytes:
        fn = self._queries().get(operation)
        if fn is None:
            raise InternalError(f"unknown query {operation}")
        try:
            with self._lock:
                return fn(*args)
        except MissingKeyError as e:
            raise NotFoundError(str(e))
        except (ContractError, TypeError, sqlite3.Error) as e:
            log.error("Evaluate %s failed for %s: %s", operation, identity.principal, e)
            raise InternalError(str(e))

    def submit(self, identity: Identity, operation: str, *args: str) -> bytes:
        fn = self._transactions().get(operation)
        if fn is None:
            raise PermanentSubmitError(f"unknown transaction {operation}")
        try:
            with self._lock, self._conn:
                return fn(*args)
        except ContractError as e:
            raise PermanentSubmitError(str(e))
        except TypeError as e:
            raise PermanentSubmitError(f"{operation}: {e}")
        except sqlite3.OperationalError as e:
            raise TransientSubmitError(f"ledger busy: {e}")

    # ---------- Contract ----------
    def _queries(self):
        return {
            READ_MESSAGE: self._read_message,
            MESSAGE_EXISTS: self._message_exists,
            GET_ALL_MESSAGES: self._get_all_messages,
        }

    def _transactions(self):
        return {
            INIT_LEDGER: self._init_ledger,
            CREATE_MESSAGE: self._create_message,
            UPDATE_MESSAGE: self._update_message,
            DELETE_MESSAGE: self._delete_message,
            TRANSFER_MESSAGE: self._transfer_message,
        }

    def _get_state(self, key: str) -> Optional[bytes]:
        row = self._conn.execute("SELECT value FROM world_state WHERE key=?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def _put_state(self, key: str, value: bytes):
        self._conn.execute(
            "INSERT INTO world_state(key, value) VALUES(?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, sqlite3.Binary(value)),
        )

    def _exists(self, key: str) -> bool:
        return self._get_state(key) is not None

    def _init_ledger(self) -> bytes:
        for message in SEED_MESSAGES:
            self._put_state(message.id, _encode(asdict(message)))
            log.info("Message %s initialized", message.id)
        return b""

    def _build(self, id, messageId, userId, content, type, createdAt) -> Message:
        if not id:
            raise ContractError("id must not be empty")
        return Message(
            id=id,
            messageId=_number(messageId, "messageId"),
            userId=_number(userId, "userId"),
            content=content,
            type=_number(type, "type"),
            createdAt=createdAt,
        )

    def _create_message(self, id, messageId, userId, content, type, createdAt) -> bytes:
        if self._exists(id):
            raise ContractError(f"The message {id} already exists")
        message = self._build(id, messageId, userId, content, type, createdAt)
        self._put_state(id, _encode(asdict(message)))
        return b""

    def _read_message(self, id) -> bytes:
        value = self._get_state(id)
        if value is None:
            raise MissingKeyError(f"The message {id} does not exist")
        return value

    def _update_message(self, id, messageId, userId, content, type, createdAt) -> bytes:
        if not self._exists(id):
            raise ContractError(f"The message {id} does not exist")
        message = self._build(id, messageId, userId, content, type, createdAt)
        self._put_state(id, _encode(asdict(message)))
        return b""

    def _delete_message(self, id) -> bytes:
        if not self._exists(id):
            raise ContractError(f"The message {id} does not exist")
        self._conn.execute("DELETE FROM world_state WHERE key=?", (id,))
        return b""

    def _message_exists(self, id) -> bytes:
        return b"true" if self._exists(id) else b"false"

    def _transfer_message(self, id, newUserId) -> bytes:
        value = self._get_state(id)
        if value is None:
            raise ContractError(f"The message {id} does not exist")
        message = json.loads(value)
        old_user_id = message.get("userId")
        message["userId"] = _number(newUserId, "newUserId")
        self._put_state(id, _encode(message))
        return json.dumps(old_user_id).encode("utf-8")

    def _get_all_messages(self) -> bytes:
        out = []
        for (value,) in self._conn.execute("SELECT value FROM world_state ORDER BY key"):
            try:
                out.append(json.loads(bytes(value)))
            except ValueError:
                out.append(bytes(value).decode("utf-8", errors="replace"))
        return json.dumps(out).encode("utf-8")
