import hashlib
import logging
import secrets
import sqlite3
from contextlib import closing
from typing import Optional

from .backend import Identity
from .db import connect_db
from .utils import now_iso

log = logging.getLogger(__name__)


def _hash_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class CredentialStore:
    """
    Resolves caller API keys to principals and principals to backend identities.

    Only key hashes are stored. Every call opens its own connection, so one
    store can be shared by request handlers and worker threads.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def _connect(self):
        return closing(connect_db(self.db_path))

    # ---------- API keys ----------
    def issue_api_key(self, principal: str) -> str:
        if not principal or not principal.strip():
            raise ValueError("Principal cannot be empty.")
        api_key = secrets.token_hex(32)
        with self._connect() as conn, conn:
            conn.execute(
                "INSERT INTO api_keys(key_hash, principal, created_at) VALUES(?,?,?)",
                (_hash_key(api_key), principal, now_iso()),
            )
        log.info("Issued API key for %s", principal)
        return api_key

    def resolve(self, api_key: Optional[str]) -> Optional[str]:
        if not api_key:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT principal FROM api_keys WHERE key_hash=?", (_hash_key(api_key),)
            ).fetchone()
        if row is None:
            log.debug("No principal for presented API key")
            return None
        return row["principal"]

    def revoke(self, principal: str) -> int:
        with self._connect() as conn, conn:
            res = conn.execute("DELETE FROM api_keys WHERE principal=?", (principal,))
        return res.rowcount

    # ---------- Backend identities ----------
    def put_identity(self, principal: str, msp_id: str, credential: str = ""):
        if not principal or not msp_id:
            raise ValueError("principal and msp_id are required.")
        try:
            with self._connect() as conn, conn:
                conn.execute(
                    "INSERT INTO identities(principal, msp_id, credential, updated_at) "
                    "VALUES(?,?,?,?) ON CONFLICT(principal) DO UPDATE SET "
                    "msp_id=excluded.msp_id, credential=excluded.credential, "
                    "updated_at=excluded.updated_at",
                    (principal, msp_id, credential, now_iso()),
                )
        except sqlite3.Error as e:
            raise RuntimeError(f"DB error while storing identity: {e}")

    def get_identity(self, principal: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT principal, msp_id, credential FROM identities WHERE principal=?",
                (principal,),
            ).fetchone()
        if row is None:
            return None
        return Identity(principal=row["principal"], msp_id=row["msp_id"],
                        credential=row["credential"])
