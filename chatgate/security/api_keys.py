"""
API keys for the WebSocket gateway.

A single active key is kept per installation. Only its SHA-256 hash is
stored; the raw key is shown once, on creation.

Usage:
    store = ApiKeyStore(Path("data/chatgate.db"))
    raw = store.create_api_key(created_by="admin")
    record = store.verify_api_key(raw)   # dict or None
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

from chatgate.security.pairing import DEFAULT_DB_PATH, create_settings_table

logger = logging.getLogger(__name__)

KEY_PREFIX = "cgk_"
KEY_BYTES = 32
TYPE_API_KEY = "api_key"


def generate_api_key() -> str:
    return KEY_PREFIX + secrets.token_hex(KEY_BYTES)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class ApiKeyStore:
    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            with conn:
                create_settings_table(conn)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _load(self) -> dict[str, Any] | None:
        # Read on every call; keys are rotated from a separate CLI process
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT id, value, created_at FROM settings WHERE type = ?", (TYPE_API_KEY,)
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        value = json.loads(row["value"])
        return {
            "id": row["id"],
            "key_prefix": value.get("key_prefix"),
            "key_hash": value["key_hash"],
            "created_by": value.get("created_by"),
            "created_at": row["created_at"],
        }

    def create_api_key(self, created_by: str = "cli") -> str:
        """Replace any existing key with a new one and return the raw key."""
        key = generate_api_key()
        now = time.time()
        value = {
            "key_prefix": key[:8],
            "key_hash": hash_api_key(key),
            "created_by": created_by,
        }

        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM settings WHERE type = ?", (TYPE_API_KEY,))
                conn.execute(
                    "INSERT INTO settings (id, type, key, value, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (str(uuid.uuid4()), TYPE_API_KEY, TYPE_API_KEY, json.dumps(value), now, now),
                )
        finally:
            conn.close()

        logger.info("Created gateway API key %s...", value["key_prefix"])
        return key

    def delete_api_key(self) -> bool:
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute("DELETE FROM settings WHERE type = ?", (TYPE_API_KEY,))
        finally:
            conn.close()
        return cursor.rowcount > 0

    def get_api_key_info(self) -> dict[str, Any] | None:
        """Metadata about the active key (never the hash or the raw key)."""
        record = self._load()
        if not record:
            return None
        return {k: v for k, v in record.items() if k != "key_hash"}

    def verify_api_key(self, key: str | None) -> dict[str, Any] | None:
        """Return key metadata when ``key`` matches the active key, else None."""
        if not key:
            return None
        record = self._load()
        if not record:
            return None
        if not hmac.compare_digest(hash_api_key(key), record["key_hash"]):
            return None
        return {k: v for k, v in record.items() if k != "key_hash"}
