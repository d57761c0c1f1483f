"""
Pairing codes and per-channel DM allowlists.

An operator generates a short code for a channel and hands it to a user;
the user sends the code as a direct message and is enrolled in that
channel's allowlist. Codes are single-use and expire after 15 minutes.

Storage is a SQLite ``settings`` table of JSON values keyed by
``pairing:<channel_id>`` and ``allowlist:<channel_id>``.

Usage:
    store = PairingStore(Path("data/chatgate.db"))
    code = store.generate_pairing_code("telegram-main")
    store.verify_pairing_code("telegram-main", "12345", "ab12cd")
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import string
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from chatgate.channels.models import PairingCode

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "data" / "chatgate.db"

PAIRING_TTL_SECONDS = 15 * 60
CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits

TYPE_PAIRING = "pairing"
TYPE_SECURITY = "security"


def create_settings_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
    """)
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_settings_type_key ON settings(type, key)")


class PairingStore:
    def __init__(
        self, db_path: Path | str = DEFAULT_DB_PATH, clock: Callable[[], float] = time.time
    ):
        self.db_path = Path(db_path)
        self._clock = clock
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

    # ─────────────────────────────────────────────────────────────────────
    # Pairing codes
    # ─────────────────────────────────────────────────────────────────────

    def generate_pairing_code(self, channel_id: str) -> PairingCode:
        """Create a fresh code for a channel, replacing any existing one."""
        now = self._clock()
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        pairing = PairingCode(
            code=code, channel_id=channel_id, expires_at=now + PAIRING_TTL_SECONDS
        )

        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM settings WHERE type = ? AND key = ?",
                    (TYPE_PAIRING, f"pairing:{channel_id}"),
                )
                self._insert(conn, TYPE_PAIRING, f"pairing:{channel_id}", pairing.to_dict(), now)
        finally:
            conn.close()

        logger.info("Generated pairing code for channel %s", channel_id)
        return pairing

    def get_pairing_code(self, channel_id: str) -> PairingCode | None:
        conn = self._connect()
        try:
            row = self._select(conn, TYPE_PAIRING, f"pairing:{channel_id}")
        finally:
            conn.close()
        return PairingCode.from_dict(json.loads(row["value"])) if row else None

    def verify_pairing_code(self, channel_id: str, sender_id: str, code: str) -> bool:
        """
        Check a submitted code and enrol the sender on success.

        Expired codes are deleted. A wrong code leaves the stored code in
        place so the rightful user can still use it. A correct code is
        consumed and the sender is added to the allowlist in the same
        transaction.
        """
        conn = self._connect()
        try:
            with conn:
                row = self._select(conn, TYPE_PAIRING, f"pairing:{channel_id}")
                if row is None:
                    return False

                pairing = PairingCode.from_dict(json.loads(row["value"]))
                if pairing.is_expired(self._clock()):
                    conn.execute("DELETE FROM settings WHERE id = ?", (row["id"],))
                    logger.info("Expired pairing code removed for channel %s", channel_id)
                    return False

                if pairing.code.upper() != code.strip().upper():
                    return False

                self._add_to_allowlist(conn, channel_id, sender_id)
                conn.execute("DELETE FROM settings WHERE id = ?", (row["id"],))
        finally:
            conn.close()

        logger.info("Sender %s paired with channel %s", sender_id, channel_id)
        return True

    def cleanup_expired(self) -> int:
        """Delete every expired pairing code. Returns how many were removed."""
        now = self._clock()
        removed = 0
        conn = self._connect()
        try:
            with conn:
                rows = conn.execute(
                    "SELECT id, value FROM settings WHERE type = ?", (TYPE_PAIRING,)
                ).fetchall()
                for row in rows:
                    if PairingCode.from_dict(json.loads(row["value"])).is_expired(now):
                        conn.execute("DELETE FROM settings WHERE id = ?", (row["id"],))
                        removed += 1
        finally:
            conn.close()
        return removed

    # ─────────────────────────────────────────────────────────────────────
    # Allowlists
    # ─────────────────────────────────────────────────────────────────────

    def get_allowlist(self, channel_id: str) -> list[str]:
        conn = self._connect()
        try:
            row = self._select(conn, TYPE_SECURITY, f"allowlist:{channel_id}")
        finally:
            conn.close()
        return list(json.loads(row["value"])) if row else []

    def is_allowed(self, channel_id: str, sender_id: str) -> bool:
        return sender_id in self.get_allowlist(channel_id)

    def add_to_allowlist(self, channel_id: str, sender_id: str) -> None:
        conn = self._connect()
        try:
            with conn:
                self._add_to_allowlist(conn, channel_id, sender_id)
        finally:
            conn.close()

    def _add_to_allowlist(self, conn: sqlite3.Connection, channel_id: str, sender_id: str) -> None:
        key = f"allowlist:{channel_id}"
        now = self._clock()
        row = self._select(conn, TYPE_SECURITY, key)
        if row is None:
            self._insert(conn, TYPE_SECURITY, key, [sender_id], now)
            return

        allowlist = json.loads(row["value"])
        if sender_id not in allowlist:
            allowlist.append(sender_id)
        conn.execute(
            "UPDATE settings SET value = ?, updated_at = ? WHERE id = ?",
            (json.dumps(allowlist), now, row["id"]),
        )

    # ─────────────────────────────────────────────────────────────────────
    # Row helpers
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _select(conn: sqlite3.Connection, type_: str, key: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT id, value FROM settings WHERE type = ? AND key = ?", (type_, key)
        ).fetchone()

    @staticmethod
    def _insert(conn: sqlite3.Connection, type_: str, key: str, value: Any, now: float) -> None:
        conn.execute(
            "INSERT INTO settings (id, type, key, value, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (str(uuid.uuid4()), type_, key, json.dumps(value), now, now),
        )
