"""SQLite-backed pairing ledger and allow-store.

Unknown DM senders get one outstanding request per channel; approving its
code moves the sender into the channel's allow list.
"""

from __future__ import annotations

import json
import secrets
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from tgrelay.runtime import PairingRequest, PairingUpsert

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
PENDING_TTL = timedelta(hours=1)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pairing_requests (
    channel TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    code TEXT NOT NULL,
    meta_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    PRIMARY KEY (channel, sender_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_pairing_code ON pairing_requests(channel, code);

CREATE TABLE IF NOT EXISTS pairing_allow (
    channel TEXT NOT NULL,
    entry TEXT NOT NULL,
    approved_at TEXT NOT NULL,
    PRIMARY KEY (channel, entry)
);
"""


def generate_pairing_code(length: int = CODE_LENGTH) -> str:
    """Random code without look-alike characters (no 0/O, 1/I)."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _now() -> datetime:
    return datetime.now(UTC)


class SqlitePairingStore:
    """Implements the pairing store contract on a single SQLite file."""

    def __init__(self, db_path: str, pending_ttl: timedelta = PENDING_TTL) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pending_ttl = pending_ttl
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def _prune(self, channel: str) -> None:
        cutoff = (_now() - self._pending_ttl).isoformat()
        self.conn.execute(
            "DELETE FROM pairing_requests WHERE channel = ? AND created_at < ?",
            (channel, cutoff),
        )

    @staticmethod
    def _to_request(row: sqlite3.Row) -> PairingRequest:
        return PairingRequest(
            channel=row["channel"],
            sender_id=row["sender_id"],
            code=row["code"],
            meta=json.loads(row["meta_json"] or "{}"),
            created_at=row["created_at"],
        )

    async def read_allow_from(self, channel: str) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT entry FROM pairing_allow WHERE channel = ? ORDER BY approved_at",
                (channel,),
            ).fetchall()
        return [row["entry"] for row in rows]

    async def upsert_request(
        self, channel: str, sender_id: str, meta: dict[str, Any],
    ) -> PairingUpsert:
        with self._lock:
            self._prune(channel)
            row = self.conn.execute(
                "SELECT code FROM pairing_requests WHERE channel = ? AND sender_id = ?",
                (channel, sender_id),
            ).fetchone()
            if row is not None:
                self.conn.execute(
                    "UPDATE pairing_requests SET meta_json = ? WHERE channel = ? AND sender_id = ?",
                    (json.dumps(meta), channel, sender_id),
                )
                self.conn.commit()
                return PairingUpsert(code=row["code"], created=False)

            while True:
                code = generate_pairing_code()
                try:
                    self.conn.execute(
                        """INSERT INTO pairing_requests
                           (channel, sender_id, code, meta_json, created_at)
                           VALUES (?, ?, ?, ?, ?)""",
                        (channel, sender_id, code, json.dumps(meta), _now().isoformat()),
                    )
                except sqlite3.IntegrityError:
                    continue
                break
            self.conn.commit()
        return PairingUpsert(code=code, created=True)

    async def approve(self, channel: str, code: str) -> PairingRequest | None:
        """Consume a pending code; returns the request, or None if unknown/expired."""
        normalized = code.strip().upper()
        with self._lock:
            self._prune(channel)
            row = self.conn.execute(
                "SELECT * FROM pairing_requests WHERE channel = ? AND code = ?",
                (channel, normalized),
            ).fetchone()
            if row is None:
                self.conn.commit()
                return None
            request = self._to_request(row)
            self.conn.execute(
                "DELETE FROM pairing_requests WHERE channel = ? AND code = ?",
                (channel, normalized),
            )
            self.conn.execute(
                """INSERT INTO pairing_allow (channel, entry, approved_at) VALUES (?, ?, ?)
                   ON CONFLICT(channel, entry) DO UPDATE SET approved_at=excluded.approved_at""",
                (channel, request.sender_id, _now().isoformat()),
            )
            self.conn.commit()
        return request

    async def list_requests(self, channel: str) -> list[PairingRequest]:
        with self._lock:
            self._prune(channel)
            self.conn.commit()
            rows = self.conn.execute(
                "SELECT * FROM pairing_requests WHERE channel = ? ORDER BY created_at",
                (channel,),
            ).fetchall()
        return [self._to_request(row) for row in rows]

    def close(self) -> None:
        self.conn.close()
