"""Append-only JSON Lines audit trail of relay decisions.

Each line carries ``prev_hash``, the SHA-256 of the line before it, so a
truncated or edited file is detectable with :func:`validate_audit_chain`.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path

from tgrelay.models import AuditEvent


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Walk the log and report the first line whose prev_hash does not match."""
    lines = [ln for ln in log_path.read_text().splitlines() if ln.strip()]
    previous: str | None = None
    for number, line in enumerate(lines, start=1):
        expected = hashlib.sha256(previous.encode()).hexdigest() if previous else None
        if json.loads(line).get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        previous = line
    return ChainValidationResult(valid=True)


class AuditLogger:
    """Append-only audit trail with size-based rotation."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._last_line: str | None = None
        if self.log_path.exists():
            tail = self.log_path.read_text().strip()
            if tail:
                self._last_line = tail.splitlines()[-1]

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        max_bytes = int(os.environ.get("TGRELAY_AUDIT_LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("TGRELAY_AUDIT_LOG_BACKUP_COUNT", "5"))
        return cls(log_path=log_path, max_bytes=max_bytes, backup_count=backup_count)

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return
        self._backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        data = json.loads(event.model_dump_json())
        data["prev_hash"] = (
            hashlib.sha256(self._last_line.encode()).hexdigest()
            if self._last_line is not None
            else None
        )
        line = json.dumps(data, separators=(",", ":"))

        lock_file = self.log_path.parent / f".{self.log_path.name}.lock"
        with open(lock_file, "w") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                self._maybe_rotate()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

        self._last_line = line
