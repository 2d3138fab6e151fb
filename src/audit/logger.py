"""Audit logger: append-only JSON Lines trail of webhook security events.

Each line carries ``prev_hash``, the SHA-256 of the previous line, so that
truncation or in-place edits can be detected with ``validate_audit_chain``.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path

from src.models import AuditEvent


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Validate the hash chain integrity of an audit log file."""
    lines = log_path.read_text().strip().split("\n")
    if lines == [""]:
        return ChainValidationResult(valid=True)

    prev_line: str | None = None
    for number, line in enumerate(lines, start=1):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            return ChainValidationResult(valid=False, broken_at_line=number)
        expected = (
            hashlib.sha256(prev_line.encode()).hexdigest()
            if prev_line is not None else None
        )
        if entry.get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        prev_line = line

    return ChainValidationResult(valid=True)


class AuditLogger:
    """Append-only structured audit logger with size rotation and hash chain."""

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
        # Resume the chain from an existing file
        if self.log_path.exists() and self.log_path.stat().st_size > 0:
            text = self.log_path.read_text().strip()
            if text:
                self._last_line = text.split("\n")[-1]

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        """Create AuditLogger with rotation settings from environment variables."""
        max_bytes = int(os.environ.get("AUDIT_LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", "5"))
        return cls(log_path=log_path, max_bytes=max_bytes, backup_count=backup_count)

    def _backup(self, index: int) -> Path:
        return self.log_path.parent / f"{self.log_path.name}.{index}"

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists():
            return
        if self.log_path.stat().st_size < self._max_bytes:
            return

        oldest = self._backup(self._backup_count)
        if oldest.exists():
            oldest.unlink()
        for i in range(self._backup_count - 1, 0, -1):
            if self._backup(i).exists():
                self._backup(i).rename(self._backup(i + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        prev_hash: str | None = None
        if self._last_line is not None:
            prev_hash = hashlib.sha256(self._last_line.encode()).hexdigest()

        data = json.loads(event.model_dump_json(exclude_none=True))
        data["prev_hash"] = prev_hash
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
