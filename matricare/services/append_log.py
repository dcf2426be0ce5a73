"""
Crash-safe append-only log.

Each entry is one line: ``<crc32 as 8 hex chars> <compact json>\\n``. An append
is flushed and fsynced before it returns. On replay:
- a final line that is incomplete or fails its checksum is a torn write and is
  truncated away
- a bad line anywhere else is quarantined (logged and skipped)
"""

import json
import os
import zlib
from collections.abc import Iterator
from pathlib import Path
from typing import Any, BinaryIO

from matricare.domain.errors import CorruptRecordError, DurabilityError
from matricare.services.common import logger


def encode_entry(entry: dict[str, Any]) -> bytes:
    payload = json.dumps(entry, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return b"%08x %s\n" % (zlib.crc32(payload), payload)


def decode_line(line: bytes, offset: int) -> dict[str, Any]:
    """Parse one framed line (without its newline)."""
    if len(line) < 10 or line[8:9] != b" ":
        raise CorruptRecordError(offset, "bad frame")
    try:
        expected = int(line[:8], 16)
    except ValueError:
        raise CorruptRecordError(offset, "bad checksum field") from None
    payload = line[9:]
    if zlib.crc32(payload) != expected:
        raise CorruptRecordError(offset, "checksum mismatch")
    try:
        entry = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptRecordError(offset, f"undecodable payload: {e}") from None
    if not isinstance(entry, dict):
        raise CorruptRecordError(offset, "entry is not an object")
    return entry


class AppendLog:
    def __init__(self, path: str | Path, fsync: bool = True) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self.quarantined: list[CorruptRecordError] = []
        self.truncated_bytes = 0
        self.logger = logger.bind(component="append_log", path=str(self.path))
        self._fh: BinaryIO | None = None

    def open(self) -> list[dict[str, Any]]:
        """Replay existing entries, repair a torn tail, then open for appending."""
        if self._fh is not None:
            raise RuntimeError(f"{self.path} is already open")
        created = not self.path.exists()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        entries = list(self._replay()) if not created else []
        try:
            self._fh = open(self.path, "ab")
            if created:
                self._sync_directory()
        except OSError as e:
            raise DurabilityError(f"Cannot open {self.path} for append: {e}") from e
        return entries

    def close(self) -> None:
        fh, self._fh = self._fh, None
        if fh is not None:
            fh.close()

    def append(self, entry: dict[str, Any]) -> None:
        if self._fh is None:
            raise RuntimeError(f"{self.path} is not open")
        data = encode_entry(entry)
        try:
            self._fh.write(data)
            self._fh.flush()
            if self.fsync:
                os.fsync(self._fh.fileno())
        except OSError as e:
            self.logger.error("append_not_durable", error=str(e))
            raise DurabilityError(f"Write to {self.path} was not made durable: {e}") from e

    def _replay(self) -> Iterator[dict[str, Any]]:
        data = self.path.read_bytes()
        lines = data.split(b"\n")
        # Everything after the last newline is an unterminated (torn) write.
        tail = lines.pop()
        offset = 0
        good_end = 0
        for index, line in enumerate(lines):
            is_last = index == len(lines) - 1 and not tail
            try:
                entry = decode_line(line, offset)
            except CorruptRecordError as e:
                if is_last:
                    tail = line + b"\n"
                    break
                self.quarantined.append(e)
                self.logger.warning("log_entry_quarantined", offset=e.offset, reason=e.reason)
            else:
                yield entry
            offset += len(line) + 1
            good_end = offset

        if tail:
            self.truncated_bytes = len(data) - good_end
            self.logger.warning("torn_tail_discarded", offset=good_end, bytes=self.truncated_bytes)
            try:
                with open(self.path, "r+b") as fh:
                    fh.truncate(good_end)
                    fh.flush()
                    os.fsync(fh.fileno())
            except OSError as e:
                raise DurabilityError(f"Cannot repair torn tail of {self.path}: {e}") from e

    def _sync_directory(self) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.path.parent, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
