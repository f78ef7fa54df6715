"""
Journal Tailing Reader
======================

Reads the complete lines appended to a journal since a byte watermark.

The game appends to the current journal while we read it, so the last line
may be only partly flushed. A trailing fragment without a newline is left
out of both the returned lines and the new watermark; the next read picks it
up whole once the writer finishes the line.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from error_handling import JournalReadError


logger = logging.getLogger("explorer.reader")


# ============================================================================
# READ RESULT
# ============================================================================

@dataclass
class TailResult:
    """Complete lines read between two byte watermarks"""
    path: Path
    start_offset: int
    end_offset: int
    lines: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def bytes_read(self) -> int:
        return self.end_offset - self.start_offset


def _split_complete(data: bytes) -> tuple[List[str], int]:
    """Split bytes into complete lines; returns (lines, bytes consumed)"""
    last_newline = data.rfind(b"\n")
    if last_newline < 0:
        return [], 0

    complete = data[:last_newline + 1]
    lines = [
        raw.decode("utf-8", errors="replace").rstrip("\r")
        for raw in complete.split(b"\n")[:-1]
    ]
    return lines, last_newline + 1


def read_new_lines(path: Path, offset: int = 0) -> TailResult:
    """
    Read the complete lines appended after `offset`.

    Args:
        path: Journal file
        offset: Byte watermark (0 = start of file)

    Returns:
        TailResult whose end_offset is the watermark after the last complete line

    Raises:
        JournalReadError: file missing or unreadable
    """
    path = Path(path)
    try:
        with path.open("rb") as f:
            f.seek(0, 2)
            size = f.tell()
            if size < offset:
                logger.warning(f"{path.name} shrank below watermark ({size} < {offset}), not reading")
                return TailResult(path, offset, offset)
            f.seek(offset)
            data = f.read(size - offset)
    except OSError as e:
        raise JournalReadError(path.name, str(e)) from e

    lines, consumed = _split_complete(data)
    return TailResult(path, offset, offset + consumed, lines)


def offset_after_lines(path: Path, line_count: int) -> int:
    """Byte watermark just past the first `line_count` complete lines"""
    if line_count <= 0:
        return 0

    path = Path(path)
    offset = 0
    seen = 0
    try:
        with path.open("rb") as f:
            for raw in f:
                if not raw.endswith(b"\n"):
                    break
                offset += len(raw)
                seen += 1
                if seen == line_count:
                    break
    except OSError as e:
        raise JournalReadError(path.name, str(e)) from e
    return offset


# ============================================================================
# LIVE TAIL CURSOR
# ============================================================================

class JournalTail:
    """
    Tailing cursor over the current journal.

    read() proposes the next chunk; the caller calls accept() once the lines
    have been delivered, which moves the watermark and the line count.
    """

    def __init__(self, path: Path, offset: int = 0, line_index: int = 0):
        self.path = Path(path)
        self.offset = offset
        self.line_index = line_index

    @property
    def name(self) -> str:
        return self.path.name

    def read(self) -> TailResult:
        return read_new_lines(self.path, self.offset)

    def accept(self, result: TailResult):
        if result.start_offset != self.offset:
            raise ValueError(
                f"Stale read for {self.name}: started at {result.start_offset}, cursor at {self.offset}"
            )
        self.offset = result.end_offset
        self.line_index += len(result.lines)

    def __repr__(self):
        return f"JournalTail({self.name!r}, offset={self.offset}, line_index={self.line_index})"
