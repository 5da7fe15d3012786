"""Partial-content synthesis for origins that ignore ``Range``."""
from __future__ import annotations

import re
from typing import AsyncIterator, NamedTuple, Optional

DEFAULT_WINDOW = 1024 * 1024  # 1MiB when the range is open-ended
MAX_WINDOW = 8 * 1024 * 1024

_RANGE = re.compile(r"bytes=(\d+)-(\d+)?")


class ByteWindow(NamedTuple):
    start: int
    end: int  # inclusive

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: Optional[str]) -> str:
        return f"bytes {self.start}-{self.start + self.size - 1}/{total or '*'}"


def parse_range(header: Optional[str], total_length: Optional[int] = None) -> Optional[ByteWindow]:
    """Turn a ``Range`` header into the window to synthesize, or None to pass through.

    Open-ended ranges get a 1MiB window. Windows that are empty or larger than
    8MiB are refused. With a known total length the window is clamped to it.
    """
    if not header:
        return None
    match = _RANGE.search(header)
    if not match:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else start + DEFAULT_WINDOW - 1
    if total_length is not None:
        end = min(end, total_length - 1)
    window = ByteWindow(start, end)
    if window.size <= 0 or window.size > MAX_WINDOW:
        return None
    return window


async def synthesize_range(chunks: AsyncIterator[bytes], window: ByteWindow) -> AsyncIterator[bytes]:
    """Yield only the bytes of ``chunks`` that fall inside ``window``.

    Reads sequentially and stops as soon as the window is full; whatever the
    upstream still has is left unread.
    """
    start, end = window
    offset = 0
    remaining = window.size
    async for chunk in chunks:
        if not chunk:
            continue
        chunk_end = offset + len(chunk)
        if chunk_end > start:
            lo = max(0, start - offset)
            hi = min(len(chunk), end - offset + 1)
            if hi > lo:
                piece = chunk[lo:hi]
                remaining -= len(piece)
                yield piece
        offset = chunk_end
        if remaining <= 0 or offset > end:
            break
