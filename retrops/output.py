"""Captured pages, page sinks, loggers and PBM-to-PNG encoding."""

from __future__ import annotations

import struct
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@dataclass
class CapturedPage:
    """One captured page; ``pbm`` is the packed P4 body without header."""

    index: int
    width: int
    height: int
    pbm: bytes


def _chunk(kind: bytes, data: bytes) -> bytes:
    crc = zlib.crc32(kind + data) & 0xFFFF_FFFF
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)


def pbm_to_png(width: int, height: int, pbm: bytes) -> bytes:
    """Encode a packed PBM body (1 = black) as a 1-bit grayscale PNG."""
    stride = (width + 7) // 8
    needed = stride * height
    if len(pbm) < needed:
        raise ValueError(f"pbm body too short: have {len(pbm)} bytes, need {needed}")
    if width <= 0 or height <= 0:
        raise ValueError(f"png header: invalid image dimensions {width}x{height}")

    tail_bits = width & 7
    tail_mask = 0xFF if tail_bits == 0 else (0xFF << (8 - tail_bits)) & 0xFF
    invert = bytes(0xFF - b for b in range(256))

    raw = bytearray()
    for start in range(0, needed, stride):
        row = bytearray(pbm[start:start + stride].translate(invert))
        row[-1] &= tail_mask
        raw.append(0)  # filter type: none
        raw += row

    ihdr = struct.pack(">IIBBBBB", width, height, 1, 0, 0, 0, 0)
    return b"".join(
        (
            _PNG_SIGNATURE,
            _chunk(b"IHDR", ihdr),
            _chunk(b"IDAT", zlib.compress(bytes(raw), 1)),
            _chunk(b"IEND", b""),
        )
    )


class PageSink(ABC):
    """Receiver for emitted pages; called once per showpage."""

    @abstractmethod
    def emit_page(self, page: CapturedPage) -> None:
        """Accept one captured page."""


class Logger(ABC):
    """Receiver for categorised diagnostic lines from the emulator."""

    @abstractmethod
    def info(self, line: str) -> None:
        """Generic emulator state: boot, page emit, watchdog."""

    @abstractmethod
    def lcd(self, line: str) -> None:
        """A string the cart asked the host to show on its display."""

    @abstractmethod
    def ps_out(self, count: int, line: str) -> None:
        """Snapshot of the PostScript interpreter's output stream."""

    @abstractmethod
    def hint(self, line: str) -> None:
        """Hinting diagnostic."""

    @abstractmethod
    def fatal_assert(self, line: str) -> None:
        """The cart's recoverable fatal_assert."""

    @abstractmethod
    def panic(self, line: str) -> None:
        """The cart's low-memory panic trap."""


@dataclass
class NullLogger(Logger):
    """Logger that discards every line, keeping only a count of them."""

    discarded: int = 0

    def _drop(self) -> None:
        self.discarded += 1

    def info(self, line: str) -> None:
        self._drop()

    def lcd(self, line: str) -> None:
        self._drop()

    def ps_out(self, count: int, line: str) -> None:
        self._drop()

    def hint(self, line: str) -> None:
        self._drop()

    def fatal_assert(self, line: str) -> None:
        self._drop()

    def panic(self, line: str) -> None:
        self._drop()


@dataclass
class ListSink(PageSink):
    """Page sink that keeps every page in memory."""

    pages: list[CapturedPage] = field(default_factory=list)

    def emit_page(self, page: CapturedPage) -> None:
        self.pages.append(page)