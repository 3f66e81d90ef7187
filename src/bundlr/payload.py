"""
Self-extracting executable layout.

A bundle is ``[stub][gzip payload][trailer]``. The trailer is a fixed 56-byte
record at the very end of the file::

    8s   magic      b"BNDLTRLR"
    Q    offset     absolute offset of the payload (little endian)
    Q    length     payload length in bytes
    32s  checksum   sha256 of the payload bytes

Readers try the trailer first and fall back to scanning for the gzip magic,
which also handles bundles written without a trailer.
"""

from __future__ import annotations

import hashlib
import shutil
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import PayloadError

GZIP_MAGIC = b"\x1f\x8b\x08"
TRAILER_MAGIC = b"BNDLTRLR"
TRAILER_FORMAT = "<8sQQ32s"
TRAILER_SIZE = struct.calcsize(TRAILER_FORMAT)
SCAN_WINDOW = 8192

_COPY_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class PayloadLocation:
    offset: int
    length: int
    checksum: Optional[bytes] = None  # only known when read from a trailer

    @property
    def from_trailer(self) -> bool:
        return self.checksum is not None


def append_payload(executable: Path, payload: Path) -> PayloadLocation:
    """Append ``payload`` and a trailer to ``executable``; returns where the payload landed."""
    if not payload.is_file() or payload.stat().st_size == 0:
        raise PayloadError(f"Payload {payload} is missing or empty")
    digest = hashlib.sha256()
    length = 0
    with executable.open("ab") as out, payload.open("rb") as src:
        out.seek(0, 2)
        offset = out.tell()
        for chunk in iter(lambda: src.read(_COPY_CHUNK), b""):
            out.write(chunk)
            digest.update(chunk)
            length += len(chunk)
        checksum = digest.digest()
        out.write(struct.pack(TRAILER_FORMAT, TRAILER_MAGIC, offset, length, checksum))
    return PayloadLocation(offset=offset, length=length, checksum=checksum)


def read_trailer(fh: BinaryIO) -> Optional[PayloadLocation]:
    fh.seek(0, 2)
    size = fh.tell()
    if size < TRAILER_SIZE:
        return None
    fh.seek(size - TRAILER_SIZE)
    magic, offset, length, checksum = struct.unpack(TRAILER_FORMAT, fh.read(TRAILER_SIZE))
    if magic != TRAILER_MAGIC or offset + length > size - TRAILER_SIZE:
        return None
    return PayloadLocation(offset=offset, length=length, checksum=checksum)


def scan_for_payload(fh: BinaryIO, start: int = 0) -> Optional[int]:
    """Offset of the first gzip magic at or after ``start``, scanning in windows."""
    overlap = len(GZIP_MAGIC) - 1
    position = start
    carry = b""
    fh.seek(start)
    while True:
        block = fh.read(SCAN_WINDOW)
        if not block:
            return None
        window = carry + block
        found = window.find(GZIP_MAGIC)
        if found != -1:
            return position - len(carry) + found
        carry = window[-overlap:]
        position += len(block)


def locate_payload(path: Path) -> PayloadLocation:
    with path.open("rb") as fh:
        trailer = read_trailer(fh)
        if trailer is not None:
            return trailer
        offset = scan_for_payload(fh)
        if offset is None:
            raise PayloadError(f"No payload found in {path}")
        fh.seek(0, 2)
        return PayloadLocation(offset=offset, length=fh.tell() - offset)


def read_payload(path: Path) -> bytes:
    location = locate_payload(path)
    with path.open("rb") as fh:
        fh.seek(location.offset)
        data = fh.read(location.length)
    if location.checksum is not None and hashlib.sha256(data).digest() != location.checksum:
        raise PayloadError(f"Payload checksum mismatch in {path}")
    return data


def extract_payload(path: Path, dest: Path) -> PayloadLocation:
    """Copy the payload bytes of bundle ``path`` into ``dest``, verifying the trailer checksum."""
    location = locate_payload(path)
    digest = hashlib.sha256()
    remaining = location.length
    with path.open("rb") as src, dest.open("wb") as out:
        src.seek(location.offset)
        while remaining > 0:
            chunk = src.read(min(_COPY_CHUNK, remaining))
            if not chunk:
                raise PayloadError(f"Payload in {path} is truncated")
            out.write(chunk)
            digest.update(chunk)
            remaining -= len(chunk)
    if location.checksum is not None and digest.digest() != location.checksum:
        dest.unlink(missing_ok=True)
        raise PayloadError(f"Payload checksum mismatch in {path}")
    return location


def copy_stub(stub: Path, output: Path) -> int:
    output.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(stub, output)
    return output.stat().st_size
