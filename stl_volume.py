# -*- coding: utf-8 -*-
"""
stl_volume.py — binary STL volume decoder (pure, no I/O besides stl_file_volume_cm3)

Layout (little-endian):
  bytes 0..79   header (ignored)
  bytes 80..83  uint32 triangle count N
  N x 50 bytes  normal (3 x float32, ignored), v1, v2, v3 (3 x float32 each), uint16 attribute count (ignored)

Volume = |sum over triangles of v1 . (v2 x v3) / 6| / 1000  (mm³ -> cm³).

Limitation: the signed tetrahedron sum is exact only for a closed, consistently
oriented mesh. Open or self-intersecting meshes still produce a number, but it is
an approximation and parts of the volume may cancel out. No topology check is done.

Modes:
- "fast"   — numpy over the whole triangle array.
- "stream" — sequential struct loop; each term is divided by 6 and added left to right,
              which reproduces published quotes bit for bit.
"""
from __future__ import annotations

import math
import os
import struct

import numpy as np


HEADER_BYTES = 80
MIN_STL_BYTES = 84
TRIANGLE_BYTES = 50
MAX_STL_TRIANGLES = 40_000_000

VOLUME_MODES = ("fast", "stream")

# normal + 3 vertices + attribute count, packed = 50 bytes
_TRIANGLE_DTYPE = np.dtype([
    ("normal", "<f4", (3,)),
    ("v", "<f4", (3, 3)),
    ("attr", "<u2"),
])


# ---------- Errors ----------
class StlError(ValueError):
    """Base class for binary STL decoding failures."""


class MalformedInputError(StlError):
    """Buffer too short, truncated relative to its triangle count, or over the triangle limit."""


class ParseError(StlError):
    """Structurally inconsistent buffer (trailing bytes, non-finite coordinates, ...)."""


_ASCII_STL_MESSAGE = "ASCII STL detected; export the file as Binary STL"


def _looks_like_ascii_stl(prefix: bytes) -> bool:
    stripped = prefix.lstrip()
    if not stripped.lower().startswith(b"solid"):
        return False
    text = prefix.decode("utf-8", errors="ignore").lower()
    return ("facet" in text) and ("vertex" in text)


# ---------- Header ----------
def triangle_count(buffer: bytes) -> int:
    """
    Validates header/size of a binary STL buffer and returns the declared triangle count.
    Must be called before any triangle record is read.
    """
    size = len(buffer)
    ascii_like = _looks_like_ascii_stl(bytes(buffer[:8192]))

    if size < MIN_STL_BYTES:
        if ascii_like:
            raise MalformedInputError(_ASCII_STL_MESSAGE)
        raise MalformedInputError(f"Malformed binary STL: file too small ({size} < {MIN_STL_BYTES} bytes)")

    count = struct.unpack_from("<I", buffer, HEADER_BYTES)[0]
    expected_size = MIN_STL_BYTES + TRIANGLE_BYTES * count
    if count > MAX_STL_TRIANGLES or size < expected_size:
        if ascii_like:
            raise MalformedInputError(_ASCII_STL_MESSAGE)
        if count > MAX_STL_TRIANGLES:
            raise MalformedInputError(f"STL limit exceeded: triangles={count} > {MAX_STL_TRIANGLES}")
        raise MalformedInputError(
            f"Malformed binary STL: triangle count {count} needs {expected_size} bytes, got {size}"
        )
    if size != expected_size:
        if ascii_like:
            raise ParseError(_ASCII_STL_MESSAGE)
        extra = size - expected_size
        raise ParseError(
            f"Malformed binary STL: {extra} trailing bytes after {count} triangles "
            f"(expected {expected_size} bytes, got {size})"
        )
    return count


# ---------- Volume ----------
def _volume_fast_mm3(buffer: bytes, count: int) -> float:
    if count == 0:
        return 0.0
    records = np.frombuffer(buffer, dtype=_TRIANGLE_DTYPE, count=count, offset=MIN_STL_BYTES)
    tri = records["v"].astype(np.float64)
    if not np.isfinite(tri).all():
        raise ParseError("Malformed binary STL: non-finite vertex coordinate")
    v1 = tri[:, 0]; v2 = tri[:, 1]; v3 = tri[:, 2]
    tetra = (
        v1[:, 0] * (v2[:, 1] * v3[:, 2] - v3[:, 1] * v2[:, 2])
        - v1[:, 1] * (v2[:, 0] * v3[:, 2] - v3[:, 0] * v2[:, 2])
        + v1[:, 2] * (v2[:, 0] * v3[:, 1] - v3[:, 0] * v2[:, 1])
    ) / 6.0
    return abs(float(tetra.sum(dtype=np.float64)))


def _volume_stream_mm3(buffer: bytes, count: int) -> float:
    unpack = struct.Struct("<9f").unpack_from
    total = 0.0
    offset = MIN_STL_BYTES
    for _ in range(count):
        v1x, v1y, v1z, v2x, v2y, v2z, v3x, v3y, v3z = unpack(buffer, offset + 12)
        tetra = (
            v1x * (v2y * v3z - v3y * v2z)
            - v1y * (v2x * v3z - v3x * v2z)
            + v1z * (v2x * v3y - v3x * v2y)
        ) / 6.0
        if not math.isfinite(tetra):
            raise ParseError("Malformed binary STL: non-finite vertex coordinate")
        total += tetra
        offset += TRIANGLE_BYTES
    return abs(total)


def decode_volume(buffer: bytes, mode: str = "fast") -> float:
    """
    Enclosed volume of a binary STL buffer, cm³ (>= 0).

    Raises MalformedInputError for short/truncated buffers and ParseError for any
    other structural inconsistency.
    """
    mode_norm = (mode or "").strip().lower()
    if mode_norm not in VOLUME_MODES:
        raise ValueError(f"Unknown volume-mode: {mode_norm!r}")
    count = triangle_count(buffer)
    if mode_norm == "stream":
        vol_mm3 = _volume_stream_mm3(buffer, count)
    else:
        vol_mm3 = _volume_fast_mm3(buffer, count)
    return vol_mm3 / 1000.0


def stl_file_volume_cm3(path: str, mode: str = "fast") -> float:
    if os.path.splitext(path)[1].lower() != ".stl":
        raise ValueError("Only binary .stl files are supported")
    with open(path, "rb") as f:
        buffer = f.read()
    return decode_volume(buffer, mode=mode)
