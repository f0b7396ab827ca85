"""
ctxkeep.core.codec — Versioned binary envelope for context records.

Layout (10-byte header, little-endian)::

    offset  size  field
    0       4     magic            b"CTXK"
    4       1     format version   0x01
    5       1     compression id   0x00 none / 0x01 lz4 / 0x02 zstd
    6       4     uncompressed payload length (uint32)
    10      …     payload (UTF-8 JSON of the record, compressed)

The lz4 id is reserved so that files written by other producers are
recognised; this build cannot decode it.
"""

from __future__ import annotations

import json
import logging
import struct
from enum import IntEnum, StrEnum

import zstandard as zstd

from ctxkeep.core.errors import DeserializeFailed, ValidationFailed
from ctxkeep.core.models import ContextRecord

logger = logging.getLogger("ctxkeep.codec")

MAGIC = b"CTXK"
FORMAT_VERSION = 0x01
HEADER = struct.Struct("<4sBBI")
HEADER_SIZE = HEADER.size  # 10

ZSTD_LEVEL = 6


class Compression(IntEnum):
    NONE = 0x00
    LZ4 = 0x01
    ZSTD = 0x02


class Format(StrEnum):
    ENVELOPE = "envelope"
    LEGACY_JSON = "legacy_json"
    UNKNOWN = "unknown"


_DECODABLE = frozenset({Compression.NONE, Compression.ZSTD})


def encode(record: ContextRecord, compression: Compression = Compression.ZSTD) -> bytes:
    """Serialise *record* into an envelope."""
    if compression not in _DECODABLE:
        raise ValidationFailed(f"Compression {compression.name.lower()} is not supported for writing")
    raw = record.to_json_bytes()
    if compression == Compression.ZSTD:
        payload = zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(raw)
    else:
        payload = raw
    logger.debug("Encoded record %s: %d -> %d bytes", record.session_id, len(raw), len(payload))
    return HEADER.pack(MAGIC, FORMAT_VERSION, int(compression), len(raw)) + payload


def decode(data: bytes) -> ContextRecord:
    """
    Validate an envelope and return the record it carries.

    Checks run in a fixed order and the first failure wins, so a caller can
    rely on the reported reason: truncated, bad magic header, unsupported
    version, unsupported compression, corrupted payload, invalid structure.
    """
    if len(data) < HEADER_SIZE:
        raise DeserializeFailed("truncated", size=len(data))
    magic, version, compression_id, declared = HEADER.unpack_from(data)
    if magic != MAGIC:
        raise DeserializeFailed("bad magic header")
    if version != FORMAT_VERSION:
        raise DeserializeFailed("unsupported version", version=version)
    if compression_id not in _DECODABLE:
        raise DeserializeFailed("unsupported compression", compression=compression_id)

    payload = data[HEADER_SIZE:]
    if compression_id == Compression.ZSTD:
        try:
            raw = zstd.ZstdDecompressor().decompress(payload, max_output_size=declared)
        except zstd.ZstdError as exc:
            raise DeserializeFailed("corrupted payload", error=str(exc)) from exc
    else:
        raw = payload
    if len(raw) != declared:
        raise DeserializeFailed("corrupted payload", declared=declared, actual=len(raw))

    return _parse_record(raw)


def decode_legacy(data: bytes) -> ContextRecord:
    """Parse a bare JSON record (the uncompressed pre-envelope file)."""
    return _parse_record(data)


def detect_format(data: bytes) -> Format:
    if data[:len(MAGIC)] == MAGIC:
        return Format.ENVELOPE
    if data.lstrip()[:1] == b"{":
        return Format.LEGACY_JSON
    return Format.UNKNOWN


def _parse_record(raw: bytes) -> ContextRecord:
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise DeserializeFailed("invalid structure", error=str(exc)) from exc
    try:
        return ContextRecord.from_wire(obj)
    except ValidationFailed as exc:
        raise DeserializeFailed("invalid structure", error=exc.message) from exc
