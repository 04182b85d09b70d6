from __future__ import annotations

import struct

# ─────────────────────────────────────────────────────────────────────────────
# MinerWork layout (112 bytes). The pool validates shares against exactly this
# byte layout, so the offsets are a wire contract.
# ─────────────────────────────────────────────────────────────────────────────
HEADER_HASH_SIZE = 32
TIMESTAMP_SIZE = 8
NONCE_SIZE = 8
EXTRA_NONCE_SIZE = 32
PUBLIC_KEY_SIZE = 32

HEADER_HASH_OFFSET = 0
TIMESTAMP_OFFSET = HEADER_HASH_OFFSET + HEADER_HASH_SIZE  # 32
NONCE_OFFSET = TIMESTAMP_OFFSET + TIMESTAMP_SIZE  # 40
EXTRA_NONCE_OFFSET = NONCE_OFFSET + NONCE_SIZE  # 48
PUBLIC_KEY_OFFSET = EXTRA_NONCE_OFFSET + EXTRA_NONCE_SIZE  # 80
WORK_SIZE = PUBLIC_KEY_OFFSET + PUBLIC_KEY_SIZE  # 112

# ─────────────────────────────────────────────────────────────────────────────
# Nonce partitioning: the most-significant byte carries the worker index, the
# low 56 bits are the worker's private counter.
# ─────────────────────────────────────────────────────────────────────────────
THREAD_SHIFT = 56
MAX_WORKERS = 1 << (64 - THREAD_SHIFT)  # 256
COUNTER_MASK = (1 << THREAD_SHIFT) - 1

_NONCE = struct.Struct("<Q")


def compose_nonce(thread_id: int, counter: int) -> int:
    """
    Nonce value for `counter` in worker `thread_id`'s partition.

    Raises ValueError when either part falls outside its bit field, since an
    out-of-range value would collide with another worker's partition.
    """
    if not 0 <= thread_id < MAX_WORKERS:
        raise ValueError(f"thread_id must be in [0, {MAX_WORKERS}), got {thread_id}")
    if not 0 <= counter <= COUNTER_MASK:
        raise ValueError("nonce counter outside the 56-bit partition")
    return (thread_id << THREAD_SHIFT) | counter


def nonce_to_bytes(nonce: int) -> bytes:
    """Encode a nonce as 8 little-endian bytes."""
    return _NONCE.pack(nonce & 0xFFFFFFFFFFFFFFFF)


def nonce_hex(nonce: int) -> str:
    """Hex of the little-endian nonce bytes, as the pool expects in mining.submit."""
    return nonce_to_bytes(nonce).hex()


def _fit(data: bytes, size: int) -> bytes:
    # byte-copy semantics: truncate long fields, zero-fill short ones
    return bytes(data[:size]).ljust(size, b"\x00")


def build_work(
    header_hash: bytes,
    timestamp: bytes,
    nonce: int,
    extra_nonce: bytes,
    public_key: bytes,
) -> bytes:
    """
    Assemble the 112-byte MinerWork record:

        [0:32)   header work hash
        [32:40)  timestamp
        [40:48)  nonce (little-endian)
        [48:80)  extra nonce
        [80:112) public key
    """
    return (
        _fit(header_hash, HEADER_HASH_SIZE)
        + _fit(timestamp, TIMESTAMP_SIZE)
        + nonce_to_bytes(nonce)
        + _fit(extra_nonce, EXTRA_NONCE_SIZE)
        + _fit(public_key, PUBLIC_KEY_SIZE)
    )


class WorkBuffer:
    """
    Mutable MinerWork template owned by a single worker.

    The fixed fields are written once; each attempt only rewrites the nonce
    slot with struct.pack_into, so the hot loop never rebuilds the record.
    """

    __slots__ = ("_buf",)

    def __init__(
        self,
        header_hash: bytes,
        timestamp: bytes,
        extra_nonce: bytes,
        public_key: bytes,
    ) -> None:
        self._buf = bytearray(build_work(header_hash, timestamp, 0, extra_nonce, public_key))

    def set_nonce(self, nonce: int) -> bytes:
        """Write `nonce` into the buffer and return an immutable copy of the record."""
        _NONCE.pack_into(self._buf, NONCE_OFFSET, nonce)
        return bytes(self._buf)

    def nonce_bytes(self) -> bytes:
        return bytes(self._buf[NONCE_OFFSET : NONCE_OFFSET + NONCE_SIZE])

    def __len__(self) -> int:
        return len(self._buf)


def decode_hex(value: object) -> bytes:
    """Decode a pool-supplied hex string (optional 0x prefix); ValueError otherwise."""
    if not isinstance(value, str):
        raise ValueError(f"expected hex string, got {type(value).__name__}")
    data = value[2:] if value[:2] in ("0x", "0X") else value
    return bytes.fromhex(data)


__all__ = [
    "WORK_SIZE",
    "NONCE_OFFSET",
    "HEADER_HASH_SIZE",
    "TIMESTAMP_SIZE",
    "EXTRA_NONCE_SIZE",
    "PUBLIC_KEY_SIZE",
    "MAX_WORKERS",
    "COUNTER_MASK",
    "compose_nonce",
    "nonce_to_bytes",
    "nonce_hex",
    "build_work",
    "WorkBuffer",
    "decode_hex",
]
