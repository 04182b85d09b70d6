from __future__ import annotations

"""
xelis_miner.mining.oracle
=========================

Resolution of the proof-of-work hash function ("oracle").

The miner treats the hash as an opaque callable:

    hash(work: bytes, scratchpad) -> bytes

where `work` is the 112-byte MinerWork record and `scratchpad` is a large
reusable workspace owned by exactly one worker thread. The real XelisHashV2
implementation lives in a native binding; it is loaded by import path:

    load_oracle("xelis_binding:xelis_hash_v2")

A binding module may declare `BYTE_ORDER` ("big" | "little") for how its
digest maps onto an integer, and `SCRATCHPAD_WORDS` for the size of the
uint64 scratchpad it expects. Defaults follow XelisHashV2: big-endian digest
comparison and 429 * 128 words (~440 KiB).

A built-in `sha3-dev` oracle (hashlib SHA3-256 over the work record) exists
for local pools and tests. Real pools reject its shares.
"""

import hashlib
import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Protocol

import numpy as np

from .errors import OracleError

log = logging.getLogger("xelis_miner.oracle")

SCRATCHPAD_WORDS = 429 * 128
DIGEST_SIZE = 32

HashFn = Callable[[bytes, Any], bytes]


class HashOracle(Protocol):
    """Runtime interface the search loop relies on."""

    name: str
    byte_order: str

    def new_scratchpad(self) -> Any: ...

    def __call__(self, work: bytes, scratchpad: Any) -> bytes: ...


@dataclass(frozen=True)
class CallableOracle:
    """Adapts a plain hash function to the HashOracle interface."""

    name: str
    fn: HashFn
    byte_order: str = "big"
    scratchpad_words: int = SCRATCHPAD_WORDS

    def new_scratchpad(self) -> np.ndarray:
        # One per worker; the binding reuses it across calls
        return np.zeros(self.scratchpad_words, dtype=np.uint64)

    def __call__(self, work: bytes, scratchpad: Any) -> bytes:
        return self.fn(work, scratchpad)

    def digest_to_int(self, digest: bytes) -> int:
        return int.from_bytes(digest, self.byte_order, signed=False)


def sha3_dev_hash(work: bytes, scratchpad: Any) -> bytes:
    return hashlib.sha3_256(work).digest()


_BUILTINS: Dict[str, CallableOracle] = {
    "sha3-dev": CallableOracle(name="sha3-dev", fn=sha3_dev_hash, scratchpad_words=0),
}


def builtin_names() -> list[str]:
    return sorted(_BUILTINS)


def load_oracle(spec: str) -> CallableOracle:
    """
    Resolve `spec` into an oracle.

    `spec` is either a built-in name (see builtin_names()) or
    "package.module:attribute" naming a callable hash(work, scratchpad).
    Raises OracleError if the target cannot be imported or is not callable.
    """
    spec = spec.strip()
    if spec in _BUILTINS:
        oracle = _BUILTINS[spec]
        log.warning(
            "Using built-in %s oracle; shares will not validate on a real Xelis pool",
            oracle.name,
        )
        return oracle

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise OracleError(
            message=f"oracle must be a built-in ({', '.join(builtin_names())}) "
            f"or 'module:attribute', got {spec!r}",
        )
    try:
        mod = importlib.import_module(module_name)
    except ImportError as e:
        raise OracleError(message=f"cannot import oracle module {module_name!r}: {e}") from e
    fn = getattr(mod, attr, None)
    if not callable(fn):
        raise OracleError(message=f"{spec!r} is not a callable hash function")

    byte_order = str(getattr(mod, "BYTE_ORDER", "big")).lower()
    if byte_order not in ("big", "little"):
        raise OracleError(message=f"unsupported BYTE_ORDER {byte_order!r} in {module_name}")
    words = int(getattr(mod, "SCRATCHPAD_WORDS", SCRATCHPAD_WORDS))

    log.info("Loaded hash oracle %s (digest order=%s, scratchpad=%d words)", spec, byte_order, words)
    return CallableOracle(name=spec, fn=fn, byte_order=byte_order, scratchpad_words=words)


__all__ = [
    "SCRATCHPAD_WORDS",
    "DIGEST_SIZE",
    "HashOracle",
    "CallableOracle",
    "sha3_dev_hash",
    "builtin_names",
    "load_oracle",
]
