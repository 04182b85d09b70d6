from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


class MiningErrorCode(IntEnum):
    """Stable, machine-consumable error codes for miner & pool flows."""

    MINER_ERROR = 1000
    CONNECTION_FAILED = 1001
    SEND_FAILED = 1002
    READ_FAILED = 1003
    END_OF_STREAM = 1004
    DECODE_FAILED = 1005
    ORACLE_FAILED = 1006


class RejectCategory(str, Enum):
    """Why the pool rejected a submitted share, grouped for stats."""

    DUPLICATE = "duplicate"
    STALE = "stale"
    LOW_DIFFICULTY = "low_difficulty"
    JOB_NOT_FOUND = "job_not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID = "invalid"
    OTHER = "other"


@dataclass
class MinerError(Exception):
    """
    Root of the miner's exception tree.

    `message` is safe to log, `code` is a stable MiningErrorCode, `fatal`
    marks conditions the process cannot continue after, and `context` holds
    a few non-sensitive values (host, job id, thread) for the log line.
    """

    message: str
    code: MiningErrorCode = MiningErrorCode.MINER_ERROR
    fatal: bool = False
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        text = f"[{int(self.code)}] {self.message}"
        if self.context:
            pairs = " ".join(f"{k}={v}" for k, v in self.context.items())
            text = f"{text} ({pairs})"
        return text


@dataclass
class PoolConnectionError(MinerError):
    """The pool could not be reached; nothing can proceed without it."""

    message: str = "could not connect to pool"
    code: MiningErrorCode = MiningErrorCode.CONNECTION_FAILED
    fatal: bool = True


@dataclass
class SendError(MinerError):
    """A line could not be written to the pool socket."""

    message: str = "failed to send to pool"
    code: MiningErrorCode = MiningErrorCode.SEND_FAILED


@dataclass
class ReadError(MinerError):
    """The pool socket failed while reading (not a clean close)."""

    message: str = "failed to read from pool"
    code: MiningErrorCode = MiningErrorCode.READ_FAILED


@dataclass
class EndOfStream(MinerError):
    """The pool closed the connection."""

    message: str = "pool closed the connection"
    code: MiningErrorCode = MiningErrorCode.END_OF_STREAM


@dataclass
class DecodeError(MinerError):
    """
    An inbound line was not valid JSON or lacked fields required by its
    message kind. The line is dropped; the router keeps going.
    """

    message: str = "malformed message"
    code: MiningErrorCode = MiningErrorCode.DECODE_FAILED


@dataclass
class OracleError(MinerError):
    """The hash oracle could not be loaded or failed on well-formed input."""

    message: str = "hash oracle failure"
    code: MiningErrorCode = MiningErrorCode.ORACLE_FAILED
    fatal: bool = True


def classify_reject(reason: Optional[str]) -> RejectCategory:
    """Map a pool's free-form rejection text onto a RejectCategory."""
    if not reason:
        return RejectCategory.OTHER
    text = reason.lower()
    if "duplicate" in text:
        return RejectCategory.DUPLICATE
    if "stale" in text:
        return RejectCategory.STALE
    if "low difficulty" in text or "low-difficulty" in text or "above target" in text:
        return RejectCategory.LOW_DIFFICULTY
    if "job not found" in text:
        return RejectCategory.JOB_NOT_FOUND
    if "unauthorized" in text or "not authorized" in text:
        return RejectCategory.UNAUTHORIZED
    if "invalid" in text:
        return RejectCategory.INVALID
    return RejectCategory.OTHER


def normalize_exc(exc: BaseException) -> MinerError:
    """Return `exc` if it already is a MinerError, else wrap it as a generic one."""
    if isinstance(exc, MinerError):
        return exc
    return MinerError(message=str(exc) or type(exc).__name__, context={"type": type(exc).__name__})


__all__ = [
    "MiningErrorCode",
    "RejectCategory",
    "MinerError",
    "PoolConnectionError",
    "SendError",
    "ReadError",
    "EndOfStream",
    "DecodeError",
    "OracleError",
    "classify_reject",
    "normalize_exc",
]
