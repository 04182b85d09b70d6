from __future__ import annotations

"""
Xelis Stratum Protocol (JSON-RPC over TCP, xel/v2 profile)
==========================================================

Purpose
-------
Request builders, message classification and per-kind parsers for the
Stratum dialect spoken by Xelis pools. Transport is newline-delimited UTF-8
JSON. Params are positional arrays (Stratum v1 style).

Client -> Server
----------------
  {"id":0,"method":"mining.subscribe","params":["<agent>",["xel/v2"]]}
  {"id":1,"method":"mining.authorize","params":["<wallet>","<worker>",""]}
  {"id":4,"method":"mining.submit","params":["<worker>","<jobId>","<nonceHex>"]}

Server -> Client
----------------
  subscribe result   : {"id":0,"result":[<sub>, "<extraNonce hex>", <n>, "<publicKey hex>", ...]}
  authorize result   : {"id":1,"result":true,"error":null}
  set_difficulty     : {"method":"mining.set_difficulty","params":[<difficulty>]}
  notify             : {"method":"mining.notify","params":["<jobId>","<timestamp hex>","<headerHash hex>", ...]}
  submit result      : {"id":4,"result":true,"error":null | [code, "message", ...]}

Classification
--------------
Messages are classified by partial inspection (request id, method name), not
by full schema validation; see `classify`. All submissions share id 4, so a
submit result carries no per-share correlation.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .mining.errors import DecodeError
from .mining.nonce_domain import decode_hex

JSON = Dict[str, Any]
Hex = str

SUBSCRIBE_ID = 0
AUTHORIZE_ID = 1
SUBMIT_ID = 4
PROTOCOL_FEATURES = ["xel/v2"]

# Lines longer than this are never valid pool messages.
MAX_LINE_BYTES = 1 << 20


# ---------------------- Methods ----------------------


class Method(str, Enum):
    SUBSCRIBE = "mining.subscribe"
    AUTHORIZE = "mining.authorize"
    SET_DIFFICULTY = "mining.set_difficulty"
    NOTIFY = "mining.notify"
    SUBMIT = "mining.submit"


class MessageKind(str, Enum):
    SUBSCRIBE_RESULT = "subscribe-result"
    AUTHORIZE_RESULT = "authorize-result"
    SUBMIT_RESULT = "submit-result"
    SET_DIFFICULTY = "difficulty-change"
    NOTIFY = "new-job"
    UNKNOWN = "unknown"


# ---------------------- Parsed payloads ----------------------


@dataclass(frozen=True)
class SubscribeResult:
    extra_nonce: bytes
    public_key: bytes


@dataclass(frozen=True)
class AuthorizeResult:
    ok: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class NotifyParams:
    job_id: str
    timestamp: bytes
    header_hash: bytes


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    reason: Optional[str] = None


# ---------------------- JSON-RPC helpers ----------------------


def make_request(
    method: Union[str, Method],
    params: Optional[List[Any]] = None,
    id: Union[int, str, None] = None,
) -> JSON:
    if isinstance(method, Method):
        method = method.value
    if not isinstance(method, str) or not method:
        raise ValueError("method must be non-empty string")
    return {"id": id, "method": method, "params": list(params or [])}


def dumps(obj: JSON) -> bytes:
    """Compact JSON dump suitable for wire use (UTF-8, no spaces, stable key order)."""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def loads(data: Union[bytes, str]) -> JSON:
    """Decode one line into a JSON object; DecodeError for anything else."""
    try:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="strict")
        obj = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(message=f"invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise DecodeError(message="top-level must be object")
    return obj


def encode_lines(obj: JSON) -> bytes:
    return dumps(obj) + b"\n"


def split_lines(buffer: bytearray) -> List[bytes]:
    """
    Consume as many complete newline-terminated lines as available from a
    buffer, without their terminators (a trailing CR is stripped too).
    Leaves partial trailing data in-place.
    """
    out: List[bytes] = []
    while True:
        idx = buffer.find(b"\n")
        if idx < 0:
            break
        line = bytes(buffer[:idx]).rstrip(b"\r")
        del buffer[: idx + 1]
        out.append(line)
    return out


def decode_lines(buffer: bytearray) -> List[JSON]:
    """Like split_lines, but decodes each non-empty line as a JSON object."""
    return [loads(line) for line in split_lines(buffer) if line.strip()]


# ---------------------- Request builders ----------------------


def req_subscribe(agent: str, id: Union[int, str, None] = SUBSCRIBE_ID) -> JSON:
    return make_request(Method.SUBSCRIBE, [agent, list(PROTOCOL_FEATURES)], id=id)


def req_authorize(
    wallet: str, worker: str, password: str = "", id: Union[int, str, None] = AUTHORIZE_ID
) -> JSON:
    return make_request(Method.AUTHORIZE, [wallet, worker, password], id=id)


def req_submit(
    worker: str, job_id: str, nonce_hex: Hex, id: Union[int, str, None] = SUBMIT_ID
) -> JSON:
    return make_request(Method.SUBMIT, [worker, job_id, nonce_hex], id=id)


# ---------------------- Classification ----------------------


def _is_response(obj: JSON) -> bool:
    return "result" in obj or "error" in obj


def classify(obj: JSON) -> MessageKind:
    """
    Pick the message kind by partial inspection, in this order: submit
    result, set_difficulty, notify, subscribe result, authorize result.
    """
    method = obj.get("method")
    rid = obj.get("id")
    # bool is an int subclass; `true` is never a request id
    has_id = isinstance(rid, int) and not isinstance(rid, bool)
    if has_id and rid == SUBMIT_ID and _is_response(obj):
        return MessageKind.SUBMIT_RESULT
    if method == Method.SET_DIFFICULTY.value:
        return MessageKind.SET_DIFFICULTY
    if method == Method.NOTIFY.value:
        return MessageKind.NOTIFY
    if method is None and has_id and _is_response(obj):
        if rid == SUBSCRIBE_ID:
            return MessageKind.SUBSCRIBE_RESULT
        if rid == AUTHORIZE_ID:
            return MessageKind.AUTHORIZE_RESULT
    return MessageKind.UNKNOWN


# ---------------------- Parsers ----------------------


def error_reason(error: Any) -> Optional[str]:
    """
    Human-readable text from a JSON-RPC error value. Pools send
    `[code, "message", data]`, `{"code": .., "message": ..}` or a bare string.
    """
    if error is None:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        msg = error.get("message")
        return str(msg) if msg is not None else json.dumps(error)
    if isinstance(error, (list, tuple)):
        texts = [str(x) for x in error if isinstance(x, str)]
        if texts:
            return texts[0]
    return str(error)


def _params(obj: JSON, minimum: int, what: str) -> List[Any]:
    params = obj.get("params")
    if not isinstance(params, list) or len(params) < minimum:
        raise DecodeError(
            message=f"{what} needs at least {minimum} positional params",
            context={"params": params},
        )
    return params


def _hex_field(value: Any, what: str) -> bytes:
    try:
        return decode_hex(value)
    except ValueError as e:
        raise DecodeError(message=f"invalid {what}: {e}") from e


def parse_subscribe_result(obj: JSON) -> SubscribeResult:
    """result[1] is the extra nonce, result[3] the pool public key (both hex)."""
    if obj.get("error") is not None:
        raise DecodeError(message=f"subscribe failed: {error_reason(obj['error'])}")
    result = obj.get("result")
    if not isinstance(result, list) or len(result) < 4:
        raise DecodeError(
            message="subscribe result must be an array of at least 4 items",
            context={"result": result},
        )
    return SubscribeResult(
        extra_nonce=_hex_field(result[1], "extraNonce"),
        public_key=_hex_field(result[3], "publicKey"),
    )


def parse_authorize_result(obj: JSON) -> AuthorizeResult:
    error = obj.get("error")
    if error is not None:
        return AuthorizeResult(ok=False, reason=error_reason(error))
    return AuthorizeResult(ok=obj.get("result") is not False)


def parse_set_difficulty(obj: JSON) -> Any:
    """Return the raw params[0]; range checks belong to the job state."""
    return _params(obj, 1, Method.SET_DIFFICULTY.value)[0]


def parse_notify(obj: JSON) -> NotifyParams:
    params = _params(obj, 3, Method.NOTIFY.value)
    job_id = params[0]
    if not isinstance(job_id, str) or not job_id:
        raise DecodeError(message="notify job id must be a non-empty string")
    return NotifyParams(
        job_id=job_id,
        timestamp=_hex_field(params[1], "timestamp"),
        header_hash=_hex_field(params[2], "header hash"),
    )


def parse_submit_result(obj: JSON) -> SubmitResult:
    error = obj.get("error")
    if error is not None:
        return SubmitResult(accepted=False, reason=error_reason(error))
    return SubmitResult(accepted=True)


# ---------------------- Pool-side builders ----------------------
# Used by local test pools to speak the same dialect.


def res_subscribe(
    extra_nonce: Hex, public_key: Hex, id: Union[int, str, None] = SUBSCRIBE_ID
) -> JSON:
    return {"id": id, "result": [None, extra_nonce, 32, public_key], "error": None}


def res_ok(id: Union[int, str, None], result: Any = True) -> JSON:
    return {"id": id, "result": result, "error": None}


def res_error(id: Union[int, str, None], code: int, message: str) -> JSON:
    return {"id": id, "result": None, "error": [code, message, None]}


def push_set_difficulty(difficulty: Union[int, float]) -> JSON:
    return {"id": None, "method": Method.SET_DIFFICULTY.value, "params": [difficulty]}


def push_notify(job_id: str, timestamp: Hex, header_hash: Hex) -> JSON:
    return {
        "id": None,
        "method": Method.NOTIFY.value,
        "params": [job_id, timestamp, header_hash],
    }


def split_request(obj: JSON) -> Tuple[Optional[Union[int, str]], str, List[Any]]:
    """(id, method, params) of a client request, for test pools."""
    method = obj.get("method")
    if not isinstance(method, str):
        raise DecodeError(message="request without method")
    params = obj.get("params")
    return obj.get("id"), method, params if isinstance(params, list) else []
