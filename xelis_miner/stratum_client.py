from __future__ import annotations

import logging
import socket
import threading
from typing import Optional

from .mining.errors import (DecodeError, EndOfStream, PoolConnectionError,
                            ReadError, SendError)
from .stratum_protocol import (JSON, MAX_LINE_BYTES, encode_lines,
                               split_lines)

log = logging.getLogger("xelis_miner.stratum_client")

_RECV_SIZE = 65536


class StratumConnection:
    """
    Blocking line-oriented connection to a Stratum pool.

    `send` may be called from any thread (search threads submit shares
    directly); a lock keeps each line contiguous on the wire. `read_line` is
    meant for a single reader thread.

    Usage:
        conn = StratumConnection.connect("pool.example", 1225)
        conn.send(req_subscribe("xelis-py-miner/0.2.0"))
        line = conn.read_line()
    """

    def __init__(self, sock: socket.socket, *, host: str = "", port: int = 0) -> None:
        self.host = host
        self.port = int(port)
        self._sock = sock
        self._send_lock = threading.Lock()
        self._rx = bytearray()
        self._pending: list[bytes] = []
        self._eof = False
        self._skip_to_newline = False
        self._closed = False

    # ------------- transport -------------

    @classmethod
    def connect(
        cls, host: str, port: int, *, timeout: Optional[float] = 10.0
    ) -> "StratumConnection":
        """Open a TCP connection; raises PoolConnectionError on failure."""
        try:
            sock = socket.create_connection((host, int(port)), timeout=timeout)
        except OSError as e:
            raise PoolConnectionError(
                message=f"failed to connect to {host}:{port}: {e}",
                context={"host": host, "port": int(port)},
            ) from e
        # connect timeout only; reads block until the pool speaks or hangs up
        sock.settimeout(None)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        log.info("connected to %s:%s", host, port)
        return cls(sock, host=host, port=port)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self._sock.close()
        log.info("connection to %s:%s closed", self.host, self.port)

    # ------------- write side -------------

    def send_line(self, text: str) -> None:
        """Write `text` plus a line terminator as one contiguous write."""
        self._send_raw(text.encode("utf-8") + b"\n")

    def send(self, obj: JSON) -> None:
        """Encode `obj` as compact JSON and write it as one line."""
        self._send_raw(encode_lines(obj))

    def _send_raw(self, data: bytes) -> None:
        with self._send_lock:
            if self._closed:
                raise SendError(message="connection is closed")
            try:
                self._sock.sendall(data)
            except OSError as e:
                raise SendError(message=f"send failed: {e}") from e
        log.debug("-> %s", data.rstrip(b"\n").decode("utf-8", "replace"))

    # ------------- read side -------------

    def read_line(self) -> str:
        """
        Block until one full line is available and return it without the
        terminator. Raises EndOfStream once the pool has closed the connection
        (after returning any unterminated trailing fragment), ReadError for
        other socket failures, and DecodeError for an oversized line.
        """
        while not self._pending:
            if self._eof:
                raise EndOfStream(context={"host": self.host, "port": self.port})
            try:
                chunk = self._sock.recv(_RECV_SIZE)
            except OSError as e:
                if self._closed:
                    raise EndOfStream(message="connection closed locally") from e
                raise ReadError(message=f"recv failed: {e}") from e
            if not chunk:
                self._eof = True
                if self._rx:
                    self._pending.append(bytes(self._rx))
                    self._rx.clear()
                continue
            if self._skip_to_newline:
                # still inside a discarded oversized line
                idx = chunk.find(b"\n")
                if idx < 0:
                    continue
                chunk = chunk[idx + 1 :]
                self._skip_to_newline = False
            self._rx.extend(chunk)
            self._pending.extend(split_lines(self._rx))
            if len(self._rx) > MAX_LINE_BYTES:
                size = len(self._rx)
                self._rx.clear()
                self._skip_to_newline = True
                raise DecodeError(
                    message=f"line exceeds {MAX_LINE_BYTES} bytes; discarded",
                    context={"size": size},
                )
        line = self._pending.pop(0)
        return line.decode("utf-8", "replace").strip()
