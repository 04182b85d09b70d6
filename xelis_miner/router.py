from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Dict, Optional, Protocol

from .mining.errors import DecodeError, EndOfStream, MinerError, ReadError
from .stratum_protocol import JSON, MessageKind, classify, loads

log = logging.getLogger("xelis_miner.router")

INBOUND_QUEUE_SIZE = 100

Handler = Callable[[JSON], None]


class LineSource(Protocol):
    def read_line(self) -> str: ...


class MessageRouter:
    """
    Two-thread inbound pipeline.

    The reader thread only moves lines from the socket into a bounded FIFO
    queue; when the queue is full the reader blocks (back-pressure on the
    socket) rather than dropping lines. The router thread is the single
    consumer: it decodes, classifies and dispatches each line in arrival
    order. A slow handler therefore never stalls the socket read.

    Handlers are registered per MessageKind. A DecodeError raised by a
    handler drops that one message with a warning; any other exception is
    logged with its traceback. Neither stops the router.

    `on_close(reason)` runs exactly once, on the router thread, after the
    stream has ended and every queued line has been dispatched.
    """

    _EOF = None

    def __init__(
        self,
        source: LineSource,
        *,
        on_close: Optional[Callable[[Optional[MinerError]], None]] = None,
        maxsize: int = INBOUND_QUEUE_SIZE,
    ) -> None:
        self._source = source
        self._on_close = on_close
        self._inbox: "queue.Queue[Optional[str]]" = queue.Queue(maxsize=maxsize)
        self._handlers: Dict[MessageKind, Handler] = {}
        self._reader = threading.Thread(target=self._read_loop, name="stratum-reader", daemon=True)
        self._router = threading.Thread(target=self._route_loop, name="stratum-router", daemon=True)
        self._close_reason: Optional[MinerError] = None
        self._done = threading.Event()
        self.dispatched = 0

    def on(self, kind: MessageKind, handler: Handler) -> None:
        self._handlers[kind] = handler

    # ------------- lifecycle -------------

    def start(self) -> None:
        self._router.start()
        self._reader.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the router has drained the stream and stopped."""
        return self._done.wait(timeout)

    @property
    def running(self) -> bool:
        return not self._done.is_set()

    # ------------- reader thread -------------

    def _read_loop(self) -> None:
        try:
            while True:
                try:
                    line = self._source.read_line()
                except DecodeError as e:
                    log.warning("dropping inbound data: %s", e.message)
                    continue
                if line:
                    self._inbox.put(line)
        except EndOfStream as e:
            log.info("pool stream ended: %s", e.message)
            self._close_reason = e
        except ReadError as e:
            log.error("pool read failed: %s", e.message)
            self._close_reason = e
        finally:
            self._inbox.put(self._EOF)

    # ------------- router thread -------------

    def _route_loop(self) -> None:
        try:
            while True:
                line = self._inbox.get()
                if line is self._EOF:
                    break
                self.dispatch_line(line)
        finally:
            try:
                if self._on_close is not None:
                    self._on_close(self._close_reason)
            finally:
                self._done.set()

    def dispatch_line(self, line: str) -> MessageKind:
        """Decode, classify and handle one line. Never raises."""
        log.debug("<- %s", line)
        try:
            obj = loads(line)
        except DecodeError as e:
            log.warning("dropping malformed line (%s): %.200s", e.message, line)
            return MessageKind.UNKNOWN

        kind = classify(obj)
        handler = self._handlers.get(kind)
        if handler is None:
            log.debug("unhandled %s message: %.200s", kind.value, line)
            return kind
        try:
            handler(obj)
        except DecodeError as e:
            log.warning("dropping %s message: %s", kind.value, e.message)
        except Exception:
            log.exception("handler for %s failed", kind.value)
        else:
            self.dispatched += 1
        return kind
