"""Typed request/response channels to isolated execution contexts.

A channel carries ``Message`` objects to one context and returns its
replies. ``ProcessChannel`` runs the context in a spawned process and pickles
every payload across a pipe. ``ThreadChannel`` runs it on a daemon thread in
the current process and deep-copies payloads, which keeps the no-shared-state
contract while letting tests drive the pool without real processes.
"""
from __future__ import annotations

import copy
import logging
import multiprocessing
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from .exceptions import ChannelClosedError, ContextTimeoutError

logger = logging.getLogger(__name__)

ERROR_TYPE = "error"

# Inbound message type -> the only success reply it may produce.
RESPONSE_TYPES: Dict[str, str] = {
    "init": "initialized",
    "detect": "detectComplete",
    "processRegion": "regionComplete",
    "getMemoryInfo": "memoryInfo",
}


@dataclass(slots=True)
class Message:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


def error_message(exc: BaseException) -> Message:
    """Wrap an exception as an ``error`` reply carrying a readable message."""
    return Message(ERROR_TYPE, {"error": str(exc) or type(exc).__name__, "error_type": type(exc).__name__})


class MessageHandler(Protocol):
    def handle(self, message: Message) -> Message: ...


HandlerFactory = Callable[[], MessageHandler]


def dispatch(handler: MessageHandler, message: Message) -> Message:
    """Run one message through a handler; any exception becomes an error reply."""
    try:
        return handler.handle(message)
    except Exception as e:
        logger.exception(f"Context handler failed on '{message.type}'")
        return error_message(e)


class Channel(ABC):
    """Bidirectional message link to a single execution context."""

    @abstractmethod
    def start(self) -> None:
        """Launch the context behind this channel."""

    @abstractmethod
    def send(self, message: Message) -> None:
        """Hand a message to the context. The sender must not reuse its payload."""

    @abstractmethod
    def receive(self, timeout: Optional[float] = None) -> Message:
        """Wait for the next reply.

        Raises:
            ContextTimeoutError: No reply within timeout.
            ChannelClosedError: The context is gone.
        """

    @abstractmethod
    def close(self) -> None:
        """Terminate the context and unblock any waiting receiver."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        ...


_CLOSE = object()


class ThreadChannel(Channel):
    """In-process context on a daemon thread; payloads are deep-copied on send."""

    def __init__(self, handler_factory: HandlerFactory, name: str = "context"):
        self.handler_factory = handler_factory
        self.name = name
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._outbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._serve, name=f"ThreadChannel-{self.name}", daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        handler = self.handler_factory()
        while True:
            message = self._inbox.get()
            if message is _CLOSE:
                break
            reply = dispatch(handler, message)
            if self._closed:
                break
            self._outbox.put(copy.deepcopy(reply))
        closer = getattr(handler, "close", None)
        if callable(closer):
            closer()

    def send(self, message: Message) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel '{self.name}' is closed")
        self._inbox.put(copy.deepcopy(message))

    def receive(self, timeout: Optional[float] = None) -> Message:
        if self._closed and self._outbox.empty():
            raise ChannelClosedError(f"Channel '{self.name}' is closed")
        try:
            reply = self._outbox.get(timeout=timeout)
        except queue.Empty:
            raise ContextTimeoutError(f"Context '{self.name}' did not reply within {timeout}s") from None
        if reply is _CLOSE:
            raise ChannelClosedError(f"Channel '{self.name}' closed while waiting")
        return reply

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put(_CLOSE)
        self._outbox.put(_CLOSE)

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._thread is not None and self._thread.is_alive()


def serve_connection(conn, handler_factory: HandlerFactory) -> None:
    """Child-process loop: build the handler, then answer messages until told to stop."""
    handler = handler_factory()
    try:
        while True:
            try:
                message = conn.recv()
            except (EOFError, OSError):
                break
            if message is None:
                break
            try:
                conn.send(dispatch(handler, message))
            except (BrokenPipeError, OSError):
                break
    finally:
        closer = getattr(handler, "close", None)
        if callable(closer):
            closer()
        conn.close()


class ProcessChannel(Channel):
    """Context in a spawned process; messages are pickled across a pipe.

    ``handler_factory`` must be picklable (a module-level class or function,
    or a ``functools.partial`` of one).
    """

    def __init__(self, handler_factory: HandlerFactory, name: str = "context",
                 start_method: str = "spawn", join_timeout: float = 2.0):
        self.handler_factory = handler_factory
        self.name = name
        self.join_timeout = join_timeout
        self._ctx = multiprocessing.get_context(start_method)
        self._conn = None
        self._process = None
        self._closed = False

    def start(self) -> None:
        if self._process is not None:
            return
        parent_conn, child_conn = self._ctx.Pipe()
        self._process = self._ctx.Process(
            target=serve_connection,
            args=(child_conn, self.handler_factory),
            name=f"camtext-{self.name}",
            daemon=True,
        )
        self._process.start()
        child_conn.close()
        self._conn = parent_conn
        logger.debug(f"Started context process {self._process.pid} for '{self.name}'")

    def send(self, message: Message) -> None:
        if self._closed or self._conn is None:
            raise ChannelClosedError(f"Channel '{self.name}' is closed")
        try:
            self._conn.send(message)
        except (BrokenPipeError, EOFError, OSError) as e:
            raise ChannelClosedError(f"Channel '{self.name}' broke on send: {e}") from e

    def receive(self, timeout: Optional[float] = None) -> Message:
        if self._closed or self._conn is None:
            raise ChannelClosedError(f"Channel '{self.name}' is closed")
        try:
            if not self._conn.poll(timeout):
                raise ContextTimeoutError(f"Context '{self.name}' did not reply within {timeout}s")
            return self._conn.recv()
        except (EOFError, OSError) as e:
            raise ChannelClosedError(f"Channel '{self.name}' closed while waiting: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            try:
                self._conn.send(None)
            except (BrokenPipeError, EOFError, OSError):
                pass
            self._conn.close()
        if self._process is not None:
            self._process.join(timeout=self.join_timeout)
            if self._process.is_alive():
                logger.warning(f"Context process {self._process.pid} did not exit, terminating")
                self._process.terminate()
                self._process.join(timeout=self.join_timeout)

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._process is not None and self._process.is_alive()
