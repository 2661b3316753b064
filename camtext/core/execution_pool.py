"""Fixed-size pool of isolated execution contexts.

Each context owns its own model handles and talks to the pool only through
a ``Channel``. Tasks are dispatched to free contexts in FIFO order; when all
contexts are busy the task waits in the pool queue. Every task resolves a
``concurrent.futures.Future`` with the reply payload or a typed exception.

A context that misses its deadline takes the whole pool down with it: every
in-flight and queued task fails with ``ContextTimeoutError``, all contexts
are terminated, the pool generation is bumped and a fresh set of contexts is
brought up through the ``init`` -> ``initialized`` handshake. Replies that
arrive from an older generation are discarded.
"""

import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .channel import Channel, ERROR_TYPE, Message, RESPONSE_TYPES, error_message
from .exceptions import (
    ApplicationError, ChannelClosedError, ContextError, ContextTimeoutError,
    ModelLoadError, PoolStateError, exception_from_reply,
)

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[int], Channel]


class ContextState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    IDLE = "idle"
    BUSY = "busy"
    TERMINATED = "terminated"


class PoolState(Enum):
    EMPTY = "empty"
    INITIALIZING = "initializing"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


@dataclass
class PoolTask:
    """A message waiting for its typed reply."""
    message: Message
    response_type: str
    future: Future = field(default_factory=Future)
    task_id: str = None
    created_at: float = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = time.monotonic()
        if self.task_id is None:
            self.task_id = f"task_{id(self):x}"


def _resolve(future: Future, result: Any = None, exc: Optional[BaseException] = None) -> bool:
    """Complete a future once; later attempts are ignored."""
    try:
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return True
    except InvalidStateError:
        return False


class ExecutionContext:
    """One isolated worker plus the dispatcher thread that feeds it."""

    def __init__(self, index: int, channel: Channel, generation: int):
        self.index = index
        self.channel = channel
        self.generation = generation
        self.state = ContextState.UNINITIALIZED
        self.current_task: Optional[PoolTask] = None
        self.tasks_completed = 0
        self.info: Dict[str, Any] = {}
        self._inbox: "queue.Queue[Optional[PoolTask]]" = queue.Queue()
        self.thread: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        return f"ctx{self.index}-g{self.generation}"

    def handshake(self, init_data: Dict[str, Any], timeout: float) -> None:
        """Start the context and wait for ``initialized``.

        Raises:
            ModelLoadError: The context answered ``error``.
            ContextTimeoutError: No answer within timeout.
        """
        self.state = ContextState.INITIALIZING
        self.channel.start()
        self.channel.send(Message("init", dict(init_data)))
        reply = self.channel.receive(timeout=timeout)
        if reply.type == ERROR_TYPE:
            exc = exception_from_reply(reply.data)
            if isinstance(exc, ModelLoadError):
                raise exc
            raise ModelLoadError(f"Context {self.name} failed to initialize: {exc}")
        if reply.type != RESPONSE_TYPES["init"]:
            raise ModelLoadError(f"Context {self.name} answered init with '{reply.type}'")
        self.info = dict(reply.data or {})
        self.state = ContextState.IDLE

    def assign(self, task: PoolTask) -> None:
        self.state = ContextState.BUSY
        self.current_task = task
        self._inbox.put(task)

    def next_task(self) -> Optional[PoolTask]:
        return self._inbox.get()

    def shutdown(self) -> None:
        self.state = ContextState.TERMINATED
        self._inbox.put(None)
        try:
            self.channel.close()
        except (OSError, ApplicationError) as e:
            logger.debug(f"Error closing {self.name}: {e}")


class ExecutionPool:
    """Bounded pool of execution contexts with FIFO dispatch and pool-wide reset."""

    def __init__(self,
                 channel_factory: ChannelFactory,
                 size: int,
                 init_payload: Optional[Dict[str, Any]] = None,
                 init_timeout: float = 60.0,
                 context_timeout: float = 10.0,
                 name: str = "ExecutionPool"):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.channel_factory = channel_factory
        self.size = size
        self.init_payload = dict(init_payload or {})
        self.init_timeout = init_timeout
        self.context_timeout = context_timeout
        self.name = name

        self._lock = threading.RLock()
        self._reset_lock = threading.Lock()
        self._ready = threading.Event()
        self._state = PoolState.EMPTY
        self._generation = 0
        self._contexts: List[ExecutionContext] = []
        self._free: Deque[ExecutionContext] = deque()
        self._queue: Deque[PoolTask] = deque()
        self._stats = {
            'submitted': 0,
            'completed': 0,
            'failed': 0,
            'stale_replies': 0,
            'resets': 0,
        }

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def contexts(self) -> List[ExecutionContext]:
        with self._lock:
            return list(self._contexts)

    def initialize(self) -> None:
        """Bring up every context and wait for all handshakes.

        Raises:
            PoolStateError: The pool was already started or terminated.
            ModelLoadError: A context failed to load its models.
            ContextTimeoutError: A context did not acknowledge ``init`` in time.
        """
        with self._lock:
            if self._state is not PoolState.EMPTY:
                raise PoolStateError(f"Cannot initialize pool in state {self._state.value}")
        self._start_generation()

    def _start_generation(self) -> None:
        with self._lock:
            self._state = PoolState.INITIALIZING
            generation = self._generation
        logger.info(f"{self.name}: initializing {self.size} contexts (generation {generation})")

        contexts = [ExecutionContext(i, self.channel_factory(i), generation) for i in range(self.size)]
        errors: List[BaseException] = []
        with ThreadPoolExecutor(max_workers=self.size, thread_name_prefix=f"{self.name}-init") as executor:
            futures = [executor.submit(ctx.handshake, self.init_payload, self.init_timeout) for ctx in contexts]
            for ctx, future in zip(contexts, futures):
                try:
                    future.result()
                except (ApplicationError, OSError) as e:
                    logger.error(f"{self.name}: context {ctx.name} failed to initialize: {e}")
                    errors.append(e)

        if errors:
            for ctx in contexts:
                ctx.shutdown()
            with self._lock:
                self._state = PoolState.TERMINATED
            first = errors[0]
            if isinstance(first, (ModelLoadError, ContextTimeoutError)):
                raise first
            raise ModelLoadError(f"Context initialization failed: {first}") from first

        with self._lock:
            if self._generation != generation or self._state is not PoolState.INITIALIZING:
                # terminated or reset while the handshakes were running
                for ctx in contexts:
                    ctx.shutdown()
                return
            self._contexts = contexts
            self._free = deque(contexts)
            for ctx in contexts:
                ctx.thread = threading.Thread(
                    target=self._context_loop,
                    args=(ctx,),
                    name=f"{self.name}-{ctx.name}",
                    daemon=True,
                )
                ctx.thread.start()
            self._state = PoolState.READY
            self._ready.set()
            self._dispatch_locked()
        logger.info(f"{self.name}: ready with {self.size} contexts (generation {generation})")

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def submit(self, message_type: str, data: Optional[Dict[str, Any]] = None,
               response_type: Optional[str] = None) -> Future:
        """Queue a message for the next free context.

        Args:
            message_type: Inbound message type, e.g. ``processRegion``
            data: Payload; ownership passes to the pool
            response_type: Expected reply type, derived from the protocol by default

        Returns:
            Future resolved with the reply payload

        Raises:
            PoolStateError: The pool is not ready.
        """
        if response_type is None:
            try:
                response_type = RESPONSE_TYPES[message_type]
            except KeyError:
                raise ValueError(f"Unknown message type '{message_type}'") from None
        return self.submit_task(PoolTask(Message(message_type, data or {}), response_type))

    def submit_task(self, task: PoolTask) -> Future:
        with self._lock:
            if self._state is not PoolState.READY:
                raise PoolStateError(f"Pool is {self._state.value}, not accepting tasks")
            self._queue.append(task)
            self._stats['submitted'] += 1
            self._dispatch_locked()
        return task.future

    def _dispatch_locked(self) -> None:
        while self._free and self._queue:
            task = self._queue.popleft()
            if not task.future.set_running_or_notify_cancel():
                continue
            ctx = self._free.popleft()
            logger.debug(f"{self.name}: {task.task_id} ({task.message.type}) -> {ctx.name}")
            ctx.assign(task)

    def _context_loop(self, ctx: ExecutionContext) -> None:
        while True:
            task = ctx.next_task()
            if task is None:
                return
            try:
                ctx.channel.send(task.message)
            except ChannelClosedError as e:
                self._handle_context_failure(ctx, task, e)
                return
            except Exception as e:
                # nothing reached the context, so it stays in service
                logger.error(f"{self.name}: could not send '{task.message.type}' to {ctx.name}: {e}")
                self._complete(ctx, task, error_message(ContextError(
                    f"Could not send '{task.message.type}': {type(e).__name__}: {e}"
                )))
                continue
            try:
                reply = ctx.channel.receive(timeout=self.context_timeout)
            except (ContextTimeoutError, ChannelClosedError) as e:
                self._handle_context_failure(ctx, task, e)
                return
            except Exception as e:
                self._handle_context_failure(ctx, task, ContextError(f"Unreadable reply: {type(e).__name__}: {e}"))
                return
            self._complete(ctx, task, reply)

    def _is_current(self, ctx: ExecutionContext) -> bool:
        return ctx.generation == self._generation and ctx.state is not ContextState.TERMINATED

    def _complete(self, ctx: ExecutionContext, task: PoolTask, reply: Message) -> None:
        with self._lock:
            if not self._is_current(ctx):
                self._stats['stale_replies'] += 1
                stale = True
            else:
                stale = False
                ctx.state = ContextState.IDLE
                ctx.current_task = None
                ctx.tasks_completed += 1
                self._free.append(ctx)
                self._dispatch_locked()

        if stale:
            logger.debug(f"{self.name}: discarding stale '{reply.type}' from {ctx.name}")
            _resolve(task.future, exc=ContextTimeoutError(f"Reply from terminated context {ctx.name} discarded"))
            return

        if reply.type == task.response_type:
            _resolve(task.future, reply.data)
            outcome = 'completed'
        elif reply.type == ERROR_TYPE:
            logger.warning(f"{self.name}: {ctx.name} reported error for {task.message.type}: {reply.data.get('error')}")
            _resolve(task.future, exc=exception_from_reply(reply.data))
            outcome = 'failed'
        else:
            _resolve(task.future, exc=ContextError(
                f"Expected '{task.response_type}' for '{task.message.type}', got '{reply.type}'"
            ))
            outcome = 'failed'
        with self._lock:
            self._stats[outcome] += 1

    def _handle_context_failure(self, ctx: ExecutionContext, task: PoolTask, exc: ApplicationError) -> None:
        with self._lock:
            current = self._is_current(ctx) and self._state is PoolState.READY
            generation = ctx.generation
        if not current:
            _resolve(task.future, exc=ContextTimeoutError(f"Context {ctx.name} was terminated: {exc}"))
            return
        logger.error(f"{self.name}: context {ctx.name} failed on '{task.message.type}': {exc}")
        _resolve(task.future, exc=exc if isinstance(exc, ContextTimeoutError) else ContextTimeoutError(str(exc)))
        try:
            self.reset(reason=f"{ctx.name}: {exc}", expected_generation=generation)
        except ApplicationError as e:
            logger.error(f"{self.name}: reinitialization after failure of {ctx.name} failed: {e}")

    def reset(self, reason: str = "reset requested", expected_generation: Optional[int] = None) -> bool:
        """Drain, terminate and reinitialize every context.

        Args:
            reason: Logged and attached to the failures of pending tasks
            expected_generation: Only reset if the pool is still on this generation

        Returns:
            True if this call performed the reset

        Raises:
            ModelLoadError, ContextTimeoutError: Reinitialization failed.
        """
        with self._reset_lock:
            with self._lock:
                if self._state in (PoolState.TERMINATED, PoolState.EMPTY):
                    return False
                if expected_generation is not None and expected_generation != self._generation:
                    return False
                logger.warning(f"{self.name}: resetting pool (generation {self._generation}): {reason}")
                self._state = PoolState.DRAINING
                self._ready.clear()
                self._generation += 1
                old_contexts = self._contexts
                pending = [ctx.current_task for ctx in old_contexts if ctx.current_task is not None]
                pending.extend(self._queue)
                self._queue.clear()
                self._contexts = []
                self._free.clear()
                for ctx in old_contexts:
                    ctx.state = ContextState.TERMINATED
                self._stats['resets'] += 1

            for task in pending:
                if _resolve(task.future, exc=ContextTimeoutError(f"Pool reset: {reason}")):
                    with self._lock:
                        self._stats['failed'] += 1
            for ctx in old_contexts:
                ctx.shutdown()

            self._start_generation()
            return True

    def terminate(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Fail pending work and shut every context down for good."""
        with self._lock:
            if self._state is PoolState.TERMINATED and not self._contexts:
                return
            self._state = PoolState.TERMINATED
            self._ready.clear()
            self._generation += 1
            contexts = self._contexts
            pending = [ctx.current_task for ctx in contexts if ctx.current_task is not None]
            pending.extend(self._queue)
            self._queue.clear()
            self._contexts = []
            self._free.clear()

        for task in pending:
            _resolve(task.future, exc=PoolStateError("Pool terminated"))
        for ctx in contexts:
            ctx.shutdown()
        if wait:
            deadline = time.monotonic() + timeout
            for ctx in contexts:
                if ctx.thread is not None and ctx.thread is not threading.current_thread():
                    ctx.thread.join(timeout=max(0.0, deadline - time.monotonic()))
        logger.info(f"{self.name}: terminated")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            busy = sum(1 for ctx in self._contexts if ctx.state is ContextState.BUSY)
            return {
                'state': self._state.value,
                'generation': self._generation,
                'size': self.size,
                'free': len(self._free),
                'busy': busy,
                'queued': len(self._queue),
                **self._stats,
            }

    def __enter__(self) -> 'ExecutionPool':
        if self._state is PoolState.EMPTY:
            self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.terminate()
