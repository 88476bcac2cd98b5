"""Host-process runtime: worker sessions and the process context host."""

import atexit
import concurrent.futures
import logging
import multiprocessing
import pickle
import threading
from collections.abc import Callable
from concurrent.futures import Future
from multiprocessing.connection import Connection
from typing import Any

from tandem.errors import InvalidBufferSizeError
from tandem.errors import MethodNotCallbackError
from tandem.errors import MethodNotRemoteError
from tandem.errors import SessionFinalizedError
from tandem.errors import TandemError
from tandem.errors import TandemProtocolError
from tandem.errors import TransportError
from tandem.errors import WorkerCrashedError
from tandem.errors import WorkerExitedError
from tandem.errors import WorkerInitError
from tandem.protocol import MSG_CALLBACK_INVOKE
from tandem.protocol import MSG_CALLBACK_RESULT
from tandem.protocol import MSG_FATAL
from tandem.protocol import MSG_FINALIZE
from tandem.protocol import MSG_FINALIZED
from tandem.protocol import MSG_INIT_ERROR
from tandem.protocol import MSG_INVOKE
from tandem.protocol import MSG_READY
from tandem.protocol import MSG_RESULT
from tandem.protocol import WORKER_MESSAGE_TYPES
from tandem.protocol import PendingCall
from tandem.protocol import WorkerStatus
from tandem.protocol import build_message
from tandem.protocol import error_from_payload
from tandem.protocol import require_int_field
from tandem.protocol import require_message_type
from tandem.protocol import require_str_field
from tandem.protocol import serialize_error
from tandem.regions import SharedRegion
from tandem.regions import create_region
from tandem.registry import WORKER_EVENTS
from tandem.registry import UnitRegistration
from tandem.registry import get_unit_registration
from tandem.resolver import CallableDescriptors
from tandem.shared import compute_extra_size
from tandem.shared import materialize_shared
from tandem.structs import construct_bound
from tandem.transport import decode_args
from tandem.transport import decode_return
from tandem.transport import encode_args
from tandem.transport import encode_return
from tandem.transport import settle_awaitable
from tandem.worker import worker_entry

logger = logging.getLogger(__name__)

DEFAULT_START_METHOD: str = "spawn"
DEFAULT_START_TIMEOUT_SECONDS: float = 30.0
DEFAULT_FINALIZE_GRACE_SECONDS: float = 2.0
SESSION_ATTR: str = "__tandem_session__"
_BUFFER_TYPES: tuple[type, ...] = (bytes, bytearray, memoryview)


def _failed_future(error: BaseException) -> Future:
    """Return a future that already carries ``error``.

    :param error: Exception to set.
    :returns: Completed future.
    """
    future: Future = Future()
    future.set_running_or_notify_cancel()
    future.set_exception(error)
    return future


class ContextHandle:
    """Channel and process of one opened worker context."""

    connection: Connection
    _process: Any

    def __init__(self, connection: Connection, process: Any) -> None:
        """Initialize a context handle.

        :param connection: Host end of the duplex pipe.
        :param process: Object with ``join``, ``is_alive``, ``terminate`` and ``exitcode``.
        """
        self.connection = connection
        self._process = process

    @property
    def exitcode(self) -> int | None:
        """Exit code of the worker process, or ``None`` while it runs.

        :returns: Exit code.
        """
        return self._process.exitcode

    def join(self, timeout: float | None = None) -> None:
        self._process.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def terminate(self) -> None:
        self._process.terminate()


class ProcessContextHost:
    """Open worker contexts as spawned child processes."""

    _start_method: str

    def __init__(self, start_method: str = DEFAULT_START_METHOD) -> None:
        """Initialize the host.

        :param start_method: ``multiprocessing`` start method.
        """
        self._start_method = start_method

    def open(self, init_payload: dict[str, object]) -> ContextHandle:
        """Start one worker process.

        :param init_payload: Payload passed to ``worker_entry``.
        :returns: Handle for the new context.
        """
        context = multiprocessing.get_context(self._start_method)
        parent_connection, child_connection = context.Pipe(duplex=True)
        process = context.Process(
            target=worker_entry,
            args=(child_connection, init_payload),
            name=f"tandem-{init_payload.get('unit_id')}",
        )
        process.daemon = True
        process.start()
        child_connection.close()
        return ContextHandle(parent_connection, process)


class _RemoteMethod:
    """Host-side stand-in for a ``worker_method``; calls return futures."""

    _session: "WorkerSession"
    _method_name: str

    def __init__(self, session: "WorkerSession", method_name: str) -> None:
        self._session = session
        self._method_name = method_name

    def __call__(self, *args: object, **kwargs: object) -> Future:
        """Send the call to the worker.

        :returns: Future settled with the decoded result.
        """
        return self._session.call(self._method_name, *args, **kwargs)

    def __repr__(self) -> str:
        return f"<remote method {self._method_name}>"


class WorkerSession:
    """Own one worker process, its channel, and the host-side unit instance."""

    _registration: UnitRegistration
    _host: ProcessContextHost
    _start_timeout: float
    _finalize_grace_seconds: float
    _lock: threading.RLock
    _send_lock: threading.Lock
    _status: WorkerStatus
    _handle: ContextHandle | None
    _reader: threading.Thread | None
    _closer: threading.Thread | None
    _ready: Future
    _pending: dict[int, PendingCall]
    _next_call_id: int
    _instance: object
    _unit_region: SharedRegion | None
    _observers: dict[str, list[Callable[..., Any]]]
    _fatal_error: TandemError | None
    _termination_error: TandemError | None
    _is_closed: bool

    def __init__(
        self,
        unit_cls: type,
        host: Any = None,
        start_timeout: float = DEFAULT_START_TIMEOUT_SECONDS,
        finalize_grace_seconds: float = DEFAULT_FINALIZE_GRACE_SECONDS,
    ) -> None:
        """Initialize a session for a registered unit class.

        :param unit_cls: Class decorated with ``define_worker``.
        :param host: Context host; defaults to a spawning ``ProcessContextHost``.
        :param start_timeout: Seconds to wait for the worker's ``ready``.
        :param finalize_grace_seconds: Seconds to wait for a clean exit before terminating.
        :raises UnitNotRegisteredError: If ``unit_cls`` is not registered.
        """
        self._registration = get_unit_registration(unit_cls)
        self._host = host if host is not None else ProcessContextHost()
        self._start_timeout = start_timeout
        self._finalize_grace_seconds = finalize_grace_seconds
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._status = WorkerStatus.INITIALIZING
        self._handle = None
        self._reader = None
        self._closer = None
        self._ready = Future()
        self._ready.set_running_or_notify_cancel()
        self._pending = {}
        self._next_call_id = 1
        self._instance = None
        self._unit_region = None
        self._observers = {event: [] for event in WORKER_EVENTS}
        self._fatal_error = None
        self._termination_error = None
        self._is_closed = False

    @property
    def status(self) -> WorkerStatus:
        """Current lifecycle state.

        :returns: Session status.
        """
        with self._lock:
            return self._status

    @property
    def instance(self) -> object:
        """Host-side unit instance, or ``None`` before ``start``.

        :returns: Unit instance.
        """
        return self._instance

    @property
    def registration(self) -> UnitRegistration:
        return self._registration

    def add_observer(self, event: str, observer: Callable[..., Any]) -> None:
        """Subscribe a callable to a lifecycle event.

        ``exit`` observers receive the exit code, ``error`` and
        ``message-error`` observers the exception, ``message`` observers the
        raw message; ``online`` and ``ready`` observers take no arguments.

        :param event: Event name.
        :param observer: Callable to notify.
        :raises ValueError: If ``event`` is unknown.
        """
        if event not in WORKER_EVENTS:
            raise ValueError(f"Unknown worker event {event!r}")
        with self._lock:
            self._observers[event].append(observer)

    def _notify(self, event: str, *args: object) -> None:
        with self._lock:
            observers: list[Callable[..., Any]] = list(self._observers[event])
        instance: object = self._instance
        if instance is not None:
            for name in self._registration.event_handlers.get(event, ()):
                observers.append(getattr(instance, name))
        for observer in observers:
            try:
                observer(*args)
            except Exception:
                logger.exception("Worker observer for %r failed", event)

    def start(self, *args: object, **kwargs: object) -> Any:
        """Construct the host instance, spawn the worker, and wait for ``ready``.

        For struct units a first bytes-like argument is taken as the initial
        contents of the struct; remaining arguments go to ``__init__``.

        :returns: Host-side unit instance with remote method stubs installed.
        :raises WorkerInitError: If the worker fails to construct or initialize.
        :raises TandemProtocolError: If the worker does not become ready in time.
        """
        with self._lock:
            if self._handle is not None or self._is_closed is True:
                raise TandemProtocolError("Session was already started")

        registration: UnitRegistration = self._registration
        call_args: list[object] = list(args)
        call_kwargs: dict[str, object] = dict(kwargs)
        run_init: bool = True
        if registration.struct_layout is not None:
            size: int = registration.struct_layout.size
            image: bytes | None = None
            if len(call_args) > 0 and isinstance(call_args[0], _BUFFER_TYPES) is True:
                image = bytes(call_args.pop(0))
                if len(image) < size:
                    raise InvalidBufferSizeError(registration.cls.__qualname__, size, len(image))
            self._unit_region = create_region(size)
            if image is not None:
                self._unit_region.buf[:] = image[:size]
                run_init = False

        self._share_constructor_arguments(call_args, call_kwargs)

        if self._unit_region is not None:
            self._instance = construct_bound(
                registration.cls,
                self._unit_region.buf,
                tuple(call_args),
                call_kwargs,
                run_init=run_init,
            )
        else:
            self._instance = registration.cls(*call_args, **call_kwargs)

        encoded_args, encoded_kwargs = encode_args(tuple(call_args), call_kwargs, registration.constructor)
        region_info: tuple[str, int] | None = None
        if self._unit_region is not None:
            region_info = (self._unit_region.name, self._unit_region.size)
        init_payload: dict[str, object] = {
            "entry": registration.entry_location,
            "unit_id": registration.unit_id,
            "unit_region": region_info,
            "run_init": run_init,
            "args": encoded_args,
            "kwargs": encoded_kwargs,
        }

        handle: ContextHandle = self._host.open(init_payload)
        with self._lock:
            self._handle = handle
        reader: threading.Thread = threading.Thread(
            target=self._read_loop,
            name=f"tandem-reader-{registration.unit_id}",
            daemon=True,
        )
        self._reader = reader
        reader.start()
        atexit.register(self._finalize_at_exit)
        self._notify("online")

        try:
            self._ready.result(timeout=self._start_timeout)
        except concurrent.futures.TimeoutError as exc:
            self.finalize()
            self.wait_closed()
            raise TandemProtocolError(
                f"Worker {registration.unit_id} did not become ready within {self._start_timeout} seconds"
            ) from exc
        except TandemError:
            self._close_context()
            raise

        self._install_stubs()
        logger.debug("Worker %s is ready", registration.unit_id)
        return self._instance

    def _share_constructor_arguments(self, args: list[object], kwargs: dict[str, object]) -> None:
        """Move ``Shared()`` constructor arguments into shared memory.

        :param args: Positional constructor arguments, updated in place.
        :param kwargs: Keyword constructor arguments, updated in place.
        """
        constructor: CallableDescriptors = self._registration.constructor
        for parameter in constructor.shared_parameters():
            position: int | None = constructor.position_of(parameter.name)
            if position is not None and position < len(args):
                extra_size: int = compute_extra_size(args[position])
                if extra_size > 0:
                    logger.debug("Sharing %d bytes for constructor argument %s", extra_size, parameter.name)
                    args[position] = materialize_shared(args[position])
                continue
            if parameter.name in kwargs:
                extra_size = compute_extra_size(kwargs[parameter.name])
                if extra_size > 0:
                    logger.debug("Sharing %d bytes for constructor argument %s", extra_size, parameter.name)
                    kwargs[parameter.name] = materialize_shared(kwargs[parameter.name])

    def _install_stubs(self) -> None:
        instance: object = self._instance
        for name in self._registration.methods:
            setattr(instance, name, _RemoteMethod(self, name))
        setattr(instance, "finalize", self.finalize)
        setattr(instance, "worker_status", lambda: self.status)
        setattr(instance, SESSION_ATTR, self)

    def call(self, method_name: str, *args: object, **kwargs: object) -> Future:
        """Invoke a worker method.

        :param method_name: Name of a ``worker_method``.
        :returns: Future settled with the decoded result; already failed when
            the session is not ready or the arguments cannot be encoded.
        """
        descriptors: CallableDescriptors | None = self._registration.methods.get(method_name)
        if descriptors is None:
            return _failed_future(MethodNotRemoteError(method_name))

        with self._lock:
            if self._status is not WorkerStatus.READY:
                return _failed_future(self._current_termination_error())
        try:
            encoded_args, encoded_kwargs = encode_args(args, kwargs, descriptors)
        except Exception as exc:
            return _failed_future(exc)

        with self._lock:
            if self._status is not WorkerStatus.READY:
                return _failed_future(self._current_termination_error())
            call_id: int = self._next_call_id
            self._next_call_id += 1
            pending: PendingCall = PendingCall(call_id, method_name)
            self._pending[call_id] = pending

        message: dict[str, object] = build_message(
            MSG_INVOKE,
            id=call_id,
            method=method_name,
            args=encoded_args,
            kwargs=encoded_kwargs,
        )
        try:
            self._send(message)
        except Exception as exc:
            # pickling failures leave the channel usable; only this call fails
            with self._lock:
                self._pending.pop(call_id, None)
            if pending.future.done() is False:
                pending.future.set_exception(exc)
        return pending.future

    def _current_termination_error(self) -> TandemError:
        status: WorkerStatus = self._status
        if status is WorkerStatus.FINALIZED:
            return SessionFinalizedError()
        if self._termination_error is not None:
            return self._termination_error
        if status is WorkerStatus.INIT_ERROR:
            return WorkerInitError("Worker failed to initialize")
        return TandemProtocolError(f"Worker is not ready (status {status.value})")

    def _send(self, message: dict[str, object]) -> None:
        """Send one message to the worker.

        :param message: Message dictionary.
        :raises TandemProtocolError: If the channel is closed.
        """
        handle: ContextHandle | None = self._handle
        if handle is None:
            raise TandemProtocolError("Session is not started")
        with self._send_lock:
            try:
                handle.connection.send(message)
            except (BrokenPipeError, EOFError, OSError) as exc:
                raise TandemProtocolError("Failed to send message to worker process") from exc

    def _read_loop(self) -> None:
        handle: ContextHandle | None = self._handle
        if handle is None:
            return
        while True:
            try:
                incoming: object = handle.connection.recv()
            except (EOFError, OSError):
                break
            except (pickle.UnpicklingError, AttributeError, ImportError, ValueError, TypeError) as exc:
                logger.warning("Undecodable message from worker: %s", exc)
                self._notify("message-error", exc)
                continue

            self._notify("message", incoming)
            try:
                self._dispatch(incoming)
            except (TandemProtocolError, TransportError) as exc:
                logger.warning("Malformed message from worker: %s", exc)
                self._notify("message-error", exc)
        self._on_channel_closed()

    def _dispatch(self, message: dict[str, object]) -> None:
        """Handle one worker message.

        :param message: Message dictionary.
        """
        message_type: str = require_message_type(message, WORKER_MESSAGE_TYPES)
        if message_type == MSG_RESULT:
            self._handle_result(message)
        elif message_type == MSG_CALLBACK_INVOKE:
            self._handle_callback(message)
        elif message_type == MSG_READY:
            with self._lock:
                became_ready: bool = self._status is WorkerStatus.INITIALIZING
                if became_ready is True:
                    self._status = WorkerStatus.READY
            if became_ready is True:
                self._ready.set_result(None)
                self._notify("ready")
        elif message_type == MSG_INIT_ERROR:
            cause: TandemError = error_from_payload(message.get("error"))
            error: WorkerInitError = WorkerInitError(f"Worker failed to initialize: {cause}")
            error.__cause__ = cause
            with self._lock:
                if self._status is WorkerStatus.INITIALIZING:
                    self._status = WorkerStatus.INIT_ERROR
                    self._termination_error = error
            if self._ready.done() is False:
                self._ready.set_exception(error)
        elif message_type == MSG_FINALIZED:
            with self._lock:
                was_live: bool = self._status is WorkerStatus.READY
                if was_live is True:
                    self._status = WorkerStatus.FINALIZED
                pending: list[PendingCall] = self._drain_pending()
            for entry in pending:
                entry.future.set_exception(SessionFinalizedError())
        elif message_type == MSG_FATAL:
            fatal: TandemError = error_from_payload(message.get("error"))
            with self._lock:
                self._fatal_error = fatal
            self._notify("error", fatal)

    def _drain_pending(self) -> list[PendingCall]:
        pending: list[PendingCall] = list(self._pending.values())
        self._pending.clear()
        return pending

    def _handle_result(self, message: dict[str, object]) -> None:
        call_id: int = require_int_field(message, "id")
        with self._lock:
            pending: PendingCall | None = self._pending.pop(call_id, None)
        if pending is None:
            logger.warning("Dropping result for unknown call id %d", call_id)
            return
        if message.get("ok") is not True:
            pending.future.set_exception(error_from_payload(message.get("error")))
            return
        descriptors: CallableDescriptors = self._registration.methods[pending.method_name]
        try:
            value: object = decode_return(message.get("result"), descriptors)
        except Exception as exc:
            pending.future.set_exception(exc)
            return
        pending.future.set_result(value)

    def _handle_callback(self, message: dict[str, object]) -> None:
        """Run a ``worker_callback`` on the host instance and reply.

        :param message: ``callback-invoke`` message.
        """
        call_id: int = require_int_field(message, "id")
        reply: dict[str, object]
        try:
            method_name: str = require_str_field(message, "method")
            descriptors: CallableDescriptors | None = self._registration.callbacks.get(method_name)
            if descriptors is None:
                raise MethodNotCallbackError(method_name)
            args, kwargs = decode_args(message.get("args", []), message.get("kwargs", {}), descriptors)
            result: object = settle_awaitable(getattr(self._instance, method_name)(*args, **kwargs))
            reply = build_message(MSG_CALLBACK_RESULT, id=call_id, ok=True, result=encode_return(result, descriptors))
        except Exception as exc:
            reply = build_message(MSG_CALLBACK_RESULT, id=call_id, ok=False, error=serialize_error(exc))
        try:
            self._send(reply)
        except TandemProtocolError:
            logger.debug("Dropping callback result %d; worker channel closed", call_id)
        except Exception as exc:
            failure: dict[str, object] = build_message(MSG_CALLBACK_RESULT, id=call_id, ok=False, error=serialize_error(exc))
            try:
                self._send(failure)
            except TandemProtocolError:
                logger.debug("Dropping callback result %d; worker channel closed", call_id)

    def _on_channel_closed(self) -> None:
        handle: ContextHandle | None = self._handle
        exit_code: int | None = None
        if handle is not None:
            handle.join(timeout=self._finalize_grace_seconds)
            exit_code = handle.exitcode

        error: TandemError | None = None
        with self._lock:
            status: WorkerStatus = self._status
            if status is WorkerStatus.READY or status is WorkerStatus.INITIALIZING:
                if self._fatal_error is not None:
                    self._status = WorkerStatus.WORKER_ERROR
                    error = WorkerCrashedError(f"Worker crashed: {self._fatal_error}", exit_code)
                    error.__cause__ = self._fatal_error
                else:
                    self._status = WorkerStatus.EXITED
                    error = WorkerExitedError(f"Worker exited with code {exit_code}", exit_code)
                self._termination_error = error
                logger.debug("Worker %s ended with status %s", self._registration.unit_id, self._status.value)
            pending: list[PendingCall] = self._drain_pending()

        termination: TandemError = error if error is not None else self._current_termination_error()
        if self._ready.done() is False:
            self._ready.set_exception(termination)
        for entry in pending:
            entry.future.set_exception(termination)
        self._notify("exit", exit_code)

    def finalize(self) -> None:
        """Stop the worker and reject every pending call.

        Pending calls fail with ``SessionFinalizedError`` immediately, without
        waiting for the worker to acknowledge. The worker process is reaped on a
        background thread; use ``wait_closed`` to block until it is gone.
        Calling ``finalize`` again is a no-op.
        """
        with self._lock:
            if self._is_closed is True:
                return
            self._is_closed = True
            was_live: bool = self._status is WorkerStatus.READY or self._status is WorkerStatus.INITIALIZING
            if was_live is True:
                self._status = WorkerStatus.FINALIZED
            pending: list[PendingCall] = self._drain_pending()
            handle: ContextHandle | None = self._handle

        for entry in pending:
            entry.future.set_exception(SessionFinalizedError())
        if self._ready.done() is False:
            self._ready.set_exception(SessionFinalizedError())

        if handle is not None and was_live is True:
            try:
                self._send(build_message(MSG_FINALIZE))
            except TandemProtocolError:
                logger.debug("Worker channel already closed during finalize")

        closer: threading.Thread = threading.Thread(
            target=self._close_context,
            name=f"tandem-closer-{self._registration.unit_id}",
            daemon=True,
        )
        with self._lock:
            self._closer = closer
        closer.start()

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the worker process of a finalized session has been reaped.

        :param timeout: Seconds to wait; ``None`` waits without limit.
        :returns: ``True`` when no reaping is still in progress.
        """
        closer: threading.Thread | None = self._closer
        if closer is None:
            return True
        if closer is not threading.current_thread():
            closer.join(timeout=timeout)
        return closer.is_alive() is False

    def _finalize_at_exit(self) -> None:
        self.finalize()
        self.wait_closed()

    def _close_context(self) -> None:
        """Wait for the worker process to exit, terminating it after the grace period."""
        with self._lock:
            self._is_closed = True
            handle: ContextHandle | None = self._handle
        atexit.unregister(self._finalize_at_exit)
        if handle is None:
            return

        handle.join(timeout=self._finalize_grace_seconds)
        if handle.is_alive() is True:
            logger.debug("Terminating worker %s after grace period", self._registration.unit_id)
            handle.terminate()
            handle.join(timeout=self._finalize_grace_seconds)

        reader: threading.Thread | None = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=self._finalize_grace_seconds)
        try:
            handle.connection.close()
        except OSError:
            pass

    def __enter__(self) -> "WorkerSession":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.finalize()

    def __repr__(self) -> str:
        return f"WorkerSession({self._registration.unit_id!r}, status={self.status.value})"


def session_of(instance: object) -> WorkerSession:
    """Return the session behind a unit instance created by ``init_worker``.

    :param instance: Host-side unit instance.
    :returns: Owning session.
    :raises TandemProtocolError: If ``instance`` did not come from a session.
    """
    session: object = getattr(instance, SESSION_ATTR, None)
    if isinstance(session, WorkerSession) is False:
        raise TandemProtocolError("Object is not a worker unit instance")
    return session
