"""Worker-process loop that hosts one unit instance."""

import asyncio
import collections
import importlib
import inspect
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from multiprocessing.connection import Connection
from typing import Any

from tandem.errors import MethodNotRemoteError
from tandem.errors import SessionFinalizedError
from tandem.errors import TandemProtocolError
from tandem.protocol import HOST_MESSAGE_TYPES
from tandem.protocol import MSG_CALLBACK_INVOKE
from tandem.protocol import MSG_CALLBACK_RESULT
from tandem.protocol import MSG_FATAL
from tandem.protocol import MSG_FINALIZE
from tandem.protocol import MSG_FINALIZED
from tandem.protocol import MSG_INIT_ERROR
from tandem.protocol import MSG_INVOKE
from tandem.protocol import MSG_READY
from tandem.protocol import MSG_RESULT
from tandem.protocol import PendingCall
from tandem.protocol import build_message
from tandem.protocol import error_from_payload
from tandem.protocol import require_int_field
from tandem.protocol import require_message_type
from tandem.protocol import require_str_field
from tandem.protocol import serialize_error
from tandem.regions import SharedRegion
from tandem.regions import attach_region
from tandem.regions import release_owned_regions
from tandem.registry import UnitRegistration
from tandem.registry import get_unit_registration
from tandem.resolver import CallableDescriptors
from tandem.resolver import resolve_qualname
from tandem.structs import construct_bound
from tandem.transport import decode_args
from tandem.transport import decode_return
from tandem.transport import encode_args
from tandem.transport import encode_return

logger = logging.getLogger(__name__)


def parse_entry(entry: str) -> tuple[str, str]:
    """Parse ``module.path:QualName`` entry locations.

    :param entry: Raw entry location.
    :returns: Tuple of ``(module_name, qualname)``.
    :raises ValueError: If the entry format is invalid.
    """
    parts: list[str] = entry.split(":")
    if len(parts) != 2:
        raise ValueError("Entry must use module.path:QualName format")

    module_name: str = parts[0].strip()
    qualname: str = parts[1].strip()
    if len(module_name) == 0:
        raise ValueError("Module path in entry cannot be empty")
    if len(qualname) == 0:
        raise ValueError("Class name in entry cannot be empty")
    return module_name, qualname


async def _await_value(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class _HostCallbackStub:
    """Replaces a ``worker_callback`` method inside the worker."""

    _runtime: "WorkerRuntime"
    _method_name: str
    _descriptors: CallableDescriptors

    def __init__(self, runtime: "WorkerRuntime", method_name: str, descriptors: CallableDescriptors) -> None:
        self._runtime = runtime
        self._method_name = method_name
        self._descriptors = descriptors

    def __call__(self, *args: object, **kwargs: object) -> object:
        """Run the callback on the host instance and wait for its result.

        :returns: Decoded callback return value.
        """
        return self._runtime.call_host(self._method_name, self._descriptors, args, kwargs)

    def __repr__(self) -> str:
        return f"<host callback {self._method_name}>"


class _FinalizingMethod:
    """Wraps a ``worker_finalize`` method so the worker stops after it returns."""

    _runtime: "WorkerRuntime"
    _method: Callable[..., Any]

    def __init__(self, runtime: "WorkerRuntime", method: Callable[..., Any]) -> None:
        self._runtime = runtime
        self._method = method

    def __call__(self, *args: object, **kwargs: object) -> object:
        try:
            result: object = self._method(*args, **kwargs)
        except BaseException:
            self._runtime.request_finalize()
            raise
        if inspect.isawaitable(result) is True:
            return self._finish_async(result)
        self._runtime.request_finalize()
        return result

    async def _finish_async(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        finally:
            self._runtime.request_finalize()


class WorkerRuntime:
    """Own worker-side protocol handling for one unit instance."""

    _connection: Connection
    _init_payload: dict[str, object]
    _registration: UnitRegistration | None
    _instance: object
    _deferred: collections.deque
    _pending_callbacks: dict[int, PendingCall]
    _next_callback_id: int
    _finalize_requested: bool
    _shutdown: bool
    _loop: asyncio.AbstractEventLoop | None

    def __init__(self, connection: Connection, init_payload: dict[str, object]) -> None:
        """Initialize worker runtime state.

        :param connection: Bidirectional IPC connection to the host process.
        :param init_payload: Unit location, region and encoded constructor arguments.
        """
        self._connection = connection
        self._init_payload = init_payload
        self._registration = None
        self._instance = None
        self._deferred = collections.deque()
        self._pending_callbacks = {}
        self._next_callback_id = 1
        self._finalize_requested = False
        self._shutdown = False
        self._loop = None

    def run(self) -> None:
        """Construct the unit, announce it, and serve host messages until finalized."""
        try:
            started: bool = self._start_unit()
            if started is True:
                self._serve()
        except Exception as exc:
            logger.exception("Worker loop failed")
            self._send(build_message(MSG_FATAL, error=serialize_error(exc)))
            raise SystemExit(1) from exc
        finally:
            self._teardown()

    def request_finalize(self) -> None:
        """Stop the worker once the current host call has been answered."""
        self._finalize_requested = True

    def _send(self, message: dict[str, object]) -> None:
        try:
            self._connection.send(message)
        except (BrokenPipeError, EOFError, OSError):
            return

    def _resolve(self, value: object) -> object:
        """Drive awaitables to completion on the worker's private event loop.

        :param value: Method result.
        :returns: Awaited result, or ``value`` unchanged.
        """
        if inspect.isawaitable(value) is False:
            return value
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
        return self._loop.run_until_complete(_await_value(value))

    def _start_unit(self) -> bool:
        """Construct the unit and run its init hooks.

        :returns: ``True`` when ``ready`` was sent.
        """
        try:
            self._construct()
            registration: UnitRegistration = self._require_registration()
            for name in registration.init_methods:
                self._resolve(getattr(self._instance, name)())
        except Exception as exc:
            logger.debug("Worker unit failed to start", exc_info=True)
            self._send(build_message(MSG_INIT_ERROR, error=serialize_error(exc)))
            return False
        self._send(build_message(MSG_READY))
        return True

    def _require_registration(self) -> UnitRegistration:
        registration: UnitRegistration | None = self._registration
        if registration is None:
            raise TandemProtocolError("Worker unit is not constructed")
        return registration

    def _construct(self) -> None:
        payload: dict[str, object] = self._init_payload
        entry: object = payload.get("entry")
        if isinstance(entry, str) is False:
            raise TandemProtocolError("Init payload entry must be a string")
        module_name, qualname = parse_entry(entry)
        module: object = importlib.import_module(module_name)
        cls: object = resolve_qualname(module, qualname)
        if isinstance(cls, type) is False:
            raise TypeError(f"{entry} does not name a class")

        registration: UnitRegistration = get_unit_registration(cls)
        expected_id: object = payload.get("unit_id")
        if registration.unit_id != expected_id:
            raise TandemProtocolError(
                f"Worker unit id mismatch: host sent {expected_id!r}, worker registered {registration.unit_id!r}"
            )
        self._registration = registration

        args, kwargs = decode_args(payload.get("args", []), payload.get("kwargs", {}), registration.constructor)
        region_info: object = payload.get("unit_region")
        if registration.is_struct is True:
            if isinstance(region_info, tuple) is False:
                raise TandemProtocolError("Struct units require a shared region in the init payload")
            region_name, region_size = region_info
            region: SharedRegion = attach_region(region_name, region_size)
            run_init: bool = payload.get("run_init", True) is True
            self._instance = construct_bound(cls, region.buf, tuple(args), kwargs, run_init=run_init)
        else:
            self._instance = cls(*args, **kwargs)

        for name, descriptors in registration.callbacks.items():
            setattr(self._instance, name, _HostCallbackStub(self, name, descriptors))
        for name in registration.finalize_methods:
            setattr(self._instance, name, _FinalizingMethod(self, getattr(self._instance, name)))

    def _next_message(self) -> object:
        if len(self._deferred) > 0:
            return self._deferred.popleft()
        return self._connection.recv()

    def _serve(self) -> None:
        while self._shutdown is False:
            try:
                incoming: object = self._next_message()
            except EOFError:
                break

            message_type: str = require_message_type(incoming, HOST_MESSAGE_TYPES)
            if message_type == MSG_INVOKE:
                self._handle_invoke(incoming)
            elif message_type == MSG_FINALIZE:
                self._shutdown = True
            else:
                logger.warning("Ignoring stale callback result %r", incoming.get("id"))

            if self._finalize_requested is True:
                self._shutdown = True

        self._send(build_message(MSG_FINALIZED))

    def _handle_invoke(self, message: dict[str, object]) -> None:
        """Run one forward call and reply with its correlated result.

        :param message: ``invoke`` message.
        """
        call_id: int = require_int_field(message, "id")
        registration: UnitRegistration = self._require_registration()
        try:
            method_name: str = require_str_field(message, "method")
            descriptors: CallableDescriptors | None = registration.methods.get(method_name)
            if descriptors is None:
                raise MethodNotRemoteError(method_name)
            args, kwargs = decode_args(message.get("args", []), message.get("kwargs", {}), descriptors)
            method: Callable[..., Any] = getattr(self._instance, method_name)
            result: object = self._resolve(method(*args, **kwargs))
            encoded: object = encode_return(result, descriptors)
        except Exception as exc:
            self._send(build_message(MSG_RESULT, id=call_id, ok=False, error=serialize_error(exc)))
            return
        try:
            self._connection.send(build_message(MSG_RESULT, id=call_id, ok=True, result=encoded))
        except (BrokenPipeError, EOFError, OSError):
            return
        except Exception as exc:
            # the result could not be pickled; nothing was written to the channel
            self._send(build_message(MSG_RESULT, id=call_id, ok=False, error=serialize_error(exc)))

    def call_host(
        self,
        method_name: str,
        descriptors: CallableDescriptors,
        args: tuple[object, ...],
        kwargs: dict[str, object],
    ) -> object:
        """Invoke a callback on the host instance and block until it answers.

        :param method_name: Callback method name.
        :param descriptors: Callback metadata.
        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Decoded callback return value.
        :raises SessionFinalizedError: If the host finalized the session.
        """
        if self._shutdown is True:
            raise SessionFinalizedError()
        encoded_args, encoded_kwargs = encode_args(args, kwargs, descriptors)
        call_id: int = self._next_callback_id
        self._next_callback_id += 1
        pending: PendingCall = PendingCall(call_id, method_name)
        self._pending_callbacks[call_id] = pending
        message: dict[str, object] = build_message(
            MSG_CALLBACK_INVOKE,
            id=call_id,
            method=method_name,
            args=encoded_args,
            kwargs=encoded_kwargs,
        )
        try:
            self._connection.send(message)
        except (BrokenPipeError, EOFError, OSError) as exc:
            self._pending_callbacks.pop(call_id, None)
            raise TandemProtocolError("Host connection closed") from exc
        except Exception:
            self._pending_callbacks.pop(call_id, None)
            raise
        self._wait_for_callback(pending)
        return decode_return(pending.future.result(), descriptors)

    def _wait_for_callback(self, pending: PendingCall) -> None:
        """Service the channel until ``pending`` settles.

        Forward calls that arrive meanwhile are queued and run after the
        current call completes.

        :param pending: Callback waiting for its result.
        """
        while pending.future.done() is False:
            try:
                incoming: object = self._connection.recv()
            except EOFError:
                self._shutdown = True
                self._fail_pending_callbacks(TandemProtocolError("Host connection closed"))
                return

            message_type: str = require_message_type(incoming, HOST_MESSAGE_TYPES)
            if message_type == MSG_INVOKE:
                self._deferred.append(incoming)
                continue
            if message_type == MSG_FINALIZE:
                self._shutdown = True
                self._fail_pending_callbacks(SessionFinalizedError())
                return

            call_id: int = require_int_field(incoming, "id")
            entry: PendingCall | None = self._pending_callbacks.pop(call_id, None)
            if entry is None:
                logger.warning("Ignoring callback result for unknown id %d", call_id)
                continue
            if incoming.get("ok") is True:
                entry.future.set_result(incoming.get("result"))
            else:
                entry.future.set_exception(error_from_payload(incoming.get("error")))

    def _fail_pending_callbacks(self, error: Exception) -> None:
        pending: list[PendingCall] = list(self._pending_callbacks.values())
        self._pending_callbacks.clear()
        for entry in pending:
            entry.future.set_exception(error)

    def _teardown(self) -> None:
        self._pending_callbacks.clear()
        self._deferred.clear()
        self._instance = None
        if self._loop is not None:
            self._loop.close()
            self._loop = None
        release_owned_regions()
        try:
            self._connection.close()
        except OSError:
            pass


def worker_entry(connection: Connection, init_payload: dict[str, object]) -> None:
    """Run the worker process message loop.

    :param connection: IPC connection from the host process.
    :param init_payload: Unit location, region and encoded constructor arguments.
    """
    runtime: WorkerRuntime = WorkerRuntime(connection, init_payload)
    runtime.run()
