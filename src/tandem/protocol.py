"""Message vocabulary shared by the host session and the worker loop."""

import enum
import traceback
from concurrent.futures import Future

from tandem import errors
from tandem.errors import TandemError
from tandem.errors import TandemProtocolError
from tandem.errors import TandemRemoteError

MSG_INVOKE: str = "invoke"
MSG_CALLBACK_RESULT: str = "callback-result"
MSG_FINALIZE: str = "finalize"
MSG_READY: str = "ready"
MSG_INIT_ERROR: str = "init-error"
MSG_RESULT: str = "result"
MSG_CALLBACK_INVOKE: str = "callback-invoke"
MSG_FINALIZED: str = "finalized"
MSG_FATAL: str = "fatal"

HOST_MESSAGE_TYPES: frozenset[str] = frozenset({MSG_INVOKE, MSG_CALLBACK_RESULT, MSG_FINALIZE})
WORKER_MESSAGE_TYPES: frozenset[str] = frozenset(
    {
        MSG_READY,
        MSG_INIT_ERROR,
        MSG_RESULT,
        MSG_CALLBACK_INVOKE,
        MSG_FINALIZED,
        MSG_FATAL,
    }
)

_REBUILDABLE_ERRORS: dict[str, type[TandemError]] = {
    "TandemProtocolError": errors.TandemProtocolError,
    "TransportError": errors.TransportError,
    "TypeResolutionError": errors.TypeResolutionError,
    "UnshareableTypeError": errors.UnshareableTypeError,
    "WorkerInitError": errors.WorkerInitError,
    "UnitNotRegisteredError": errors.UnitNotRegisteredError,
}


class WorkerStatus(enum.Enum):
    """Lifecycle states of one worker session."""

    INITIALIZING = "initializing"
    READY = "ready"
    INIT_ERROR = "init-error"
    WORKER_ERROR = "worker-error"
    EXITED = "exited"
    FINALIZED = "finalized"

    @property
    def is_terminal(self) -> bool:
        """Report whether no further calls can ever succeed.

        :returns: ``True`` for every state except initializing and ready.
        """
        return self not in (WorkerStatus.INITIALIZING, WorkerStatus.READY)


class PendingCall:
    """One outstanding request waiting for its correlated reply."""

    __slots__ = ("call_id", "method_name", "future")

    call_id: int
    method_name: str
    future: Future

    def __init__(self, call_id: int, method_name: str) -> None:
        """Initialize a pending call.

        :param call_id: Request identifier.
        :param method_name: Method the request targets.
        """
        self.call_id = call_id
        self.method_name = method_name
        self.future = Future()
        self.future.set_running_or_notify_cancel()

    def __repr__(self) -> str:
        return f"PendingCall({self.call_id}, {self.method_name!r})"


def serialize_error(exc: BaseException) -> dict[str, object]:
    """Serialize an exception into a wire payload.

    :param exc: Exception to describe.
    :returns: Payload with type name, message and formatted traceback.
    """
    if isinstance(exc, TandemRemoteError) is True:
        return {
            "error_type": exc.remote_type_name,
            "error_message": exc.remote_message,
            "stacktrace": exc.remote_traceback,
        }
    return {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
        "stacktrace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def error_from_payload(payload: object) -> TandemError:
    """Rebuild a local exception from a wire error payload.

    Errors raised by tandem itself keep their class; anything else becomes a
    ``TandemRemoteError`` carrying the original type name and traceback.

    :param payload: Error payload produced by ``serialize_error``.
    :returns: Exception instance to raise or set on a future.
    """
    if isinstance(payload, dict) is False:
        return TandemProtocolError(f"Error payload must be a dict, got {type(payload).__name__}")

    error_type_obj: object = payload.get("error_type", "Exception")
    error_message_obj: object = payload.get("error_message", "")
    stacktrace_obj: object = payload.get("stacktrace", "")

    error_type: str = "Exception"
    if isinstance(error_type_obj, str) is True:
        error_type = error_type_obj
    error_message: str = ""
    if isinstance(error_message_obj, str) is True:
        error_message = error_message_obj
    stacktrace: str = ""
    if isinstance(stacktrace_obj, str) is True:
        stacktrace = stacktrace_obj

    if error_type == "SessionFinalizedError":
        return errors.SessionFinalizedError(error_message)
    if error_type == "MethodNotRemoteError":
        return errors.MethodNotRemoteError(error_message.rpartition(": ")[2])
    if error_type == "MethodNotCallbackError":
        return errors.MethodNotCallbackError(error_message.rpartition(": ")[2])
    if error_type == "CircularReferenceError":
        return errors.CircularReferenceError(error_message.rpartition(" at ")[2])
    known: type[TandemError] | None = _REBUILDABLE_ERRORS.get(error_type)
    if known is not None:
        return known(f"{error_message}\nRemote traceback:\n{stacktrace}")
    return TandemRemoteError(error_type, error_message, stacktrace)


def build_message(message_type: str, **fields: object) -> dict[str, object]:
    """Build one protocol message.

    :param message_type: One of the ``MSG_*`` constants.
    :param fields: Message fields.
    :returns: Message dictionary.
    """
    message: dict[str, object] = {"type": message_type}
    message.update(fields)
    return message


def require_message_type(message: object, allowed: frozenset[str]) -> str:
    """Extract and validate the message type.

    :param message: Incoming message.
    :param allowed: Message types accepted by the receiving side.
    :returns: Message type.
    :raises TandemProtocolError: If the message is malformed.
    """
    if isinstance(message, dict) is False:
        raise TandemProtocolError("Message must be a dict")
    message_type: object = message.get("type")
    if isinstance(message_type, str) is False:
        raise TandemProtocolError("Message type must be a string")
    if message_type not in allowed:
        raise TandemProtocolError(f"Unexpected message type {message_type!r}")
    return message_type


def require_int_field(message: dict[str, object], key: str) -> int:
    """Extract and validate an integer field.

    :param message: Message dictionary.
    :param key: Field name.
    :returns: Integer field value.
    :raises TandemProtocolError: If the field is missing or invalid.
    """
    value: object = message.get(key)
    if isinstance(value, int) is False or isinstance(value, bool) is True:
        raise TandemProtocolError(f"{key} must be an integer")
    return value


def require_str_field(message: dict[str, object], key: str) -> str:
    """Extract and validate a string field.

    :param message: Message dictionary.
    :param key: Field name.
    :returns: String field value.
    :raises TandemProtocolError: If the field is missing or invalid.
    """
    value: object = message.get(key)
    if isinstance(value, str) is False:
        raise TandemProtocolError(f"{key} must be a string")
    return value
