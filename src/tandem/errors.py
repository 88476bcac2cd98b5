"""Custom error types for tandem."""


class TandemError(Exception):
    """Base class for all tandem errors."""


class TransportError(TandemError):
    """Raised when a value cannot be encoded for, or decoded from, the wire."""


class CircularReferenceError(TransportError):
    """Raised when a value graph contains a cycle."""

    path: str

    def __init__(self, path: str) -> None:
        """Initialize a cycle error.

        :param path: Location of the repeated value, such as ``arg[0].next``.
        """
        self.path = path
        super().__init__(f"Circular reference detected at {path}")


class TypeResolutionError(TandemError):
    """Raised when annotations for a type or callable cannot be evaluated."""


class CircularTypeReferenceError(TandemError):
    """Raised when a structural type scan runs into a type cycle."""

    type_path: tuple[str, ...]

    def __init__(self, type_path: tuple[str, ...]) -> None:
        """Initialize a type cycle error.

        :param type_path: Qualified type names from the scan root to the repeated type.
        """
        self.type_path = type_path
        joined: str = " -> ".join(type_path)
        super().__init__(f"Circular type reference detected: {joined}")


class UnshareableTypeError(TandemError):
    """Raised when a parameter marked shared has no shareable memory segments."""


class InvalidBufferSizeError(TandemError):
    """Raised when a buffer is too small for the struct bound to it."""

    required: int
    actual: int

    def __init__(self, type_name: str, required: int, actual: int) -> None:
        """Initialize a buffer size error.

        :param type_name: Struct type name.
        :param required: Byte size the struct needs.
        :param actual: Byte size that was supplied.
        """
        self.required = required
        self.actual = actual
        super().__init__(
            f"Buffer of {actual} bytes is too small for {type_name} "
            + f"(requires {required} bytes)"
        )


class TandemProtocolError(TandemError):
    """Raised for unexpected messages on the host/worker channel."""


class MethodNotRemoteError(TandemError):
    """Raised when a forward call names a method not marked ``worker_method``."""

    def __init__(self, method_name: str) -> None:
        """Initialize the error.

        :param method_name: Requested method name.
        """
        super().__init__(f"Method is not decorated with @worker_method: {method_name}")


class MethodNotCallbackError(TandemError):
    """Raised when a reverse call names a method not marked ``worker_callback``."""

    def __init__(self, method_name: str) -> None:
        """Initialize the error.

        :param method_name: Requested method name.
        """
        super().__init__(f"Method is not decorated with @worker_callback: {method_name}")


class SessionFinalizedError(TandemError):
    """Raised for calls that are pending at, or issued after, finalize."""

    def __init__(self, message: str = "Worker has been finalized") -> None:
        """Initialize the error.

        :param message: Error message.
        """
        super().__init__(message)


class WorkerTerminatedError(TandemError):
    """Raised for pending calls when the worker ends without a finalize request."""

    exit_code: int | None

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        """Initialize the error.

        :param message: Error message.
        :param exit_code: Worker process exit code when known.
        """
        self.exit_code = exit_code
        super().__init__(message)


class WorkerExitedError(WorkerTerminatedError):
    """Raised when the worker process exits on its own."""


class WorkerCrashedError(WorkerTerminatedError):
    """Raised when the worker loop reported a fatal error before exiting."""


class WorkerInitError(TandemError):
    """Raised when a worker fails to construct or initialize its unit."""


class UnitNotRegisteredError(TandemError):
    """Raised when a class without ``define_worker`` is used as a worker unit."""


class TandemRemoteError(TandemError):
    """Raised when the other side reports an exception."""

    remote_type_name: str
    remote_message: str
    remote_traceback: str

    def __init__(
        self,
        remote_type_name: str,
        remote_message: str,
        remote_traceback: str,
    ) -> None:
        """Initialize a remote exception wrapper.

        :param remote_type_name: Original remote exception type name.
        :param remote_message: Original remote exception message.
        :param remote_traceback: Original remote traceback text.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        self.remote_traceback = remote_traceback
        formatted: str = (
            f"Remote side raised {remote_type_name}: {remote_message}\n"
            + f"Remote traceback:\n{remote_traceback}"
        )
        super().__init__(formatted)
