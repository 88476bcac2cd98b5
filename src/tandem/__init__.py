"""Public package API for tandem."""

from tandem.api import init_worker
from tandem.api import run_in_worker
from tandem.api import to_shared
from tandem.descriptors import Shared
from tandem.descriptors import Suppress
from tandem.descriptors import TransportCodec
from tandem.descriptors import TransportType
from tandem.errors import CircularReferenceError
from tandem.errors import CircularTypeReferenceError
from tandem.errors import InvalidBufferSizeError
from tandem.errors import MethodNotCallbackError
from tandem.errors import MethodNotRemoteError
from tandem.errors import SessionFinalizedError
from tandem.errors import TandemError
from tandem.errors import TandemProtocolError
from tandem.errors import TandemRemoteError
from tandem.errors import TransportError
from tandem.errors import TypeResolutionError
from tandem.errors import UnitNotRegisteredError
from tandem.errors import UnshareableTypeError
from tandem.errors import WorkerCrashedError
from tandem.errors import WorkerExitedError
from tandem.errors import WorkerInitError
from tandem.errors import WorkerTerminatedError
from tandem.protocol import WorkerStatus
from tandem.regions import SharedRegion
from tandem.regions import create_region
from tandem.registry import define_worker
from tandem.registry import on_worker_error
from tandem.registry import on_worker_event
from tandem.registry import on_worker_exit
from tandem.registry import worker_callback
from tandem.registry import worker_finalize
from tandem.registry import worker_init
from tandem.registry import worker_method
from tandem.runtime import WorkerSession
from tandem.runtime import session_of
from tandem.structs import register_struct_factory

__all__: list[str] = [
    "init_worker",
    "run_in_worker",
    "to_shared",
    "define_worker",
    "worker_method",
    "worker_callback",
    "worker_init",
    "worker_finalize",
    "on_worker_event",
    "on_worker_exit",
    "on_worker_error",
    "register_struct_factory",
    "session_of",
    "create_region",
    "Shared",
    "SharedRegion",
    "Suppress",
    "TransportCodec",
    "TransportType",
    "WorkerSession",
    "WorkerStatus",
    "CircularReferenceError",
    "CircularTypeReferenceError",
    "InvalidBufferSizeError",
    "MethodNotCallbackError",
    "MethodNotRemoteError",
    "SessionFinalizedError",
    "TandemError",
    "TandemProtocolError",
    "TandemRemoteError",
    "TransportError",
    "TypeResolutionError",
    "UnitNotRegisteredError",
    "UnshareableTypeError",
    "WorkerCrashedError",
    "WorkerExitedError",
    "WorkerInitError",
    "WorkerTerminatedError",
]
