"""User-facing API entrypoints for tandem."""

from collections.abc import Callable
from typing import Any
from typing import TypeVar

from tandem.runtime import DEFAULT_FINALIZE_GRACE_SECONDS
from tandem.runtime import DEFAULT_START_TIMEOUT_SECONDS
from tandem.runtime import WorkerSession
from tandem.shared import to_shared as _to_shared
from tandem.transport import settle_awaitable

T = TypeVar("T")


def init_worker(
    cls: type[T],
    *args: object,
    start_timeout: float = DEFAULT_START_TIMEOUT_SECONDS,
    finalize_grace_seconds: float = DEFAULT_FINALIZE_GRACE_SECONDS,
    **kwargs: object,
) -> T:
    """Start a worker process for a unit class and return its host-side instance.

    Methods decorated with ``worker_method`` on the returned instance run in
    the worker and return ``concurrent.futures.Future`` objects. The instance
    also gains ``finalize()`` and ``worker_status()``.

    :param cls: Class decorated with ``define_worker``.
    :param args: Constructor positional arguments.
    :param start_timeout: Seconds to wait for the worker to become ready.
    :param finalize_grace_seconds: Seconds to wait for a clean exit on finalize.
    :param kwargs: Constructor keyword arguments.
    :returns: Host-side unit instance.
    :raises UnitNotRegisteredError: If ``cls`` is not a registered unit.
    :raises WorkerInitError: If the worker fails to construct or initialize.
    """
    session: WorkerSession = WorkerSession(
        cls,
        start_timeout=start_timeout,
        finalize_grace_seconds=finalize_grace_seconds,
    )
    return session.start(*args, **kwargs)


def run_in_worker(cls: type[T], fn: Callable[[T], Any], *args: object, **kwargs: object) -> Any:
    """Start a worker, pass its instance to ``fn``, and always finalize it.

    :param cls: Class decorated with ``define_worker``.
    :param fn: Callable receiving the host-side instance; may be async.
    :param args: Constructor positional arguments.
    :param kwargs: Constructor keyword arguments.
    :returns: Return value of ``fn``.
    """
    session: WorkerSession = WorkerSession(cls)
    try:
        instance: T = session.start(*args, **kwargs)
        return settle_awaitable(fn(instance))
    finally:
        session.finalize()


def to_shared(value: T) -> T:
    """Move the buffers and structs reachable from ``value`` into shared memory.

    Buffers and structs come back as new objects; plain instances, lists and
    dicts are updated in place. Values already backed by shared memory are returned
    unchanged.

    :param value: Value to share.
    :returns: Shared value.
    """
    return _to_shared(value)
