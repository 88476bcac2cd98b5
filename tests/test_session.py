"""End-to-end tests that spawn real worker processes."""

import asyncio
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future

import pytest

from tandem import InvalidBufferSizeError
from tandem import MethodNotRemoteError
from tandem import SessionFinalizedError
from tandem import TandemRemoteError
from tandem import WorkerExitedError
from tandem import WorkerInitError
from tandem import WorkerSession
from tandem import WorkerStatus
from tandem import init_worker
from tandem import run_in_worker
from tandem import session_of
from tandem import to_shared
from tests.fixtures.units import BrokenInit
from tests.fixtures.units import ByteCell
from tests.fixtures.units import Counter
from tests.fixtures.units import Frame
from tests.fixtures.units import FrameSink
from tests.fixtures.units import Lifecycle
from tests.fixtures.units import Reporter

RESULT_TIMEOUT: float = 30.0


def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses.

    :param predicate: Condition to wait for.
    :param timeout: Maximum wait in seconds.
    :returns: Final predicate value.
    """
    deadline: float = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate() is True:
            return True
        time.sleep(0.02)
    return predicate()


def test_counter_increments_in_worker_process() -> None:
    counter = init_worker(Counter, 0)
    try:
        first: Future = counter.increment(1)
        assert first.result(timeout=RESULT_TIMEOUT) == 1
        assert counter.increment(2).result(timeout=RESULT_TIMEOUT) == 3
        assert counter.increment(3).result(timeout=RESULT_TIMEOUT) == 6
        assert counter.worker_pid().result(timeout=RESULT_TIMEOUT) != os.getpid()
        assert counter.value == 0
        assert counter.worker_status() is WorkerStatus.READY
    finally:
        counter.finalize()
    assert counter.worker_status() is WorkerStatus.FINALIZED


def test_concurrent_callers_get_their_own_results() -> None:
    counter = init_worker(Counter, 0)
    results: list[int] = []
    results_lock: threading.Lock = threading.Lock()

    def caller() -> None:
        value: int = counter.increment(1).result(timeout=RESULT_TIMEOUT)
        with results_lock:
            results.append(value)

    try:
        threads: list[threading.Thread] = [threading.Thread(target=caller) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=RESULT_TIMEOUT)
        assert sorted(results) == list(range(1, 9))
    finally:
        counter.finalize()


def test_async_worker_method_is_awaited() -> None:
    counter = init_worker(Counter)
    try:
        assert counter.async_double(21).result(timeout=RESULT_TIMEOUT) == 42
    finally:
        counter.finalize()


def test_remote_error_keeps_session_ready() -> None:
    counter = init_worker(Counter, 5)
    try:
        with pytest.raises(TandemRemoteError) as error_info:
            counter.fail("bad input").result(timeout=RESULT_TIMEOUT)
        assert error_info.value.remote_type_name == "ValueError"
        assert "bad input" in error_info.value.remote_message
        assert "Traceback" in error_info.value.remote_traceback
        assert counter.worker_status() is WorkerStatus.READY
        assert counter.increment(1).result(timeout=RESULT_TIMEOUT) == 6
    finally:
        counter.finalize()


def test_method_not_marked_remote_is_rejected() -> None:
    counter = init_worker(Counter)
    try:
        session: WorkerSession = session_of(counter)
        with pytest.raises(MethodNotRemoteError):
            session.call("local_only").result(timeout=RESULT_TIMEOUT)
        assert counter.local_only() == -1
    finally:
        counter.finalize()


def test_worker_exit_code_is_reported() -> None:
    counter = init_worker(Counter)
    session: WorkerSession = session_of(counter)
    exit_codes: list[object] = []
    session.add_observer("exit", exit_codes.append)
    try:
        with pytest.raises(WorkerExitedError) as error_info:
            counter.exit_with(42).result(timeout=RESULT_TIMEOUT)
        assert error_info.value.exit_code == 42
        assert session.status is WorkerStatus.EXITED
        assert _wait_for(lambda: exit_codes == [42]) is True

        late: Future = counter.increment(1)
        assert late.done() is True
        assert isinstance(late.exception(), WorkerExitedError) is True
    finally:
        counter.finalize()
    assert session.status is WorkerStatus.EXITED


def test_struct_unit_shares_memory_with_host_mirror() -> None:
    cell = init_worker(ByteCell, 0x10)
    try:
        assert cell.value == 0x10
        assert cell.get_value().result(timeout=RESULT_TIMEOUT) == 0x10
        assert cell.set_value(0x7F).result(timeout=RESULT_TIMEOUT) == 0x7F
        assert cell.value == 0x7F

        cell.value = 0x21
        assert cell.get_value().result(timeout=RESULT_TIMEOUT) == 0x21
    finally:
        cell.finalize()


def test_struct_unit_from_initial_image() -> None:
    cell = init_worker(ByteCell, b"\x33")
    try:
        assert cell.value == 0x33
        assert cell.get_value().result(timeout=RESULT_TIMEOUT) == 0x33
    finally:
        cell.finalize()


def test_struct_unit_rejects_short_image() -> None:
    with pytest.raises(InvalidBufferSizeError):
        init_worker(ByteCell, b"")


def test_shared_constructor_argument_aliases_worker_memory() -> None:
    frame: Frame = Frame(bytearray(b"\x00\x00\x00\x00"), "front")
    sink = init_worker(FrameSink, frame)
    try:
        assert isinstance(frame.pixels, memoryview) is True
        assert sink.frame is frame
        assert sink.fill(7).result(timeout=RESULT_TIMEOUT) == 4
        assert bytes(frame.pixels) == b"\x07\x07\x07\x07"
        assert sink.label().result(timeout=RESULT_TIMEOUT) == "front"
    finally:
        sink.finalize()


def test_callbacks_run_on_host_instance() -> None:
    reporter = init_worker(Reporter, "host")
    try:
        acknowledgments: object = reporter.run_reports(3).result(timeout=RESULT_TIMEOUT)
        assert acknowledgments == ["host:0", "host:1", "host:2"]
        assert reporter.seen == [0, 1, 2]
    finally:
        reporter.finalize()


def test_callback_error_reaches_worker_method_caller() -> None:
    reporter = init_worker(Reporter, "host")
    try:
        with pytest.raises(TandemRemoteError) as error_info:
            reporter.run_rejected(9).result(timeout=RESULT_TIMEOUT)
        assert error_info.value.remote_type_name == "KeyError"
        assert reporter.worker_status() is WorkerStatus.READY
    finally:
        reporter.finalize()


def test_init_hooks_run_in_order_before_ready() -> None:
    unit = init_worker(Lifecycle)
    try:
        assert unit.recorded().result(timeout=RESULT_TIMEOUT) == ["first", "second"]
        assert unit.steps == []
    finally:
        unit.finalize()
    assert _wait_for(lambda: unit.exit_codes == [0]) is True


def test_init_hook_failure_raises_worker_init_error() -> None:
    session: WorkerSession = WorkerSession(BrokenInit)
    with pytest.raises(WorkerInitError) as error_info:
        session.start()
    cause: BaseException | None = error_info.value.__cause__
    assert isinstance(cause, TandemRemoteError) is True
    assert cause.remote_type_name == "RuntimeError"
    assert session.status is WorkerStatus.INIT_ERROR
    assert isinstance(session.call("ping").exception(), WorkerInitError) is True


def test_worker_finalize_method_ends_session() -> None:
    unit = init_worker(Lifecycle)
    session: WorkerSession = session_of(unit)
    try:
        closing: Future = unit.close()
        queued: Future = unit.recorded()
        assert closing.result(timeout=RESULT_TIMEOUT) == "closed"
        with pytest.raises(SessionFinalizedError):
            queued.result(timeout=RESULT_TIMEOUT)
        assert _wait_for(lambda: session.status is WorkerStatus.FINALIZED) is True
        with pytest.raises(SessionFinalizedError):
            unit.recorded().result(timeout=RESULT_TIMEOUT)
        assert _wait_for(lambda: unit.exit_codes == [0]) is True
    finally:
        unit.finalize()


def test_worker_finalize_applies_to_nested_calls() -> None:
    unit = init_worker(Lifecycle)
    session: WorkerSession = session_of(unit)
    try:
        assert unit.close_from_inside().result(timeout=RESULT_TIMEOUT) == "closed"
        assert _wait_for(lambda: session.status is WorkerStatus.FINALIZED) is True
    finally:
        unit.finalize()


def test_finalize_is_idempotent_and_rejects_later_calls() -> None:
    counter = init_worker(Counter)
    counter.finalize()
    counter.finalize()
    late: Future = counter.increment(1)
    assert late.done() is True
    assert isinstance(late.exception(), SessionFinalizedError) is True
    assert str(late.exception()) == "Worker has been finalized"


def test_session_context_manager_finalizes() -> None:
    with WorkerSession(Counter) as session:
        counter = session.start(10)
        assert counter.increment(5).result(timeout=RESULT_TIMEOUT) == 15
    assert session.status is WorkerStatus.FINALIZED


def test_run_in_worker_always_finalizes() -> None:
    sessions: list[WorkerSession] = []

    def body(counter: Counter) -> int:
        sessions.append(session_of(counter))
        return counter.increment(5).result(timeout=RESULT_TIMEOUT)

    assert run_in_worker(Counter, body, 1) == 6
    assert sessions[0].status is WorkerStatus.FINALIZED


def test_run_in_worker_awaits_async_bodies() -> None:
    async def body(counter: Counter) -> int:
        return counter.increment(2).result(timeout=RESULT_TIMEOUT)

    assert run_in_worker(Counter, body, 40) == 42


def test_run_in_worker_inside_running_event_loop() -> None:
    async def body(counter: Counter) -> int:
        await asyncio.sleep(0)
        return counter.increment(3).result(timeout=RESULT_TIMEOUT)

    async def outer() -> int:
        return run_in_worker(Counter, body, 4)

    assert asyncio.run(outer()) == 7


def test_echoed_shared_buffer_aliases_the_original() -> None:
    shared: object = to_shared(bytearray(4))
    counter = init_worker(Counter)
    try:
        echoed: object = counter.echo(shared).result(timeout=RESULT_TIMEOUT)
        echoed[0] = 9
        assert shared[0] == 9
    finally:
        counter.finalize()


def test_unpicklable_result_fails_only_its_call() -> None:
    counter = init_worker(Counter, 1)
    try:
        with pytest.raises(TandemRemoteError) as error_info:
            counter.make_lock().result(timeout=RESULT_TIMEOUT)
        assert error_info.value.remote_type_name == "TypeError"
        assert counter.worker_status() is WorkerStatus.READY
        assert counter.increment(1).result(timeout=RESULT_TIMEOUT) == 2
    finally:
        counter.finalize()


def test_async_method_calls_back_through_async_codec() -> None:
    reporter = init_worker(Reporter, "host")
    try:
        assert reporter.run_async_report(5).result(timeout=RESULT_TIMEOUT) == "host:5"
        assert reporter.seen == [5]
        with pytest.raises(TandemRemoteError) as error_info:
            reporter.run_unsendable_report().result(timeout=RESULT_TIMEOUT)
        assert error_info.value.remote_type_name == "TypeError"
        assert reporter.worker_status() is WorkerStatus.READY
    finally:
        reporter.finalize()
