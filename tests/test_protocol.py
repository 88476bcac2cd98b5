"""Session protocol tests driven through an in-process context host."""

import multiprocessing
import threading
from concurrent.futures import Future
from multiprocessing.connection import Connection

import pytest

from tandem import CircularReferenceError
from tandem import MethodNotCallbackError
from tandem import SessionFinalizedError
from tandem import TandemProtocolError
from tandem import TandemRemoteError
from tandem import WorkerCrashedError
from tandem import WorkerExitedError
from tandem import WorkerSession
from tandem import WorkerStatus
from tandem.errors import TypeResolutionError
from tandem.protocol import build_message
from tandem.protocol import error_from_payload
from tandem.protocol import serialize_error
from tandem.runtime import ContextHandle
from tandem.transport import WIRE_RAW_TAG
from tandem.transport import decode_value
from tandem.transport import encode_value
from tandem.worker import WorkerRuntime
from tests.fixtures.units import Counter
from tests.fixtures.units import Reporter

RESULT_TIMEOUT: float = 10.0


class Node:
    """Linked node used to build reference cycles."""

    next: object

    def __init__(self) -> None:
        self.next = None


class RecordingConnection:
    """Connection wrapper that remembers every message the session sends."""

    sent: list[dict[str, object]]
    _connection: Connection

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self.sent = []

    def send(self, message: dict[str, object]) -> None:
        self.sent.append(message)
        self._connection.send(message)

    def recv(self) -> object:
        return self._connection.recv()

    def close(self) -> None:
        self._connection.close()


class DrivenProcess:
    """Stand-in process whose lifetime the test controls."""

    exitcode: int | None
    _far_end: Connection
    _alive: bool

    def __init__(self, far_end: Connection) -> None:
        self._far_end = far_end
        self._alive = True
        self.exitcode = None

    def join(self, timeout: float | None = None) -> None:
        return None

    def is_alive(self) -> bool:
        return self._alive

    def terminate(self) -> None:
        self.exit(-15)

    def exit(self, exit_code: int) -> None:
        """Simulate the worker process ending.

        :param exit_code: Exit code to report.
        """
        if self._alive is False:
            return
        self._alive = False
        self.exitcode = exit_code
        self._far_end.close()


class InProcessHost:
    """Context host whose worker end is driven by the test itself."""

    far_end: Connection | None
    near_end: RecordingConnection | None
    process: DrivenProcess | None
    init_payload: dict[str, object] | None

    def __init__(self) -> None:
        self.far_end = None
        self.near_end = None
        self.process = None
        self.init_payload = None

    def open(self, init_payload: dict[str, object]) -> ContextHandle:
        """Create the channel and announce ``ready`` from the far end.

        :param init_payload: Payload a real worker would receive.
        :returns: Handle over the near end.
        """
        near, far = multiprocessing.Pipe(duplex=True)
        far.send(build_message("ready"))
        self.far_end = far
        self.near_end = RecordingConnection(near)
        self.process = DrivenProcess(far)
        self.init_payload = init_payload
        return ContextHandle(self.near_end, self.process)

    def receive(self) -> dict[str, object]:
        """Read the next message the session sent.

        :returns: Message dictionary.
        """
        assert self.far_end is not None
        assert self.far_end.poll(RESULT_TIMEOUT) is True
        return self.far_end.recv()

    def invocations(self) -> list[dict[str, object]]:
        assert self.near_end is not None
        return [message for message in self.near_end.sent if message["type"] == "invoke"]


def _start(unit_cls: type, *args: object) -> tuple[WorkerSession, object, InProcessHost]:
    host: InProcessHost = InProcessHost()
    session: WorkerSession = WorkerSession(unit_cls, host=host, finalize_grace_seconds=1.0)
    instance: object = session.start(*args)
    return session, instance, host


def _reply(host: InProcessHost, call_id: object, value: object) -> None:
    assert host.far_end is not None
    host.far_end.send(build_message("result", id=call_id, ok=True, result=encode_value(value)))


def test_out_of_order_replies_settle_their_own_calls() -> None:
    session, counter, host = _start(Counter, 0)
    try:
        first: Future = counter.increment(1)
        second: Future = counter.increment(2)
        third: Future = counter.increment(3)
        messages: list[dict[str, object]] = [host.receive() for _ in range(3)]
        call_ids: list[object] = [message["id"] for message in messages]
        assert call_ids == sorted(call_ids)
        assert len(set(call_ids)) == 3
        assert [message["method"] for message in messages] == ["increment", "increment", "increment"]

        _reply(host, call_ids[1], 20)
        _reply(host, call_ids[0], 10)
        _reply(host, call_ids[2], 30)
        assert second.result(timeout=RESULT_TIMEOUT) == 20
        assert first.result(timeout=RESULT_TIMEOUT) == 10
        assert third.result(timeout=RESULT_TIMEOUT) == 30
    finally:
        session.finalize()


def test_init_payload_carries_entry_and_encoded_arguments() -> None:
    session, _, host = _start(Counter, 7)
    try:
        assert host.init_payload is not None
        assert host.init_payload["entry"] == "tests.fixtures.units:Counter"
        assert host.init_payload["unit_region"] is None
        assert [decode_value(item) for item in host.init_payload["args"]] == [7]
    finally:
        session.finalize()


def test_finalize_rejects_pending_calls_immediately() -> None:
    session, counter, host = _start(Counter, 0)
    first: Future = counter.increment(1)
    second: Future = counter.increment(2)
    session.finalize()

    assert first.done() is True
    assert second.done() is True
    assert isinstance(first.exception(), SessionFinalizedError) is True
    assert isinstance(second.exception(), SessionFinalizedError) is True
    assert session.status is WorkerStatus.FINALIZED

    invocations_before: int = len(host.invocations())
    late: Future = counter.increment(3)
    assert late.done() is True
    assert isinstance(late.exception(), SessionFinalizedError) is True
    assert len(host.invocations()) == invocations_before
    assert host.near_end is not None
    assert host.near_end.sent[-1]["type"] == "finalize"


def test_circular_argument_fails_without_sending() -> None:
    session, counter, host = _start(Counter, 0)
    try:
        first: Node = Node()
        second: Node = Node()
        first.next = second
        second.next = first
        failed: Future = counter.echo(first)
        assert failed.done() is True
        error: BaseException | None = failed.exception()
        assert isinstance(error, CircularReferenceError) is True
        assert error.path == "arg[0].next.next"
        assert host.invocations() == []
        assert session.status is WorkerStatus.READY
    finally:
        session.finalize()


def test_remote_error_payload_rejects_only_its_call() -> None:
    session, counter, host = _start(Counter, 0)
    try:
        failing: Future = counter.fail("nope")
        message: dict[str, object] = host.receive()
        assert host.far_end is not None
        try:
            raise ValueError("nope")
        except ValueError as exc:
            payload: dict[str, object] = serialize_error(exc)
        host.far_end.send(build_message("result", id=message["id"], ok=False, error=payload))
        with pytest.raises(TandemRemoteError) as error_info:
            failing.result(timeout=RESULT_TIMEOUT)
        assert error_info.value.remote_type_name == "ValueError"
        assert session.status is WorkerStatus.READY
    finally:
        session.finalize()


def test_unrequested_exit_rejects_pending_with_exit_code() -> None:
    session, counter, host = _start(Counter, 0)
    exit_codes: list[object] = []
    session.add_observer("exit", exit_codes.append)
    pending: Future = counter.increment(1)
    host.receive()
    assert host.process is not None
    host.process.exit(3)

    with pytest.raises(WorkerExitedError) as error_info:
        pending.result(timeout=RESULT_TIMEOUT)
    assert error_info.value.exit_code == 3
    assert session.status is WorkerStatus.EXITED
    late: Future = counter.increment(1)
    assert isinstance(late.exception(), WorkerExitedError) is True
    session.finalize()
    assert session.wait_closed(RESULT_TIMEOUT) is True
    assert exit_codes == [3]


def test_fatal_message_before_exit_marks_worker_error() -> None:
    session, counter, host = _start(Counter, 0)
    errors: list[BaseException] = []
    session.add_observer("error", errors.append)
    pending: Future = counter.increment(1)
    host.receive()
    assert host.far_end is not None and host.process is not None
    try:
        raise OSError("loop died")
    except OSError as exc:
        host.far_end.send(build_message("fatal", error=serialize_error(exc)))
    host.process.exit(1)

    with pytest.raises(WorkerCrashedError) as error_info:
        pending.result(timeout=RESULT_TIMEOUT)
    assert error_info.value.exit_code == 1
    assert session.status is WorkerStatus.WORKER_ERROR
    session.finalize()
    assert session.wait_closed(RESULT_TIMEOUT) is True
    assert len(errors) == 1
    assert isinstance(errors[0], TandemRemoteError) is True


def test_callback_invoke_runs_host_method_and_replies() -> None:
    session, reporter, host = _start(Reporter, "cb")
    try:
        assert host.far_end is not None
        host.far_end.send(build_message("callback-invoke", id=1, method="report", args=[encode_value(5)], kwargs={}))
        reply: dict[str, object] = host.receive()
        assert reply["type"] == "callback-result"
        assert reply["id"] == 1
        assert reply["ok"] is True
        assert decode_value(reply["result"]) == "cb:5"
        assert reporter.seen == [5]
    finally:
        session.finalize()


def test_callback_invoke_for_unmarked_method_is_rejected() -> None:
    session, _, host = _start(Reporter, "cb")
    try:
        assert host.far_end is not None
        host.far_end.send(build_message("callback-invoke", id=4, method="run_reports", args=[], kwargs={}))
        reply: dict[str, object] = host.receive()
        assert reply["ok"] is False
        assert isinstance(error_from_payload(reply["error"]), MethodNotCallbackError) is True
        assert session.status is WorkerStatus.READY
    finally:
        session.finalize()


def test_observer_failure_does_not_disturb_other_observers() -> None:
    session, counter, host = _start(Counter, 0)
    seen: list[object] = []

    def broken(message: object) -> None:
        raise RuntimeError("observer failure")

    session.add_observer("message", broken)
    session.add_observer("message", seen.append)
    try:
        pending: Future = counter.increment(1)
        message: dict[str, object] = host.receive()
        _reply(host, message["id"], 1)
        assert pending.result(timeout=RESULT_TIMEOUT) == 1
        assert len(seen) == 1
        assert session.status is WorkerStatus.READY
    finally:
        session.finalize()


def test_malformed_message_is_reported_and_skipped() -> None:
    session, counter, host = _start(Counter, 0)
    problems: list[BaseException] = []
    session.add_observer("message-error", problems.append)
    try:
        assert host.far_end is not None
        host.far_end.send({"type": "bogus"})
        pending: Future = counter.increment(1)
        message: dict[str, object] = host.receive()
        _reply(host, message["id"], 1)
        assert pending.result(timeout=RESULT_TIMEOUT) == 1
        assert len(problems) == 1
        assert isinstance(problems[0], TandemProtocolError) is True
    finally:
        session.finalize()


def test_unknown_observer_event_is_rejected() -> None:
    session, _, _ = _start(Counter, 0)
    try:
        with pytest.raises(ValueError):
            session.add_observer("never", print)
    finally:
        session.finalize()


def test_error_payloads_rebuild_tandem_errors() -> None:
    rebuilt: BaseException = error_from_payload(serialize_error(SessionFinalizedError()))
    assert isinstance(rebuilt, SessionFinalizedError) is True
    assert str(rebuilt) == "Worker has been finalized"

    cycle: BaseException = error_from_payload(serialize_error(CircularReferenceError("arg[1].left")))
    assert isinstance(cycle, CircularReferenceError) is True
    assert cycle.path == "arg[1].left"

    resolution: BaseException = error_from_payload(serialize_error(TypeResolutionError("bad hint")))
    assert isinstance(resolution, TypeResolutionError) is True

    assert isinstance(error_from_payload("garbage"), TandemProtocolError) is True


def test_worker_runtime_serves_invocations_until_finalize() -> None:
    host_end, worker_end = multiprocessing.Pipe(duplex=True)
    payload: dict[str, object] = {
        "entry": "tests.fixtures.units:Counter",
        "unit_id": "tests.fixtures.units:Counter",
        "unit_region": None,
        "run_init": True,
        "args": [encode_value(4)],
        "kwargs": {},
    }
    runtime: WorkerRuntime = WorkerRuntime(worker_end, payload)
    thread: threading.Thread = threading.Thread(target=runtime.run, daemon=True)
    thread.start()
    try:
        assert host_end.recv() == {"type": "ready"}

        host_end.send(build_message("invoke", id=1, method="increment", args=[encode_value(3)], kwargs={}))
        result: dict[str, object] = host_end.recv()
        assert result["id"] == 1
        assert result["ok"] is True
        assert decode_value(result["result"]) == 7

        host_end.send(build_message("invoke", id=2, method="local_only", args=[], kwargs={}))
        rejected: dict[str, object] = host_end.recv()
        assert rejected["id"] == 2
        assert rejected["ok"] is False
        assert rejected["error"]["error_type"] == "MethodNotRemoteError"

        host_end.send(build_message("finalize"))
        assert host_end.recv() == {"type": "finalized"}
    finally:
        thread.join(timeout=RESULT_TIMEOUT)
        host_end.close()
    assert thread.is_alive() is False


def test_unpicklable_argument_fails_only_its_call() -> None:
    session, counter, host = _start(Counter, 0)
    try:
        failed: Future = counter.echo(threading.Lock())
        assert failed.done() is True
        assert isinstance(failed.exception(), TypeError) is True
        assert session._pending == {}
        assert session.status is WorkerStatus.READY

        pending: Future = counter.increment(1)
        message: dict[str, object] = host.receive()
        assert message["method"] == "increment"
        _reply(host, message["id"], 1)
        assert pending.result(timeout=RESULT_TIMEOUT) == 1
    finally:
        session.finalize()


def test_finalize_returns_before_worker_is_reaped() -> None:
    session, _, host = _start(Counter, 0)
    assert host.process is not None
    session.finalize()
    assert session.status is WorkerStatus.FINALIZED
    assert session.wait_closed(RESULT_TIMEOUT) is True
    assert host.process.is_alive() is False
    assert session.wait_closed() is True


def _serve_in_thread(entry: str, *args: object) -> tuple[Connection, threading.Thread]:
    host_end, worker_end = multiprocessing.Pipe(duplex=True)
    payload: dict[str, object] = {
        "entry": entry,
        "unit_id": entry,
        "unit_region": None,
        "run_init": True,
        "args": [encode_value(argument) for argument in args],
        "kwargs": {},
    }
    runtime: WorkerRuntime = WorkerRuntime(worker_end, payload)
    thread: threading.Thread = threading.Thread(target=runtime.run, daemon=True)
    thread.start()
    assert host_end.recv() == {"type": "ready"}
    return host_end, thread


def _stop_served(host_end: Connection, thread: threading.Thread) -> None:
    host_end.send(build_message("finalize"))
    assert host_end.recv() == {"type": "finalized"}
    thread.join(timeout=RESULT_TIMEOUT)
    host_end.close()
    assert thread.is_alive() is False


def test_worker_runtime_reports_unpicklable_result_and_keeps_serving() -> None:
    host_end, thread = _serve_in_thread("tests.fixtures.units:Counter", 2)

    host_end.send(build_message("invoke", id=1, method="make_lock", args=[], kwargs={}))
    failed: dict[str, object] = host_end.recv()
    assert failed["id"] == 1
    assert failed["ok"] is False
    assert failed["error"]["error_type"] == "TypeError"

    host_end.send(build_message("invoke", id=2, method="increment", args=[encode_value(1)], kwargs={}))
    result: dict[str, object] = host_end.recv()
    assert result["id"] == 2
    assert result["ok"] is True
    assert decode_value(result["result"]) == 3

    _stop_served(host_end, thread)


def test_worker_runtime_runs_async_codec_inside_async_method() -> None:
    host_end, thread = _serve_in_thread("tests.fixtures.units:Reporter", "r")

    host_end.send(build_message("invoke", id=1, method="run_async_report", args=[encode_value(5)], kwargs={}))
    callback: dict[str, object] = host_end.recv()
    assert callback["type"] == "callback-invoke"
    assert callback["method"] == "report_scaled"
    assert callback["args"] == [(WIRE_RAW_TAG, 50)]

    host_end.send(build_message("callback-result", id=callback["id"], ok=True, result=encode_value("r:5")))
    result: dict[str, object] = host_end.recv()
    assert result["type"] == "result"
    assert result["id"] == 1
    assert result["ok"] is True
    assert decode_value(result["result"]) == "r:5"

    _stop_served(host_end, thread)


def test_worker_runtime_reports_unsendable_callback_argument() -> None:
    host_end, thread = _serve_in_thread("tests.fixtures.units:Reporter", "r")

    host_end.send(build_message("invoke", id=1, method="run_unsendable_report", args=[], kwargs={}))
    result: dict[str, object] = host_end.recv()
    assert result["type"] == "result"
    assert result["id"] == 1
    assert result["ok"] is False
    assert result["error"]["error_type"] == "TypeError"

    host_end.send(build_message("invoke", id=2, method="run_reports", args=[encode_value(0)], kwargs={}))
    empty: dict[str, object] = host_end.recv()
    assert empty["ok"] is True
    assert decode_value(empty["result"]) == []

    _stop_served(host_end, thread)
