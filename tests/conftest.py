"""Shared test fixtures and helpers."""

from __future__ import annotations

import threading
import time

import pytest

from relayci.executor import CallableExecutor
from relayci.gates import GateTable
from relayci.graph import StageGraph
from relayci.matrix import expand_all
from relayci.model import EventKind, StageTemplate, TriggerContext
from relayci.scheduler import RunRecord, Scheduler, new_run_id


def make_trigger(
    *,
    event: EventKind = EventKind.PUSH,
    ref: str = "refs/heads/main",
    **kwargs,
) -> TriggerContext:
    """Build a TriggerContext for tests."""
    return TriggerContext(event=event, ref=ref, **kwargs)


def make_scheduler(
    stages: list[StageTemplate],
    handlers: dict | None = None,
    *,
    trigger: TriggerContext | None = None,
    gates: GateTable | None = None,
    max_parallel: int = 4,
    **kwargs,
) -> Scheduler:
    graph = StageGraph.build(expand_all(stages))
    record = RunRecord(
        run_id=new_run_id(),
        trigger=trigger or make_trigger(),
        instances={inst.id: inst for inst in graph},
        gates=gates or GateTable(),
    )
    return Scheduler(graph, record, CallableExecutor(handlers or {}), max_parallel=max_parallel, **kwargs)


def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll *predicate* until true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached in time")
        time.sleep(0.01)


class Background:
    """Run a callable on a thread and collect its return value."""

    def __init__(self, fn, *args, **kwargs):
        self.result = None
        self.error: BaseException | None = None

        def target():
            try:
                self.result = fn(*args, **kwargs)
            except BaseException as e:  # surfaced by join()
                self.error = e

        self.thread = threading.Thread(target=target, daemon=True)
        self.thread.start()

    def join(self, timeout: float = 10.0):
        self.thread.join(timeout)
        assert not self.thread.is_alive(), "background call did not finish"
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture()
def trigger() -> TriggerContext:
    return make_trigger()


@pytest.fixture()
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'runs.db'}"
