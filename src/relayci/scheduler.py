# scheduler.py
from __future__ import annotations

import os
import queue
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Protocol

from ._log import get_logger
from .errors import (
    ConditionEvalError,
    ContractViolation,
    DuplicateOutputError,
    MissingOutputError,
    RelayError,
)
from .executor import StageExecutor, StageResult
from .gates import Gate, GateStatus, GateTable
from .graph import RUN_SCOPE, StageGraph
from .model import RunStatus, State, StageInstance, TriggerContext
from .outputs import OutputStore
from .release import ReleaseDecision, ReleaseDecisionEngine, ReleaseOutcome

logger = get_logger("scheduler")


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class RunRecord:
    """Everything one trigger produced: instances, outputs and gate statuses."""
    run_id: str
    trigger: TriggerContext
    instances: Dict[str, StageInstance]
    outputs: OutputStore = field(default_factory=OutputStore)
    gates: GateTable = field(default_factory=GateTable)
    workflow: str = ""
    status: RunStatus = RunStatus.RUNNING
    errors: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def summary(self) -> Dict[str, str]:
        return {iid: inst.state.value for iid, inst in self.instances.items()}

    def gate_statuses(self) -> Dict[str, GateStatus]:
        return self.gates.statuses(self.run_id)


class Journal(Protocol):
    """Persistence hooks called by the scheduler (see store.RunStore)."""

    def record_state(self, run_id: str, instance: StageInstance) -> None: ...

    def record_gate(self, gate: Gate) -> None: ...

    def record_release(self, run_id: str, outcome: ReleaseOutcome) -> None: ...

    def finish_run(self, run_id: str, status: RunStatus, errors: List[str]) -> None: ...


class ConcurrencyBudget:
    """Process-wide cap on stage bodies running at the same time, across runs."""

    def __init__(self, limit: int | None):
        self.limit = limit
        self._sem = threading.BoundedSemaphore(limit) if limit else None

    @contextmanager
    def slot(self, cancel: threading.Event, poll: float = 0.1) -> Iterator[bool]:
        if self._sem is None:
            yield True
            return
        while not self._sem.acquire(timeout=poll):
            if cancel.is_set():
                yield False
                return
        try:
            yield True
        finally:
            self._sem.release()


class Scheduler:
    """
    Runs a validated StageGraph to completion.

    All state transitions happen on the thread calling `run()`. Stage bodies
    run on a thread pool; their completions, gate decisions and cancellation
    requests reach the scheduling thread through one event queue.
    """

    def __init__(
        self,
        graph: StageGraph,
        record: RunRecord,
        executor: StageExecutor,
        *,
        release_engine: ReleaseDecisionEngine | None = None,
        max_parallel: int | None = None,
        fail_fast: bool = False,
        budget: ConcurrencyBudget | None = None,
        journal: Journal | None = None,
        gate_timeout: float | None = None,
        on_transition: Callable[[StageInstance], None] | None = None,
    ):
        self.graph = graph
        self.record = record
        self.executor = executor
        self.release_engine = release_engine
        self.fail_fast = fail_fast
        self.budget = budget or ConcurrencyBudget(None)
        self.journal = journal
        self.gate_timeout = gate_timeout
        self.on_transition = on_transition

        if max_parallel is None:
            c = os.cpu_count() or 2
            max_parallel = max(1, c - 1)
        self.max_parallel = max_parallel

        self._events: "queue.Queue[tuple]" = queue.Queue()
        self._in_flight: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._awaiting_gate: Dict[str, str] = {}
        self._cancel_requested = threading.Event()
        self._cancel_reason = ""
        self._superseded = False
        self._fatal = False
        self._dispatched = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def dispatched(self) -> int:
        """Number of stage bodies handed to the executor by this scheduler."""
        return self._dispatched

    def cancel(self, reason: str = "superseded") -> None:
        """Cancel every non-terminal instance. Safe to call from any thread."""
        self._cancel_reason = reason
        self._cancel_requested.set()
        self._events.put(("wake",))

    def states(self) -> Dict[str, State]:
        return {iid: inst.state for iid, inst in self.record.instances.items()}

    def ready(self) -> set[str]:
        return self.graph.ready(
            self.states(),
            self.record.trigger,
            outputs=self.record.outputs.peek,
            release=self._release_mapping,
        )

    def run(self) -> RunRecord:
        record = self.record
        logger.info("run %s started (%d stages)", record.run_id, len(record.instances))

        def on_gate(gate: Gate) -> None:
            if gate.run_id == record.run_id:
                if self.journal is not None:
                    self.journal.record_gate(gate)
                self._events.put(("gate", gate.id))

        unsubscribe = record.gates.subscribe(on_gate)
        pool = ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix=f"relayci-{record.run_id}")
        try:
            while True:
                if self._cancel_requested.is_set() and not self._superseded:
                    self._handle_cancel()
                self._advance(pool)
                if self._finished():
                    break
                self._handle(self._next_event())
        finally:
            closed = record.gates.close_run(record.run_id)
            if closed:
                logger.info("run %s closed pending gates: %s", record.run_id, ", ".join(closed))
            unsubscribe()
            for ev in self._cancel_events.values():
                ev.set()
            pool.shutdown(wait=not (self._superseded or self._fatal), cancel_futures=True)
            record.outputs.close()

        record.status = self._final_status()
        record.finished_at = time.time()
        if self.journal is not None:
            self.journal.finish_run(record.run_id, record.status, record.errors)
        logger.info("run %s finished: %s", record.run_id, record.status.value)
        return record

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set(self, iid: str, state: State, error: str | None = None) -> None:
        inst = self.record.instances[iid]
        if inst.state.is_terminal:
            raise RelayError(f"[{iid}] already terminal ({inst.state.value}), cannot become {state.value}")
        inst.state = state
        if error:
            inst.error = error
        if state == State.RUNNING:
            inst.started_at = time.time()
        if state.is_terminal:
            inst.finished_at = time.time()
            self._awaiting_gate.pop(iid, None)
            if state != State.SUCCEEDED:
                self.record.outputs.discard(iid)
        if state in (State.RUNNING,) or state.is_terminal:
            logger.info("[%s] %s%s", iid, state.value, f" ({error})" if error else "")
        else:
            logger.debug("[%s] %s", iid, state.value)
        if self.journal is not None:
            self.journal.record_state(self.record.run_id, inst)
        if self.on_transition is not None:
            self.on_transition(inst)

    def _cancel_all(self, reason: str) -> None:
        for iid in self.graph.order():
            self._cancel_one(iid, reason)

    def _cancel_one(self, iid: str, reason: str) -> None:
        inst = self.record.instances[iid]
        if inst.state.is_terminal:
            return
        if iid in self._cancel_events:
            self._cancel_events[iid].set()
        self._in_flight.pop(iid, None)
        self._set(iid, State.CANCELLED, reason)

    def _abort(self, error: Exception) -> None:
        """Fatal error: nothing else runs."""
        logger.error("run %s aborted: %s", self.record.run_id, error)
        self._fatal = True
        self.record.errors.append(str(error))
        self._cancel_all(f"run aborted: {error}")

    def _handle_cancel(self) -> None:
        self._superseded = True
        reason = self._cancel_reason or "superseded"
        self.record.errors.append(f"cancelled: {reason}")
        self._cancel_all(reason)

    # ------------------------------------------------------------------
    # Release decision
    # ------------------------------------------------------------------

    def _release_outcome(self) -> ReleaseOutcome:
        if self.release_engine is None:
            raise RelayError("release stage present but no release engine configured")
        first = not self.release_engine.decided
        outcome = self.release_engine.decide_for_run()
        if first and self.journal is not None:
            self.journal.record_release(self.record.run_id, outcome)
        if outcome.decision == ReleaseDecision.RELEASE:
            try:
                self.record.outputs.peek(RUN_SCOPE, "release_tag")
            except KeyError:
                self.record.outputs.put(RUN_SCOPE, "release_tag", outcome.tag)
        return outcome

    def _release_mapping(self) -> Mapping[str, str]:
        if self.release_engine is None:
            raise ConditionEvalError("no release engine configured")
        try:
            return self._release_outcome().as_mapping()
        except Exception as e:
            raise ConditionEvalError(f"release decision unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    def _advance(self, pool: ThreadPoolExecutor) -> None:
        changed = True
        while changed and not self._fatal and not self._superseded:
            changed = False
            for iid in self.graph.order():
                state = self.record.instances[iid].state
                if state in (State.PENDING, State.BLOCKED):
                    changed |= self._evaluate(iid)
                elif state == State.READY and iid in self._awaiting_gate:
                    changed |= self._check_gate(iid)
                if self._fatal:
                    return
            changed |= self._dispatch_ready(pool)

    def _evaluate(self, iid: str) -> bool:
        """Move a pending/blocked instance forward. Returns True on any transition."""
        inst = self.record.instances[iid]
        status = self.graph.dependency_status(iid, self.states())
        if status == "blocked-out":
            bad = sorted(
                d for d in self.graph.dependencies(iid)
                if self.record.instances[d].state in (State.FAILED, State.SKIPPED, State.CANCELLED)
            )
            self._set(iid, State.SKIPPED, f"dependency not successful: {', '.join(bad)}")
            return True
        if status == "waiting":
            if inst.state == State.PENDING:
                self._set(iid, State.BLOCKED)
                return True
            return False

        trigger = self.record.trigger
        if not self.graph.condition_holds(iid, trigger, outputs=self.record.outputs.peek,
                                          release=self._release_mapping):
            self._set(iid, State.SKIPPED, "condition not met")
            return True

        if inst.template.release:
            try:
                outcome = self._release_outcome()
            except DuplicateOutputError as e:
                self._abort(e)
                return True
            except Exception as e:
                self._set(iid, State.FAILED, f"release decision failed: {e}")
                self.record.errors.append(f"[{iid}] release decision failed: {e}")
                self._after_failure(iid)
                return True
            if outcome.decision == ReleaseDecision.SKIP:
                self._set(iid, State.SKIPPED, f"release skipped ({outcome.candidate} already published)")
                return True

        gate_name = inst.gate_name
        if gate_name:
            try:
                release = self._release_mapping()
            except ConditionEvalError:
                release = None
            gate = self.record.gates.request(gate_name, self.record.run_id, trigger, release)
            if self.journal is not None:
                self.journal.record_gate(gate)
            if gate.status == GateStatus.REJECTED:
                self._set(iid, State.SKIPPED, f"gate {gate_name} rejected")
                return True
            if gate.status == GateStatus.PENDING:
                self._awaiting_gate[iid] = gate.id
                logger.warning("[%s] waiting for approval of %s", iid, gate.id)

        self._set(iid, State.READY)
        return True

    def _check_gate(self, iid: str) -> bool:
        gate = self.record.gates.get(self._awaiting_gate[iid])
        if gate.status == GateStatus.APPROVED:
            del self._awaiting_gate[iid]
            return True
        if gate.status == GateStatus.REJECTED:
            self._set(iid, State.SKIPPED, f"gate {gate.name} rejected by {gate.actor}")
            return True
        return False

    def _dispatch_ready(self, pool: ThreadPoolExecutor) -> bool:
        dispatched = False
        for iid in self.graph.order():
            if len(self._in_flight) >= self.max_parallel or self._fatal:
                break
            inst = self.record.instances[iid]
            if inst.state != State.READY or iid in self._awaiting_gate:
                continue

            try:
                inputs = {
                    name: self.record.outputs.get(producer, key, consumer=iid, timeout=0)
                    for name, (producer, key) in self.graph.inputs_of(iid).items()
                }
            except MissingOutputError as e:
                self._abort(e)
                return True

            self._set(iid, State.RUNNING)
            cancel = threading.Event()
            self._cancel_events[iid] = cancel
            fut = pool.submit(self._execute, inst, inputs, cancel)
            self._in_flight[iid] = fut
            self._dispatched += 1
            fut.add_done_callback(lambda f, iid=iid: self._events.put(("done", iid, f)))
            dispatched = True
        return dispatched

    def _execute(self, inst: StageInstance, inputs: Mapping[str, str], cancel: threading.Event) -> StageResult:
        with self.budget.slot(cancel) as acquired:
            if not acquired or cancel.is_set():
                return StageResult(status="cancelled")
            try:
                return self.executor.run(inst, inputs, cancel)
            except Exception as e:
                logger.exception("[%s] executor raised", inst.id)
                return StageResult.failure(f"{type(e).__name__}: {e}")

    def _finished(self) -> bool:
        return all(inst.state.is_terminal for inst in self.record.instances.values())

    def _next_event(self) -> tuple:
        if not self._in_flight and not self._awaiting_gate and not self._cancel_requested.is_set():
            stuck = [i for i, inst in self.record.instances.items() if not inst.state.is_terminal]
            self._abort(RelayError(f"scheduler stalled with non-terminal stages: {stuck}"))
            return ("wake",)

        timeout = None
        if self.gate_timeout is not None and self._awaiting_gate:
            now = time.time()
            deadlines = [
                self.record.gates.get(gid).requested_at + self.gate_timeout
                for gid in self._awaiting_gate.values()
            ]
            timeout = max(0.0, min(deadlines) - now)
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return ("gate-timeout",)

    def _handle(self, event: tuple) -> None:
        kind = event[0]
        if kind == "done":
            self._complete(event[1], event[2])
        elif kind == "gate-timeout":
            now = time.time()
            for gid in set(self._awaiting_gate.values()):
                gate = self.record.gates.get(gid)
                if gate.status == GateStatus.PENDING and now - gate.requested_at >= self.gate_timeout:
                    self.record.gates.decide(gid, GateStatus.REJECTED, "system:timeout", "approval timed out")

    def _complete(self, iid: str, fut: Future) -> None:
        inst = self.record.instances[iid]
        self._in_flight.pop(iid, None)
        self._cancel_events.pop(iid, None)
        if inst.state != State.RUNNING:
            # cancelled while in flight; the body's late result is dropped
            return

        result: StageResult = fut.result()
        if result.status == "cancelled":
            self._set(iid, State.CANCELLED, result.error or "cancelled by executor")
            return
        if not result.ok:
            self._set(iid, State.FAILED, result.error or "stage failed")
            self.record.errors.append(f"[{iid}] {result.error or 'stage failed'}")
            self._after_failure(iid)
            return

        declared = inst.template.outputs
        try:
            for key, value in result.outputs.items():
                if key in declared:
                    self.record.outputs.put(iid, key, value)
                else:
                    logger.warning("[%s] ignoring undeclared output '%s'", iid, key)
        except DuplicateOutputError as e:
            self._set(iid, State.FAILED, str(e))
            self._abort(e)
            return

        staged = self.record.outputs.staged(iid)
        missing = [k for k in declared if k not in staged]
        if missing:
            violation = ContractViolation(stage=iid, missing=missing)
            self._set(iid, State.FAILED, str(violation))
            self._abort(violation)
            return

        inst.outputs = staged
        self._set(iid, State.SUCCEEDED)
        self.record.outputs.commit(iid)

    def _after_failure(self, iid: str) -> None:
        if self.fail_fast:
            self._cancel_all(f"fail-fast after {iid} failed")
        elif self.record.instances[iid].template.fail_fast:
            for sib in self.graph.siblings(iid):
                self._cancel_one(sib, f"matrix fail-fast after {iid} failed")

    def _final_status(self) -> RunStatus:
        if self._fatal or any(i.state == State.FAILED for i in self.record.instances.values()):
            return RunStatus.FAILED
        if self._superseded:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED
