# runner.py
from __future__ import annotations

import runpy
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ._log import get_logger
from .conditions import evaluate
from .executor import StageExecutor
from .gates import RUN_FINISHED_ACTOR, GateTable
from .graph import RUN_SCOPE, StageGraph
from .matrix import expand_all
from .model import StageInstance, StageTemplate, State, TriggerContext, Workflow
from .release import ReleaseDecision, ReleaseDecisionEngine, VersionSource
from .scheduler import ConcurrencyBudget, RunRecord, Scheduler, new_run_id
from .store import RunStore

logger = get_logger("runner")


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Workflow | List[StageTemplate]
      - WORKFLOW = Workflow(...)
      - STAGES = [StageTemplate, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"relayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "STAGES" in globals_dict:
        loaded = globals_dict["STAGES"]

    if isinstance(loaded, Workflow):
        return loaded
    if isinstance(loaded, list) and all(isinstance(s, StageTemplate) for s in loaded):
        return Workflow(name=wf_path.stem, stages=loaded)
    raise TypeError(
        "Workflow file must define workflow() -> Workflow | List[StageTemplate], "
        "WORKFLOW = Workflow(...) or STAGES = [StageTemplate, ...]."
    )


def plan(workflow: Workflow) -> StageGraph:
    """Expand and validate a workflow without running anything."""
    return StageGraph.build(expand_all(workflow.stages))


# ----------------------------------------------------------------------
# Concurrency groups
# ----------------------------------------------------------------------

@dataclass
class _Active:
    run_id: str
    scheduler: Scheduler


class ConcurrencyGroups:
    """
    At most one active run per concurrency group.

    A newer run either supersedes the active one (cancel_in_progress) or
    waits for it to finish. When several runs queue up behind the same
    group only the newest one proceeds.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active: Dict[str, _Active] = {}
        self._latest: Dict[str, str] = {}

    def enter(self, group: str, run_id: str, scheduler: Scheduler, cancel_in_progress: bool = True) -> bool:
        """Block until *run_id* may run; False when a newer run superseded it first."""
        with self._cond:
            self._latest[group] = run_id
            current = self._active.get(group)
            if current is not None and cancel_in_progress:
                logger.warning("run %s supersedes run %s in group %s", run_id, current.run_id, group)
                current.scheduler.cancel(f"superseded by run {run_id}")
            while group in self._active:
                self._cond.wait()
                if cancel_in_progress and self._latest.get(group) != run_id:
                    return False
            if cancel_in_progress and self._latest.get(group) != run_id:
                return False
            self._active[group] = _Active(run_id, scheduler)
            return True

    def leave(self, group: str, run_id: str) -> None:
        with self._cond:
            current = self._active.get(group)
            if current is not None and current.run_id == run_id:
                del self._active[group]
            self._cond.notify_all()

    def active_run(self, group: str) -> Optional[str]:
        with self._cond:
            current = self._active.get(group)
            return current.run_id if current else None


# ----------------------------------------------------------------------
# Cancel requests and gate decisions made through the store by another process
# ----------------------------------------------------------------------

class _StoreSync(threading.Thread):
    def __init__(self, store: RunStore, gates: GateTable, scheduler: Scheduler, run_id: str,
                 interval: float = 1.0):
        super().__init__(daemon=True, name=f"relayci-sync-{run_id}")
        self.store = store
        self.gates = gates
        self.scheduler = scheduler
        self.run_id = run_id
        self.interval = interval
        self.stopped = threading.Event()
        self._cancelled = False

    def run(self) -> None:
        while not self.stopped.wait(self.interval):
            reason = self.store.cancel_requested(self.run_id)
            if reason and not self._cancelled:
                self._cancelled = True
                logger.warning("run %s cancelled through the run store: %s", self.run_id, reason)
                self.scheduler.cancel(reason)
            for gate in self.store.decided_gates(self.run_id):
                pending = {g.id for g in self.gates.pending(self.run_id)}
                if gate.id in pending:
                    self.gates.decide(gate.id, gate.status, gate.actor or "store", gate.comment)


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class Orchestrator:
    """
    Turns (workflow, trigger) into a finished RunRecord.

    Shares one gate table, concurrency-group registry and global budget
    across every run it starts.
    """

    def __init__(
        self,
        executor: StageExecutor,
        *,
        gates: GateTable | None = None,
        store: RunStore | None = None,
        groups: ConcurrencyGroups | None = None,
        budget: ConcurrencyBudget | None = None,
        max_parallel: int | None = None,
        gate_timeout: float | None = None,
        gate_poll_interval: float = 1.0,
        on_transition: Callable[[StageInstance], None] | None = None,
    ):
        self.executor = executor
        self.gates = gates or GateTable()
        self.store = store
        self.groups = groups or ConcurrencyGroups()
        self.budget = budget or ConcurrencyBudget(None)
        self.max_parallel = max_parallel
        self.gate_timeout = gate_timeout
        self.gate_poll_interval = gate_poll_interval
        self.on_transition = on_transition
        self._lock = threading.Lock()
        self._active: Dict[str, RunRecord] = {}
        self._attached: List[Tuple[str, Callable[..., bool]]] = []

    def active_runs(self) -> List[RunRecord]:
        with self._lock:
            return list(self._active.values())

    def _attach_policies(self, workflow: Workflow) -> None:
        with self._lock:
            for pattern, policy in workflow.approvals.items():
                if any(p == pattern and fn is policy for p, fn in self._attached):
                    continue
                self.gates.attach_policy(pattern, policy)
                self._attached.append((pattern, policy))

    def _prepare(self, workflow: Workflow, trigger: TriggerContext, run_id: str) -> Tuple[StageGraph, RunRecord]:
        graph = plan(workflow)
        record = RunRecord(
            run_id=run_id,
            trigger=trigger,
            instances={inst.id: inst for inst in graph},
            gates=self.gates,
            workflow=workflow.name,
        )
        return graph, record

    def _scheduler(self, workflow: Workflow, graph: StageGraph, record: RunRecord,
                   engine: ReleaseDecisionEngine | None) -> Scheduler:
        return Scheduler(
            graph,
            record,
            self.executor,
            release_engine=engine,
            max_parallel=workflow.max_parallel or self.max_parallel,
            fail_fast=workflow.fail_fast,
            budget=self.budget,
            journal=self.store,
            gate_timeout=self.gate_timeout,
            on_transition=self.on_transition,
        )

    def start(
        self,
        workflow: Workflow,
        trigger: TriggerContext,
        *,
        version_source: VersionSource | None = None,
        run_id: str | None = None,
    ) -> Optional[RunRecord]:
        """
        Run *workflow* for *trigger* to completion.

        Returns None when the workflow's trigger filter rejects the event.
        Configuration errors propagate before any stage starts.
        """
        if not trigger.workflow:
            trigger = replace(trigger, workflow=workflow.name)
        if workflow.on and not evaluate(workflow.on, trigger):
            logger.info("workflow %s not triggered by %s on %s", workflow.name, trigger.event.value, trigger.ref)
            return None

        self._attach_policies(workflow)
        run_id = run_id or new_run_id()
        graph, record = self._prepare(workflow, trigger, run_id)
        engine = ReleaseDecisionEngine(version_source) if version_source else None
        group = workflow.concurrency_group(trigger)
        if self.store is not None:
            self.store.create_run(run_id, trigger, workflow.name, group)
        return self._execute(workflow, graph, record, engine, group)

    def resume(
        self,
        workflow: Workflow,
        run_id: str,
        *,
        version_source: VersionSource | None = None,
    ) -> RunRecord:
        """Continue a persisted run; succeeded stages are restored, not re-run."""
        if self.store is None:
            raise RuntimeError("resume requires a run store")
        persisted = self.store.load(run_id)
        self._attach_policies(workflow)
        graph, record = self._prepare(workflow, persisted.trigger, run_id)

        for iid, stage in persisted.stages.items():
            inst = record.instances.get(iid)
            if inst is None or stage.state != State.SUCCEEDED:
                continue
            inst.state = State.SUCCEEDED
            inst.outputs = dict(stage.outputs)
            record.outputs.restore(iid, stage.outputs)

        for gate in persisted.gates:
            if gate.actor == RUN_FINISHED_ACTOR:
                self.gates.reopen(gate)
            else:
                self.gates.restore(gate)

        engine = ReleaseDecisionEngine(version_source) if version_source else None
        if persisted.release is not None:
            if engine is None:
                raise RuntimeError(f"run {run_id} recorded a release decision; a version source is required")
            engine.restore(persisted.release)
            if persisted.release.decision == ReleaseDecision.RELEASE:
                record.outputs.restore(RUN_SCOPE, {"release_tag": persisted.release.tag})

        restored = sum(1 for i in record.instances.values() if i.state == State.SUCCEEDED)
        logger.warning("resuming run %s: %d of %d stages already succeeded", run_id, restored, len(record.instances))
        self.store.reopen_run(run_id)
        group = persisted.concurrency_group or workflow.concurrency_group(persisted.trigger)
        return self._execute(workflow, graph, record, engine, group)

    def _execute(self, workflow: Workflow, graph: StageGraph, record: RunRecord,
                 engine: ReleaseDecisionEngine | None, group: str) -> RunRecord:
        scheduler = self._scheduler(workflow, graph, record, engine)
        with self._lock:
            self._active[record.run_id] = record

        if self.store is not None and workflow.cancel_in_progress:
            older = self.store.supersede(group, record.run_id, f"superseded by run {record.run_id}")
            if older:
                logger.warning("run %s supersedes run(s) %s in group %s", record.run_id, ", ".join(older), group)

        sync = None
        entered = self.groups.enter(group, record.run_id, scheduler, workflow.cancel_in_progress)
        try:
            if not entered:
                scheduler.cancel("superseded before start")
            elif self.store is not None:
                sync = _StoreSync(self.store, self.gates, scheduler, record.run_id, self.gate_poll_interval)
                sync.start()
            return scheduler.run()
        finally:
            if sync is not None:
                sync.stopped.set()
            if entered:
                self.groups.leave(group, record.run_id)
            with self._lock:
                self._active.pop(record.run_id, None)

    def pending_gates(self, run_id: str | None = None):
        return self.gates.pending(run_id)
