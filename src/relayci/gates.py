# gates.py
"""
Approval gates guarding environment-scoped stages.

A gate is requested when a stage guarded by it becomes runnable. It starts
Pending and is decided exactly once, either by an actor (human or external
automation calling `decide`) or immediately by an approval policy attached
to the gate name.
"""
from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field, replace
from fnmatch import fnmatch
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from ._log import get_logger
from .conditions import evaluate
from .errors import GateError
from .model import TriggerContext

logger = get_logger("gates")


class GateStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


_DECISIONS = {
    "approve": GateStatus.APPROVED,
    "approved": GateStatus.APPROVED,
    "reject": GateStatus.REJECTED,
    "rejected": GateStatus.REJECTED,
}


# actor recorded on gates still pending when their run ends
RUN_FINISHED_ACTOR = "system:run-finished"


def gate_id(run_id: str, name: str) -> str:
    return f"{run_id}/{name}"


@dataclass
class Gate:
    name: str
    run_id: str
    status: GateStatus = GateStatus.PENDING
    actor: Optional[str] = None
    comment: str = ""
    requested_at: float = field(default_factory=time.time)
    decided_at: Optional[float] = None

    @property
    def id(self) -> str:
        return gate_id(self.run_id, self.name)


@dataclass(frozen=True)
class PolicyContext:
    """What an approval policy may look at."""
    gate: str
    run_id: str
    trigger: TriggerContext
    gates: Mapping[str, GateStatus] = field(default_factory=dict)
    release: Optional[Mapping[str, str]] = None


Policy = Callable[[PolicyContext], bool]


def when(expression: str) -> Policy:
    """Approve when a condition expression holds for the run's trigger."""

    def policy(ctx: PolicyContext) -> bool:
        return evaluate(expression, ctx.trigger, release=lambda: ctx.release or {})

    policy.__name__ = f"when({expression})"
    return policy


def after_approved(*gate_names: str) -> Policy:
    """Approve when every named upstream gate of the same run is approved."""

    def policy(ctx: PolicyContext) -> bool:
        return all(ctx.gates.get(n) == GateStatus.APPROVED for n in gate_names)

    policy.__name__ = f"after_approved({', '.join(gate_names)})"
    return policy


def all_of(*policies: Policy) -> Policy:
    def policy(ctx: PolicyContext) -> bool:
        return all(p(ctx) for p in policies)

    policy.__name__ = "all_of(" + ", ".join(getattr(p, "__name__", "?") for p in policies) + ")"
    return policy


class GateTable:
    """Process-wide table of gates, keyed by ``<run_id>/<name>``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._gates: Dict[str, Gate] = {}
        self._policies: List[Tuple[str, Policy]] = []
        self._listeners: List[Callable[[Gate], None]] = []

    # ------------------------------------------------------------------
    # Policies and listeners
    # ------------------------------------------------------------------

    def attach_policy(self, pattern: str, policy: Policy) -> None:
        """Attach an approval policy to every gate whose name matches *pattern*."""
        with self._lock:
            self._policies.append((pattern, policy))

    def _policy_for(self, name: str) -> Optional[Policy]:
        for pattern, policy in self._policies:
            if fnmatch(name, pattern):
                return policy
        return None

    def subscribe(self, callback: Callable[[Gate], None]) -> Callable[[], None]:
        """Call *callback* with a copy of each gate as it is decided."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, gate: Gate) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            cb(gate)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, gate: Gate, status: GateStatus, actor: str, comment: str) -> Gate:
        gate.status = status
        gate.actor = actor
        gate.comment = comment
        gate.decided_at = time.time()
        logger.info("gate %s %s by %s", gate.id, status.value, actor)
        return replace(gate)

    def request(
        self,
        name: str,
        run_id: str,
        trigger: TriggerContext | None = None,
        release: Mapping[str, str] | None = None,
    ) -> Gate:
        """
        Create (or reuse) the Pending gate *name* for *run_id*.

        An attached policy is evaluated right away; when it holds the gate
        is approved before this call returns.
        """
        decided: Optional[Gate] = None
        with self._lock:
            gid = gate_id(run_id, name)
            gate = self._gates.get(gid)
            if gate is not None:
                return replace(gate)
            gate = Gate(name=name, run_id=run_id)
            self._gates[gid] = gate
            logger.info("gate %s pending", gid)

            policy = self._policy_for(name)
            if policy is not None and trigger is not None:
                ctx = PolicyContext(
                    gate=name,
                    run_id=run_id,
                    trigger=trigger,
                    gates=self.statuses(run_id),
                    release=release,
                )
                try:
                    approved = bool(policy(ctx))
                except Exception as e:
                    logger.warning("approval policy for %s raised, leaving pending: %s", gid, e)
                    approved = False
                if approved:
                    label = getattr(policy, "__name__", "policy")
                    decided = self._transition(gate, GateStatus.APPROVED, f"policy:{label}", "auto approve")
            snapshot = replace(gate)

        if decided is not None:
            self._notify(decided)
        return snapshot

    def decide(self, gid: str, decision: str | GateStatus, actor: str, comment: str = "") -> GateStatus:
        """
        Approve or reject a pending gate.

        Only the first decision counts; later calls return it unchanged.
        """
        if isinstance(decision, GateStatus):
            status = decision
        else:
            status = _DECISIONS.get(str(decision).lower())
        if status not in (GateStatus.APPROVED, GateStatus.REJECTED):
            raise GateError(f"Invalid gate decision: {decision!r}")

        with self._lock:
            gate = self._gates.get(gid)
            if gate is None:
                raise GateError(f"Unknown gate: {gid}")
            if gate.status != GateStatus.PENDING:
                return gate.status
            decided = self._transition(gate, status, actor, comment)

        self._notify(decided)
        return decided.status

    def restore(self, gate: Gate) -> None:
        """Reinstate a gate recovered from persistence."""
        with self._lock:
            self._gates[gate.id] = replace(gate)

    def reopen(self, gate: Gate) -> None:
        """Reinstate *gate* as a fresh Pending gate (its run is being resumed)."""
        with self._lock:
            self._gates[gate.id] = Gate(name=gate.name, run_id=gate.run_id)

    def close_run(self, run_id: str) -> List[str]:
        """Reject every gate of *run_id* that is still pending; returns their ids."""
        closed = [g.id for g in self.pending(run_id)]
        for gid in closed:
            self.decide(gid, GateStatus.REJECTED, RUN_FINISHED_ACTOR, "run finished")
        return closed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, gid: str) -> Gate:
        with self._lock:
            gate = self._gates.get(gid)
            if gate is None:
                raise GateError(f"Unknown gate: {gid}")
            return replace(gate)

    def pending(self, run_id: str | None = None) -> List[Gate]:
        with self._lock:
            return [
                replace(g)
                for g in self._gates.values()
                if g.status == GateStatus.PENDING and (run_id is None or g.run_id == run_id)
            ]

    def statuses(self, run_id: str) -> Dict[str, GateStatus]:
        with self._lock:
            return {g.name: g.status for g in self._gates.values() if g.run_id == run_id}

    def all(self) -> List[Gate]:
        with self._lock:
            return [replace(g) for g in self._gates.values()]
