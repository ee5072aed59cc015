# graph.py
from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from . import conditions
from .errors import (
    AmbiguousOutputError,
    CycleError,
    DuplicateStageError,
    UnknownDependencyError,
)
from .model import State, StageInstance, TriggerContext

RUN_SCOPE = "run"
RUN_SCOPED_OUTPUTS = frozenset({"release_tag"})

_REF_RE = re.compile(
    r"^(?:(?P<stage>[A-Za-z0-9_\-]+)(?:\[(?P<quals>[^\]]*)\])?\.)?(?P<key>[A-Za-z0-9_\-]+)$"
)


@dataclass(frozen=True)
class OutputRef:
    """Parsed input reference: ``[stage[dim=value,...].]key``."""
    raw: str
    stage: Optional[str]
    qualifiers: Tuple[Tuple[str, str], ...]
    key: str


def parse_ref(raw: str, consumer: str = "?") -> OutputRef:
    m = _REF_RE.match(raw.strip())
    if not m:
        raise UnknownDependencyError(stage=consumer, dependency=raw)
    quals: List[Tuple[str, str]] = []
    if m.group("quals"):
        for part in m.group("quals").split(","):
            dim, sep, value = part.partition("=")
            if not sep:
                raise UnknownDependencyError(stage=consumer, dependency=raw)
            quals.append((dim.strip(), value.strip()))
    return OutputRef(raw=raw, stage=m.group("stage"), qualifiers=tuple(quals), key=m.group("key"))


def _compatible(consumer: StageInstance, producer: StageInstance) -> bool:
    mine = consumer.matrix
    return all(mine[d] == v for d, v in producer.coordinates if d in mine)


class StageGraph:
    """
    Validated DAG of stage instances.

    Edges run from dependency to dependent. Every input reference and
    every ``outputs.<stage>.<key>`` condition reference has been resolved to
    exactly one producing instance (or to the run scope) at build time.
    """

    def __init__(
        self,
        instances: Dict[str, StageInstance],
        deps: Dict[str, Set[str]],
        adj: Dict[str, Set[str]],
        ancestors: Dict[str, Set[str]],
        order: List[str],
    ):
        self.instances = instances
        self._order = order
        self._deps = deps
        self._adj = adj
        self._ancestors = ancestors
        self._inputs: Dict[str, Dict[str, Tuple[str, str]]] = {}
        self._condition_refs: Dict[Tuple[str, str, str], str] = {}

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, instances: Iterable[StageInstance]) -> "StageGraph":
        by_id: Dict[str, StageInstance] = {}
        by_template: Dict[str, List[str]] = {}
        for inst in instances:
            if inst.id in by_id:
                raise DuplicateStageError(f"Duplicate stage identity: {inst.id}")
            by_id[inst.id] = inst
            by_template.setdefault(inst.name, []).append(inst.id)

        deps: Dict[str, Set[str]] = {i: set() for i in by_id}
        adj: Dict[str, Set[str]] = {i: set() for i in by_id}
        for inst in by_id.values():
            for need in inst.template.needs:
                if need not in by_template:
                    raise UnknownDependencyError(
                        stage=inst.id, dependency=need, known=sorted(by_template)
                    )
                for dep_id in by_template[need]:
                    deps[inst.id].add(dep_id)
                    adj[dep_id].add(inst.id)

        order = _topological_order(by_id, deps, adj)

        ancestors: Dict[str, Set[str]] = {}
        for node in order:
            acc: Set[str] = set()
            for d in deps[node]:
                acc.add(d)
                acc |= ancestors[d]
            ancestors[node] = acc

        graph = cls(by_id, deps, adj, ancestors, order)
        for inst in by_id.values():
            graph._resolve_inputs(inst)
            graph._resolve_condition(inst)
        return graph

    def _candidates(self, consumer: StageInstance, stage: Optional[str], key: str,
                    qualifiers: Tuple[Tuple[str, str], ...]) -> List[str]:
        found: List[str] = []
        for aid in self._ordered(self._ancestors[consumer.id]):
            producer = self.instances[aid]
            if stage is not None and producer.name != stage:
                continue
            if key not in producer.template.outputs:
                continue
            coords = producer.matrix
            if any(coords.get(d) != v for d, v in qualifiers):
                continue
            if not qualifiers and not _compatible(consumer, producer):
                continue
            found.append(aid)
        return found

    def _resolve(self, consumer: StageInstance, ref: OutputRef) -> Tuple[str, str]:
        if ref.stage == RUN_SCOPE or (ref.stage is None and ref.key in RUN_SCOPED_OUTPUTS):
            if ref.key not in RUN_SCOPED_OUTPUTS:
                raise UnknownDependencyError(stage=consumer.id, dependency=ref.raw)
            releasing = consumer.template.release or any(
                self.instances[a].template.release for a in self._ancestors[consumer.id]
            )
            if not releasing:
                raise UnknownDependencyError(
                    stage=consumer.id,
                    dependency=f"{ref.raw} (requires a release stage or a dependency on one)",
                )
            return RUN_SCOPE, ref.key

        found = self._candidates(consumer, ref.stage, ref.key, ref.qualifiers)
        if not found:
            raise UnknownDependencyError(
                stage=consumer.id,
                dependency=ref.raw,
                known=sorted({self.instances[a].name for a in self._ancestors[consumer.id]}),
            )
        if len(found) > 1:
            raise AmbiguousOutputError(stage=consumer.id, reference=ref.raw, producers=found)
        return found[0], ref.key

    def _resolve_inputs(self, inst: StageInstance) -> None:
        resolved: Dict[str, Tuple[str, str]] = {}
        for raw in inst.template.inputs:
            ref = parse_ref(raw, inst.id)
            resolved[ref.key if ref.key not in resolved else ref.raw] = self._resolve(inst, ref)
        self._inputs[inst.id] = resolved

    def _resolve_condition(self, inst: StageInstance) -> None:
        expr = inst.template.condition
        if not expr:
            return
        for stage, key in conditions.output_references(expr):
            ref = OutputRef(raw=f"{stage}.{key}", stage=stage, qualifiers=(), key=key)
            self._condition_refs[(inst.id, stage, key)] = self._resolve(inst, ref)[0]

    def _ordered(self, ids: Iterable[str]) -> List[str]:
        wanted = set(ids)
        return [i for i in self._order if i in wanted]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __iter__(self):
        return iter(self.instances.values())

    def __len__(self) -> int:
        return len(self.instances)

    def order(self) -> List[str]:
        return list(self._order)

    def dependencies(self, instance_id: str) -> Set[str]:
        return set(self._deps[instance_id])

    def dependents(self, instance_id: str) -> Set[str]:
        return set(self._adj[instance_id])

    def descendants(self, instance_id: str) -> List[str]:
        return self._ordered(i for i, anc in self._ancestors.items() if instance_id in anc)

    def siblings(self, instance_id: str) -> List[str]:
        name = self.instances[instance_id].name
        return [i for i in self._order if self.instances[i].name == name and i != instance_id]

    def inputs_of(self, instance_id: str) -> Dict[str, Tuple[str, str]]:
        """``{input name: (producer id, key)}`` for a consumer."""
        return dict(self._inputs[instance_id])

    def producer_of(self, instance_id: str, ref: str) -> str:
        """Producer instance id for one of *instance_id*'s declared inputs."""
        inputs = self._inputs[instance_id]
        parsed = parse_ref(ref, instance_id)
        for name in (parsed.raw, parsed.key):
            if name in inputs:
                return inputs[name][0]
        raise KeyError(f"{instance_id} declares no input {ref!r}")

    def condition_producer(self, instance_id: str, stage: str, key: str) -> Optional[str]:
        return self._condition_refs.get((instance_id, stage, key))

    def levels(self) -> List[List[str]]:
        """Topological tiers; each tier can run in parallel."""
        indeg = {n: len(d) for n, d in self._deps.items()}
        q = deque(n for n in self._order if indeg[n] == 0)
        levels: List[List[str]] = []
        while q:
            level = list(q)
            q.clear()
            levels.append(level)
            for node in level:
                for child in self._ordered(self._adj[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
        return levels

    def dependency_status(self, instance_id: str, states: Mapping[str, State]) -> str:
        """
        "waiting" while any dependency is non-terminal, "blocked-out" when
        one ended Failed/Skipped/Cancelled, "satisfied" when all succeeded.
        """
        deps = self._deps[instance_id]
        if any(states[d] in (State.FAILED, State.SKIPPED, State.CANCELLED) for d in deps):
            return "blocked-out"
        if all(states[d] == State.SUCCEEDED for d in deps):
            return "satisfied"
        return "waiting"

    def ready(
        self,
        states: Mapping[str, State],
        context: TriggerContext,
        *,
        outputs: Callable[[str, str], str] | None = None,
        release: Callable[[], Mapping[str, str]] | None = None,
    ) -> Set[str]:
        """Non-started instances whose dependencies all succeeded and whose condition holds."""
        out: Set[str] = set()
        for iid, inst in self.instances.items():
            if states[iid] not in (State.PENDING, State.BLOCKED, State.READY):
                continue
            if self.dependency_status(iid, states) != "satisfied":
                continue
            if self.condition_holds(iid, context, outputs=outputs, release=release):
                out.add(iid)
        return out

    def condition_holds(
        self,
        instance_id: str,
        context: TriggerContext,
        *,
        outputs: Callable[[str, str], str] | None = None,
        release: Callable[[], Mapping[str, str]] | None = None,
    ) -> bool:
        inst = self.instances[instance_id]

        def lookup(stage: str, key: str) -> str:
            producer = self.condition_producer(instance_id, stage, key)
            if producer is None or outputs is None:
                raise KeyError(f"{stage}.{key}")
            return outputs(producer, key)

        return conditions.evaluate(
            inst.template.condition,
            context,
            matrix=inst.matrix,
            outputs=lookup,
            release=release,
        )


def _topological_order(
    by_id: Dict[str, StageInstance],
    deps: Dict[str, Set[str]],
    adj: Dict[str, Set[str]],
) -> List[str]:
    position = {iid: n for n, iid in enumerate(by_id)}
    indeg = {n: len(d) for n, d in deps.items()}
    q = deque(n for n in by_id if indeg[n] == 0)
    order: List[str] = []
    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(adj[node], key=position.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(order) != len(by_id):
        raise CycleError(stuck=sorted(n for n, d in indeg.items() if d > 0))
    return order
