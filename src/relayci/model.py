# model.py
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple


class EventKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"
    SCHEDULE = "schedule"


class State(str, enum.Enum):
    """Lifecycle of a stage instance inside one run."""
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({State.SUCCEEDED, State.FAILED, State.SKIPPED, State.CANCELLED})


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a stage body."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class TriggerContext:
    """
    Why a run started. Created once per run and read-only afterwards.

    `values` carries arbitrary string facts about the trigger (commit sha,
    computed version, ...). It is exposed as a read-only mapping.
    """
    event: EventKind
    ref: str
    fork: bool = False
    actor: str = ""
    values: Mapping[str, str] = field(default_factory=dict)
    changed_files: Tuple[str, ...] = ()
    workflow: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "event", EventKind(self.event))
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "changed_files", tuple(self.changed_files))

    @property
    def branch(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def concurrency_group(self) -> str:
        return f"{self.workflow}@{self.ref}" if self.workflow else self.ref


@dataclass(frozen=True)
class MatrixSpec:
    """
    Named dimensions multiplied into concrete stage instances.

    `include` entries are appended after the cross product, `exclude`
    entries remove every combination they match.
    """
    dimensions: Dict[str, List[str]] = field(default_factory=dict)
    include: List[Dict[str, str]] = field(default_factory=list)
    exclude: List[Dict[str, str]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.dimensions) or bool(self.include)


@dataclass
class StageTemplate:
    """
    A named unit of work: body + dependencies + outputs + routing metadata.

    `needs` names other templates. `inputs` are output references of the
    form ``stage.key``, ``stage[dim=value].key`` or a bare ``key``.
    `environment` names the approval gate guarding this stage and may use
    ``{matrix.<dim>}`` placeholders.
    """
    name: str
    steps: list[Step] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    condition: Optional[str] = None
    matrix: Optional[MatrixSpec] = None
    environment: Optional[str] = None
    release: bool = False
    fail_fast: bool = False
    env: Dict[str, str] = field(default_factory=dict)


Coordinates = Tuple[Tuple[str, str], ...]


def format_instance_id(name: str, coordinates: Coordinates) -> str:
    if not coordinates:
        return name
    inner = ",".join(f"{k}={v}" for k, v in coordinates)
    return f"{name}[{inner}]"


@dataclass
class StageInstance:
    """A template bound to one concrete matrix combination."""
    template: StageTemplate
    coordinates: Coordinates = ()
    state: State = State.PENDING
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def id(self) -> str:
        return format_instance_id(self.template.name, self.coordinates)

    @property
    def matrix(self) -> Dict[str, str]:
        return dict(self.coordinates)

    @property
    def gate_name(self) -> Optional[str]:
        env = self.template.environment
        if not env:
            return None
        for dim, value in self.coordinates:
            env = env.replace(f"{{matrix.{dim}}}", value)
        return env

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at


@dataclass
class Workflow:
    """
    A complete pipeline definition.

    `on` filters which triggers start a run at all; `concurrency` is the
    group template (``{workflow}`` and ``{ref}`` placeholders).
    `approvals` maps gate-name patterns to approval policies.
    """
    name: str
    stages: list[StageTemplate]
    on: Optional[str] = None
    concurrency: str = "{workflow}@{ref}"
    cancel_in_progress: bool = True
    fail_fast: bool = False
    max_parallel: Optional[int] = None
    approvals: Dict[str, Callable[..., bool]] = field(default_factory=dict)

    def concurrency_group(self, trigger: TriggerContext) -> str:
        return self.concurrency.replace("{workflow}", self.name).replace("{ref}", trigger.ref)
