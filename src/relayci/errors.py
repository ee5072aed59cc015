# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class RelayError(Exception):
    """Base class for every error raised by relayci."""


# ----------------------------------------------------------------------
# Configuration errors (detected before any stage starts)
# ----------------------------------------------------------------------

class ConfigError(RelayError, ValueError):
    """Workflow definition is invalid. Fatal to the run before execution."""


class DuplicateStageError(ConfigError):
    pass


class ConditionSyntaxError(ConfigError):
    pass


@dataclass(eq=False)
class CycleError(ConfigError):
    stuck: List[str]

    def __str__(self) -> str:
        return f"Stage graph has a cycle. Stuck stages: {self.stuck}"


@dataclass(eq=False)
class UnknownDependencyError(ConfigError):
    stage: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        msg = f"Stage '{self.stage}' depends on unknown '{self.dependency}'"
        if self.known:
            msg += f". Known: {self.known}"
        return msg


@dataclass(eq=False)
class AmbiguousOutputError(ConfigError):
    stage: str
    reference: str
    producers: List[str]

    def __str__(self) -> str:
        return (
            f"Stage '{self.stage}' input '{self.reference}' is produced by "
            f"{self.producers}; qualify it with matrix coordinates, e.g. name[dim=value].key"
        )


# ----------------------------------------------------------------------
# Runtime errors
# ----------------------------------------------------------------------

class ConditionEvalError(RelayError):
    """A condition could not be evaluated. Always treated as false."""


@dataclass(eq=False)
class ContractViolation(RelayError):
    """A stage reported success without writing every declared output."""
    stage: str
    missing: List[str]

    def __str__(self) -> str:
        return f"[{self.stage}] succeeded without declared outputs: {self.missing}"


@dataclass(eq=False)
class StageFailure(RelayError):
    """Failure reported by the stage executor."""
    stage: str
    message: str
    exit_code: int | None = None

    def __str__(self) -> str:
        if self.exit_code is not None:
            return f"[{self.stage}] failed (exit={self.exit_code}): {self.message}"
        return f"[{self.stage}] failed: {self.message}"


@dataclass(eq=False)
class DuplicateOutputError(RelayError):
    stage: str
    key: str

    def __str__(self) -> str:
        return f"[{self.stage}] output '{self.key}' was already written"


@dataclass(eq=False)
class MissingOutputError(RelayError):
    stage: str
    key: str

    def __str__(self) -> str:
        return f"[{self.stage}] terminated without writing output '{self.key}'"


class GateError(RelayError):
    """Unknown gate or invalid decision."""
