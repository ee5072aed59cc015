# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .model import MatrixSpec, StageTemplate, Step, Workflow


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    dimensions: Mapping[str, Iterable[object]] | None = None,
    *,
    include: Optional[List[Dict[str, str]]] = None,
    exclude: Optional[List[Dict[str, str]]] = None,
    **dims: Iterable[object],
) -> MatrixSpec:
    """
    Build a MatrixSpec. Values are coerced to str.

        matrix(os=["linux", "macos"], py=["3.11", "3.12"])
        matrix({"os": [...]}, exclude=[{"os": "macos", "py": "3.11"}])
    """
    merged: Dict[str, List[str]] = {}
    for key, values in {**(dimensions or {}), **dims}.items():
        merged[key] = [str(v) for v in values]
    return MatrixSpec(
        dimensions=merged,
        include=[{k: str(v) for k, v in row.items()} for row in include or []],
        exclude=[{k: str(v) for k, v in row.items()} for row in exclude or []],
    )


# ---------------------------------------------------------------------
# Functional stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,  # allow: stage("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    inputs: Optional[List[str]] = None,
    outputs: Optional[List[str]] = None,
    when: Optional[str] = None,
    matrix: Optional[MatrixSpec] = None,
    environment: Optional[str] = None,
    release: bool = False,
    fail_fast: bool = False,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> StageTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return StageTemplate(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        inputs=list(inputs or []),
        outputs=list(outputs or []),
        condition=when,
        matrix=matrix,
        environment=environment,
        release=release,
        fail_fast=fail_fast,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._needs: list[str] = []
        self._inputs: list[str] = []
        self._outputs: list[str] = []
        self._env: dict[str, str] = {}
        self._condition: Optional[str] = None
        self._matrix: Optional[MatrixSpec] = None
        self._environment: Optional[str] = None
        self._release = False
        self._fail_fast = False

    def depends_on(self, *stage_names: str):
        self._needs.extend(stage_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def consumes(self, *refs: str):
        self._inputs.extend(refs)
        return self

    def produces(self, *keys: str):
        self._outputs.extend(keys)
        return self

    def when(self, expression: str):
        self._condition = expression
        return self

    def over(self, spec: MatrixSpec, *, fail_fast: bool = False):
        self._matrix = spec
        self._fail_fast = fail_fast
        return self

    def gated_by(self, environment: str):
        self._environment = environment
        return self

    def as_release(self):
        self._release = True
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> StageTemplate:
        return StageTemplate(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            inputs=list(self._inputs),
            outputs=list(self._outputs),
            condition=self._condition,
            matrix=self._matrix,
            environment=self._environment,
            release=self._release,
            fail_fast=self._fail_fast,
            env=dict(self._env),
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *stages: StageTemplate,
    on: Optional[str] = None,
    concurrency: str = "{workflow}@{ref}",
    cancel_in_progress: bool = True,
    fail_fast: bool = False,
    max_parallel: Optional[int] = None,
    approvals: Optional[Dict[str, Callable[..., bool]]] = None,
) -> Workflow:
    """
    Workflow definition helper. Named `wf` so a workflow file can still
    define its own `workflow()`:

        from relayci import wf, stage, sh

        def workflow():
            return wf(
                "ci",
                stage("lint", sh("ruff", "ruff check .")),
                stage("test", sh("pytest", "pytest -q"), needs=["lint"]),
                on="event == 'push'",
            )
    """
    return Workflow(
        name=name,
        stages=list(stages),
        on=on,
        concurrency=concurrency,
        cancel_in_progress=cancel_in_progress,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        approvals=dict(approvals or {}),
    )
