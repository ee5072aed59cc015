# executor.py
from __future__ import annotations

import inspect
import os
import re
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union

from ._log import get_logger
from .errors import StageFailure
from .model import StageInstance, Step

logger = get_logger("executor")

SET_OUTPUT_RE = re.compile(r"^::set-output name=([A-Za-z0-9_\-]+)::(.*)$")


@dataclass
class StageResult:
    """What the executor reports back: status plus written outputs."""
    status: str  # "succeeded" | "failed" | "cancelled"
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    logs: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def success(cls, outputs: Mapping[str, str] | None = None, logs: str = "") -> "StageResult":
        return cls(status="succeeded", outputs=dict(outputs or {}), logs=logs)

    @classmethod
    def failure(cls, error: str, logs: str = "") -> "StageResult":
        return cls(status="failed", error=error, logs=logs)


class StageExecutor(ABC):
    """
    Runs an opaque stage body.

    The scheduler never interprets what a stage does, only the status and
    the outputs it reports. Implementations should return promptly once
    *cancel* is set.
    """

    @abstractmethod
    def run(
        self,
        instance: StageInstance,
        inputs: Mapping[str, str],
        cancel: threading.Event,
    ) -> StageResult:
        ...


StageFn = Callable[[StageInstance, Mapping[str, str]], Union[None, Mapping[str, str], StageResult]]


class CallableExecutor(StageExecutor):
    """
    Dispatches to Python callables registered per stage name.

    A callable returns a mapping of outputs, a StageResult, or None; an
    exception becomes a failed result. Callables that accept a ``cancel``
    keyword receive the cancellation event.
    """

    def __init__(self, handlers: Mapping[str, StageFn] | None = None,
                 default: StageFn | None = None):
        self.handlers: Dict[str, StageFn] = dict(handlers or {})
        self.default = default

    def register(self, name: str, fn: StageFn) -> None:
        self.handlers[name] = fn

    def run(self, instance, inputs, cancel):
        fn = self.handlers.get(instance.name, self.default)
        if fn is None:
            return StageResult.success()
        try:
            if "cancel" in inspect.signature(fn).parameters:
                out = fn(instance, inputs, cancel=cancel)
            else:
                out = fn(instance, inputs)
        except StageFailure as e:
            return StageResult.failure(str(e))
        except Exception as e:
            return StageResult.failure(f"{type(e).__name__}: {e}")
        if isinstance(out, StageResult):
            return out
        return StageResult.success(out or {})


class ShellExecutor(StageExecutor):
    """
    Runs the template's steps as shell commands, one after another.

    Outputs are collected from ``::set-output name=KEY::VALUE`` lines on
    stdout and from ``KEY=VALUE`` lines appended to the file named by
    ``$RELAYCI_OUTPUT``. Inputs are exported as ``RELAYCI_INPUT_<KEY>``,
    matrix coordinates as ``RELAYCI_MATRIX_<DIM>``.
    """

    def __init__(self, repo_root: str | Path = ".", step_timeout: float | None = None,
                 poll_interval: float = 0.1):
        self.repo_root = Path(repo_root).resolve()
        self.step_timeout = step_timeout
        self.poll_interval = poll_interval

    @staticmethod
    def _env_key(name: str) -> str:
        return re.sub(r"[^A-Za-z0-9]", "_", name).upper()

    def _environment(self, instance: StageInstance, inputs: Mapping[str, str], output_file: str) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(instance.template.env or {})
        env["RELAYCI_STAGE"] = instance.name
        env["RELAYCI_STAGE_ID"] = instance.id
        env["RELAYCI_OUTPUT"] = output_file
        for dim, value in instance.coordinates:
            env[f"RELAYCI_MATRIX_{self._env_key(dim)}"] = value
        for key, value in inputs.items():
            env[f"RELAYCI_INPUT_{self._env_key(key)}"] = value
        return env

    def _run_step(self, instance: StageInstance, step: Step, env: Dict[str, str],
                  cancel: threading.Event) -> tuple[int | None, str, str]:
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StageFailure(stage=instance.id, message=f"step '{step.name}' cwd not found: {cwd}")

        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        started = time.monotonic()
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                return proc.returncode, stdout, stderr
            except subprocess.TimeoutExpired:
                pass
            timed_out = self.step_timeout is not None and time.monotonic() - started > self.step_timeout
            if cancel.is_set() or timed_out:
                proc.terminate()
                try:
                    stdout, stderr = proc.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    stdout, stderr = proc.communicate()
                if timed_out:
                    raise StageFailure(
                        stage=instance.id,
                        message=f"step '{step.name}' timed out after {self.step_timeout}s",
                    )
                return None, stdout, stderr

    def run(self, instance, inputs, cancel):
        outputs: Dict[str, str] = {}
        logs: list[str] = []
        with tempfile.TemporaryDirectory(prefix="relayci-") as tmp:
            output_file = os.path.join(tmp, "output")
            Path(output_file).touch()
            env = self._environment(instance, inputs, output_file)

            for step in instance.template.steps:
                if cancel.is_set():
                    return StageResult(status="cancelled", outputs=outputs, logs="".join(logs))
                logger.info("[%s] ▶ %s", instance.id, step.name)
                try:
                    code, stdout, stderr = self._run_step(instance, step, env, cancel)
                except StageFailure as e:
                    return StageResult.failure(str(e), logs="".join(logs))
                logs.append(stdout)
                logs.append(stderr)
                for line in stdout.splitlines():
                    m = SET_OUTPUT_RE.match(line.strip())
                    if m:
                        outputs[m.group(1)] = m.group(2)
                if code is None:
                    return StageResult(status="cancelled", outputs=outputs, logs="".join(logs))
                if code != 0:
                    failure = StageFailure(stage=instance.id, message=f"step '{step.name}': {step.run}",
                                           exit_code=code)
                    return StageResult.failure(str(failure), logs="".join(logs)[-4000:])

            with open(output_file, encoding="utf-8") as f:
                for line in f:
                    key, sep, value = line.rstrip("\n").partition("=")
                    if sep and key:
                        outputs[key.strip()] = value

        return StageResult.success(outputs, logs="".join(logs))
