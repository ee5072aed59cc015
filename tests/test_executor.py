"""Tests for the shell and callable stage executors."""

from __future__ import annotations

import threading

from relayci.dsl import matrix, sh, stage
from relayci.errors import StageFailure
from relayci.executor import CallableExecutor, ShellExecutor, StageResult
from relayci.matrix import expand
from relayci.model import StageInstance
from tests.conftest import Background


def instance(*steps, **kwargs) -> StageInstance:
    return StageInstance(template=stage("build", *steps, **kwargs))


class TestShellExecutor:
    def test_set_output_lines(self, tmp_path):
        inst = instance(sh("Tag", "echo '::set-output name=tag::v1.3.0'"), outputs=["tag"])
        result = ShellExecutor(tmp_path).run(inst, {}, threading.Event())
        assert result.ok
        assert result.outputs == {"tag": "v1.3.0"}

    def test_output_file(self, tmp_path):
        inst = instance(sh("Artifact", 'echo "artifact=dist/app.whl" >> "$RELAYCI_OUTPUT"'))
        result = ShellExecutor(tmp_path).run(inst, {}, threading.Event())
        assert result.outputs == {"artifact": "dist/app.whl"}

    def test_inputs_and_matrix_exported(self, tmp_path):
        template = stage(
            "build",
            sh("Echo", 'echo "::set-output name=seen::$RELAYCI_INPUT_TAG-$RELAYCI_MATRIX_OS"'),
            matrix=matrix(os=["linux"]),
        )
        inst = expand(template)[0]
        result = ShellExecutor(tmp_path).run(inst, {"tag": "v2"}, threading.Event())
        assert result.outputs == {"seen": "v2-linux"}

    def test_failing_step_stops_stage(self, tmp_path):
        inst = instance(sh("Fail", "exit 3"), sh("Never", "echo '::set-output name=x::1'"))
        result = ShellExecutor(tmp_path).run(inst, {}, threading.Event())
        assert result.status == "failed"
        assert "exit=3" in result.error
        assert result.outputs == {}

    def test_step_env(self, tmp_path):
        inst = instance(sh("Env", 'echo "::set-output name=mode::$MODE"'), env={"MODE": "release"})
        result = ShellExecutor(tmp_path).run(inst, {}, threading.Event())
        assert result.outputs == {"mode": "release"}

    def test_missing_cwd(self, tmp_path):
        inst = instance(sh("Build", "true", cwd="nope"))
        result = ShellExecutor(tmp_path).run(inst, {}, threading.Event())
        assert result.status == "failed"
        assert "cwd not found" in result.error

    def test_cancel_terminates_step(self, tmp_path):
        cancel = threading.Event()
        inst = instance(sh("Sleep", "sleep 30"))
        bg = Background(ShellExecutor(tmp_path, poll_interval=0.05).run, inst, {}, cancel)
        cancel.set()
        assert bg.join().status == "cancelled"

    def test_step_timeout(self, tmp_path):
        inst = instance(sh("Sleep", "sleep 30"))
        result = ShellExecutor(tmp_path, step_timeout=0.2, poll_interval=0.05).run(inst, {}, threading.Event())
        assert result.status == "failed"
        assert "timed out" in result.error


class TestCallableExecutor:
    def test_mapping_is_success(self):
        ex = CallableExecutor({"build": lambda inst, inputs: {"bin": "out/app"}})
        result = ex.run(instance(), {}, threading.Event())
        assert result == StageResult.success({"bin": "out/app"})

    def test_stage_failure(self):
        def fn(inst, inputs):
            raise StageFailure(stage=inst.id, message="compile error", exit_code=2)

        result = CallableExecutor({"build": fn}).run(instance(), {}, threading.Event())
        assert result.status == "failed"
        assert result.error == "[build] failed (exit=2): compile error"

    def test_cancel_keyword_passed(self):
        seen = []

        def fn(inst, inputs, cancel):
            seen.append(cancel)

        cancel = threading.Event()
        CallableExecutor({"build": fn}).run(instance(), {}, cancel)
        assert seen == [cancel]

    def test_default_handler(self):
        ex = CallableExecutor(default=lambda inst, inputs: {"who": inst.name})
        assert ex.run(instance(), {}, threading.Event()).outputs == {"who": "build"}
