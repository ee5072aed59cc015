"""Tests for the data model and the workflow DSL."""

from __future__ import annotations

import pytest

from relayci.dsl import build, matrix, sh, stage, wf
from relayci.model import EventKind, State, StageInstance, Step, TriggerContext, format_instance_id
from tests.conftest import make_trigger


class TestModel:
    def test_trigger_is_read_only(self):
        values = {"sha": "abc"}
        ctx = TriggerContext(event="push", ref="refs/heads/main", values=values)
        values["sha"] = "changed"
        assert ctx.event == EventKind.PUSH
        assert ctx.values["sha"] == "abc"
        with pytest.raises(TypeError):
            ctx.values["sha"] = "x"
        with pytest.raises(AttributeError):
            ctx.ref = "refs/heads/other"

    def test_branch(self):
        assert make_trigger(ref="refs/heads/develop").branch == "develop"
        assert make_trigger(ref="refs/tags/v1.0.0").branch == "v1.0.0"
        assert make_trigger(ref="abc123").branch == "abc123"

    def test_terminal_states(self):
        assert {s for s in State if s.is_terminal} == {
            State.SUCCEEDED,
            State.FAILED,
            State.SKIPPED,
            State.CANCELLED,
        }

    def test_instance_identity(self):
        assert format_instance_id("test", ()) == "test"
        assert format_instance_id("test", (("os", "linux"), ("py", "3.12"))) == "test[os=linux,py=3.12]"

    def test_gate_name_placeholders(self):
        inst = StageInstance(
            template=stage("deploy", environment="deploy-{matrix.region}"),
            coordinates=(("region", "eu"),),
        )
        assert inst.gate_name == "deploy-eu"
        assert StageInstance(template=stage("lint")).gate_name is None

    def test_concurrency_group(self):
        workflow = wf("ci")
        assert workflow.concurrency_group(make_trigger()) == "ci@refs/heads/main"
        custom = wf("ci", concurrency="deploy")
        assert custom.concurrency_group(make_trigger()) == "deploy"


class TestDsl:
    def test_stage_helper(self):
        t = stage(
            "dist",
            sh("Build", "python -m build"),
            needs=["test"],
            outputs=["artifact"],
            when="branch == 'main'",
            env={"RETRIES": 3},
            cwd="pkg",
        )
        assert t.steps == [Step(name="Build", run="python -m build", cwd="pkg")]
        assert t.needs == ["test"]
        assert t.outputs == ["artifact"]
        assert t.condition == "branch == 'main'"
        assert t.env == {"RETRIES": "3"}

    def test_matrix_helper_coerces_values(self):
        spec = matrix({"py": [3.11, 3.12]}, os=["linux"], exclude=[{"py": 3.11}])
        assert spec.dimensions == {"py": ["3.11", "3.12"], "os": ["linux"]}
        assert spec.exclude == [{"py": "3.11"}]

    def test_builder(self):
        t = (
            build("publish")
            .depends_on("dist")
            .define_step("Tag", "git tag $RELAYCI_INPUT_RELEASE_TAG")
            .consumes("release_tag")
            .gated_by("release")
            .as_release()
            .build()
        )
        assert t.needs == ["dist"]
        assert t.inputs == ["release_tag"]
        assert t.environment == "release"
        assert t.release is True
        assert t.steps[0].name == "Tag"

    def test_wf(self):
        workflow = wf("ci", stage("a"), stage("b", needs=["a"]), on="event == 'push'", fail_fast=True)
        assert workflow.name == "ci"
        assert [s.name for s in workflow.stages] == ["a", "b"]
        assert workflow.fail_fast is True
        assert workflow.on == "event == 'push'"
