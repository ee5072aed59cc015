"""Tests for workflow loading, concurrency groups, persistence and resume."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from relayci.dsl import sh, stage, wf
from relayci.errors import StageFailure
from relayci.executor import CallableExecutor, StageResult
from relayci.gates import GateStatus, when
from relayci.model import EventKind, RunStatus, State, Workflow
from relayci.release import ReleaseDecision, StaticVersionSource
from relayci.runner import ConcurrencyGroups, Orchestrator, load_workflow
from relayci.store import RunStore
from tests.conftest import Background, make_trigger, wait_for


class TestLoadWorkflow:
    def test_workflow_function(self, tmp_path):
        path = tmp_path / "ci_workflow.py"
        path.write_text(
            "from relayci import wf, stage, sh\n"
            "def workflow():\n"
            "    return wf('ci', stage('lint', sh('ruff', 'ruff check .')), on=\"event == 'push'\")\n"
        )
        loaded = load_workflow(path)
        assert isinstance(loaded, Workflow)
        assert loaded.name == "ci"
        assert [s.name for s in loaded.stages] == ["lint"]

    def test_stages_list(self, tmp_path):
        path = tmp_path / "small_workflow.py"
        path.write_text(
            "from relayci import stage\n"
            "STAGES = [stage('a'), stage('b', needs=['a'])]\n"
        )
        loaded = load_workflow(path)
        assert loaded.name == "small_workflow"
        assert [s.name for s in loaded.stages] == ["a", "b"]

    def test_missing_definition(self, tmp_path):
        path = tmp_path / "empty_workflow.py"
        path.write_text("X = 1\n")
        with pytest.raises(TypeError):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.py")


class TestConcurrencyGroups:
    def test_newer_run_cancels_active(self):
        groups = ConcurrencyGroups()
        old, new = MagicMock(), MagicMock()
        assert groups.enter("ci@main", "r1", old)

        bg = Background(groups.enter, "ci@main", "r2", new)
        wait_for(lambda: old.cancel.called)
        assert groups.active_run("ci@main") == "r1"
        groups.leave("ci@main", "r1")
        assert bg.join() is True
        assert groups.active_run("ci@main") == "r2"

    def test_waiting_run_superseded_before_start(self):
        groups = ConcurrencyGroups()
        assert groups.enter("ci@main", "r1", MagicMock())
        second = Background(groups.enter, "ci@main", "r2", MagicMock())
        wait_for(lambda: groups._latest.get("ci@main") == "r2")
        third = Background(groups.enter, "ci@main", "r3", MagicMock())
        wait_for(lambda: groups._latest.get("ci@main") == "r3")
        groups.leave("ci@main", "r1")
        assert second.join() is False
        assert third.join() is True

    def test_without_cancel_in_progress_runs_queue(self):
        groups = ConcurrencyGroups()
        old = MagicMock()
        assert groups.enter("ci@main", "r1", old, cancel_in_progress=False)
        bg = Background(groups.enter, "ci@main", "r2", MagicMock(), False)
        groups.leave("ci@main", "r1")
        assert bg.join() is True
        old.cancel.assert_not_called()

    def test_groups_are_independent(self):
        groups = ConcurrencyGroups()
        assert groups.enter("ci@main", "r1", MagicMock())
        assert groups.enter("ci@develop", "r2", MagicMock())


class TestOrchestrator:
    def test_trigger_filter(self):
        workflow = wf("ci", stage("a"), on="event == 'pull_request'")
        orchestrator = Orchestrator(CallableExecutor())
        assert orchestrator.start(workflow, make_trigger()) is None
        record = orchestrator.start(workflow, make_trigger(event=EventKind.PULL_REQUEST))
        assert record.ok
        assert record.trigger.workflow == "ci"

    def test_workflow_approvals_attached(self):
        workflow = wf(
            "ci",
            stage("deploy", environment="production"),
            approvals={"production": when("startsWith(ref, 'refs/heads/main')")},
        )
        orchestrator = Orchestrator(CallableExecutor())
        record = orchestrator.start(workflow, make_trigger())
        assert record.ok
        assert record.gate_statuses() == {"production": GateStatus.APPROVED}

    def test_supersede_same_ref(self):
        started = threading.Event()
        calls = []

        def build(inst, inputs, cancel):
            calls.append(inst.id)
            if len(calls) == 1:
                started.set()
                cancel.wait(5)
                return StageResult(status="cancelled")
            return None

        workflow = wf("ci", stage("build"), stage("test", needs=["build"]))
        orchestrator = Orchestrator(CallableExecutor({"build": build}))
        first = Background(orchestrator.start, workflow, make_trigger(), run_id="r1")
        assert started.wait(5)
        second = orchestrator.start(workflow, make_trigger(), run_id="r2")
        old = first.join()

        assert old.status == RunStatus.CANCELLED
        assert old.summary() == {"build": "cancelled", "test": "cancelled"}
        assert second.status == RunStatus.SUCCEEDED
        assert len(calls) == 2

    def test_different_refs_do_not_supersede(self):
        workflow = wf("ci", stage("a"))
        orchestrator = Orchestrator(CallableExecutor())
        assert orchestrator.start(workflow, make_trigger(ref="refs/heads/main")).ok
        assert orchestrator.start(workflow, make_trigger(ref="refs/heads/develop")).ok


class TestPersistence:
    def test_run_is_journaled(self, db_url):
        store = RunStore(db_url)
        workflow = wf("ci", stage("info", outputs=["tag"]), stage("publish", needs=["info"], inputs=["info.tag"]))
        executor = CallableExecutor({"info": lambda inst, inputs: {"tag": "v1"}})
        record = Orchestrator(executor, store=store).start(workflow, make_trigger(actor="alice"))

        persisted = store.load(record.run_id)
        assert persisted.status == RunStatus.SUCCEEDED
        assert persisted.workflow == "ci"
        assert persisted.concurrency_group == "ci@refs/heads/main"
        assert persisted.trigger.actor == "alice"
        assert persisted.stages["info"].outputs == {"tag": "v1"}
        assert persisted.stages["publish"].state == State.SUCCEEDED
        assert store.list_runs()[0]["run_id"] == record.run_id

    def test_resume_skips_succeeded_stages(self, db_url):
        store = RunStore(db_url)
        workflow = wf("ci", stage("info", outputs=["tag"]), stage("publish", needs=["info"], inputs=["info.tag"]))
        info_calls = []

        def info(inst, inputs):
            info_calls.append(inst.id)
            return {"tag": "v1"}

        def broken(inst, inputs):
            raise StageFailure(stage=inst.id, message="registry down")

        first = Orchestrator(CallableExecutor({"info": info, "publish": broken}), store=store)
        record = first.start(workflow, make_trigger())
        assert record.status == RunStatus.FAILED

        got = {}
        second = Orchestrator(
            CallableExecutor({"info": info, "publish": lambda inst, inputs: got.update(inputs)}),
            store=store,
        )
        resumed = second.resume(workflow, record.run_id)
        assert resumed.status == RunStatus.SUCCEEDED
        assert info_calls == ["info"]
        assert got == {"tag": "v1"}
        assert store.load(record.run_id).status == RunStatus.SUCCEEDED

    def test_resume_keeps_release_decision(self, db_url):
        store = RunStore(db_url)
        workflow = wf("ci", stage("publish", release=True, inputs=["release_tag"]), stage("docs", needs=["publish"]))

        def broken(inst, inputs):
            raise StageFailure(stage=inst.id, message="docs host down")

        record = Orchestrator(CallableExecutor({"docs": broken}), store=store).start(
            workflow, make_trigger(), version_source=StaticVersionSource("v1.3.0", "v1.2.0")
        )
        assert record.status == RunStatus.FAILED
        assert store.load(record.run_id).release.decision == ReleaseDecision.RELEASE

        # the registry now reports v1.3.0 as published; the run keeps its original decision
        resumed = Orchestrator(CallableExecutor(), store=store).resume(
            workflow, record.run_id, version_source=StaticVersionSource("v1.3.0", "v1.3.0")
        )
        assert resumed.status == RunStatus.SUCCEEDED
        assert resumed.instances["docs"].state == State.SUCCEEDED

    def test_gate_decided_through_store(self, db_url):
        store = RunStore(db_url)
        workflow = wf("ci", stage("deploy", environment="production"))
        orchestrator = Orchestrator(CallableExecutor(), store=store, gate_poll_interval=0.05)
        bg = Background(orchestrator.start, workflow, make_trigger())
        wait_for(lambda: store.pending_gates())
        gate = store.pending_gates()[0]
        assert store.decide_gate(gate.id, GateStatus.APPROVED, "alice", "ship it") == GateStatus.APPROVED
        record = bg.join()
        assert record.ok
        assert store.load(record.run_id).gates[0].actor == "alice"

    def test_store_keeps_first_decision(self, db_url):
        store = RunStore(db_url)
        workflow = wf("ci", stage("deploy", environment="production"))
        orchestrator = Orchestrator(CallableExecutor(), store=store, gate_timeout=0.1)
        record = orchestrator.start(workflow, make_trigger())
        gid = f"{record.run_id}/production"
        assert store.decide_gate(gid, GateStatus.APPROVED, "alice") == GateStatus.REJECTED
        assert record.instances["deploy"].state == State.SKIPPED

    def test_unknown_gate(self, db_url):
        with pytest.raises(KeyError):
            RunStore(db_url).decide_gate("nope/production", GateStatus.APPROVED, "alice")


class TestStoreConcurrencyGroups:
    def _blocking_build(self, started):
        def build(inst, inputs, cancel):
            started.set()
            cancel.wait(5)
            return StageResult(status="cancelled")

        return build

    def test_newer_run_in_another_orchestrator_cancels_older(self, db_url):
        store = RunStore(db_url)
        started = threading.Event()
        workflow = wf("ci", stage("build"), stage("test", needs=["build"]))
        first = Orchestrator(CallableExecutor({"build": self._blocking_build(started)}), store=store,
                             gate_poll_interval=0.05)
        bg = Background(first.start, workflow, make_trigger(), run_id="r1")
        assert started.wait(5)

        second = Orchestrator(CallableExecutor(), store=RunStore(db_url), gate_poll_interval=0.05)
        newer = second.start(workflow, make_trigger(), run_id="r2")
        old = bg.join()

        assert newer.ok
        assert old.status == RunStatus.CANCELLED
        assert old.summary() == {"build": "cancelled", "test": "cancelled"}
        assert "superseded by run r2" in old.errors[0]
        assert store.load("r1").status == RunStatus.CANCELLED

    def test_other_refs_and_finished_runs_not_flagged(self, db_url):
        store = RunStore(db_url)
        store.create_run("done", make_trigger(), "ci", "ci@refs/heads/main")
        store.finish_run("done", RunStatus.SUCCEEDED, [])
        store.create_run("dev", make_trigger(ref="refs/heads/dev"), "ci", "ci@refs/heads/dev")
        store.create_run("old", make_trigger(), "ci", "ci@refs/heads/main")
        store.create_run("new", make_trigger(), "ci", "ci@refs/heads/main")

        assert store.supersede("ci@refs/heads/main", "new", "superseded by run new") == ["old"]
        assert store.cancel_requested("old") == "superseded by run new"
        assert store.cancel_requested("dev") is None
        assert store.cancel_requested("new") is None

    def test_queued_group_does_not_flag(self, db_url):
        store = RunStore(db_url)
        store.create_run("old", make_trigger(), "ci", "ci@refs/heads/main")
        workflow = wf("ci", stage("a"), cancel_in_progress=False)
        assert Orchestrator(CallableExecutor(), store=store).start(workflow, make_trigger()).ok
        assert store.cancel_requested("old") is None

    def test_superseded_run_closes_its_gates(self, db_url):
        store = RunStore(db_url)
        gated = wf("ci", stage("deploy", environment="production"))
        first = Orchestrator(CallableExecutor(), store=store, gate_poll_interval=0.05)
        bg = Background(first.start, gated, make_trigger(), run_id="r1")
        wait_for(lambda: store.pending_gates())

        second = Orchestrator(CallableExecutor(), store=RunStore(db_url), gate_poll_interval=0.05)
        assert second.start(wf("ci", stage("lint")), make_trigger(), run_id="r2").ok
        old = bg.join()

        assert old.status == RunStatus.CANCELLED
        assert store.pending_gates() == []
        gate = store.load("r1").gates[0]
        assert (gate.status, gate.actor) == (GateStatus.REJECTED, "system:run-finished")
        assert store.decide_gate("r1/production", GateStatus.APPROVED, "alice") == GateStatus.REJECTED

    def test_resume_reopens_closed_gates(self, db_url):
        store = RunStore(db_url)
        workflow = wf("ci", stage("deploy", environment="production"))
        orchestrator = Orchestrator(CallableExecutor(), store=store, gate_poll_interval=0.05)
        bg = Background(orchestrator.start, workflow, make_trigger(), run_id="r1")
        wait_for(lambda: store.pending_gates())
        store.supersede("ci@refs/heads/main", "other", "superseded by run other")
        assert bg.join().status == RunStatus.CANCELLED

        resumed = Background(orchestrator.resume, workflow, "r1")
        wait_for(lambda: store.pending_gates())
        assert store.decide_gate("r1/production", GateStatus.APPROVED, "alice") == GateStatus.APPROVED
        record = resumed.join()
        assert record.ok
        assert record.instances["deploy"].state == State.SUCCEEDED
