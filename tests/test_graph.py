"""Tests for matrix expansion and the stage graph."""

from __future__ import annotations

import pytest

from relayci.dsl import matrix, stage
from relayci.errors import (
    AmbiguousOutputError,
    ConditionSyntaxError,
    ConfigError,
    CycleError,
    DuplicateStageError,
    UnknownDependencyError,
)
from relayci.graph import RUN_SCOPE, StageGraph, parse_ref
from relayci.matrix import combinations, expand, expand_all
from relayci.model import MatrixSpec, State


def build(*stages):
    return StageGraph.build(expand_all(stages))


class TestMatrix:
    def test_cross_product_in_declared_order(self):
        t = stage("test", matrix=matrix(os=["linux", "macos"], py=["3.10", "3.11", "3.12"]))
        ids = [i.id for i in expand(t)]
        assert ids == [
            "test[os=linux,py=3.10]",
            "test[os=linux,py=3.11]",
            "test[os=linux,py=3.12]",
            "test[os=macos,py=3.10]",
            "test[os=macos,py=3.11]",
            "test[os=macos,py=3.12]",
        ]

    def test_no_matrix_is_single_instance(self):
        assert [i.id for i in expand(stage("lint"))] == ["lint"]

    def test_exclude_and_include(self):
        spec = matrix(
            os=["linux", "windows"],
            arch=["x64", "arm64"],
            exclude=[{"os": "windows", "arch": "arm64"}],
            include=[{"os": "darwin", "arch": "arm64"}],
        )
        assert combinations(spec) == [
            (("os", "linux"), ("arch", "x64")),
            (("os", "linux"), ("arch", "arm64")),
            (("os", "windows"), ("arch", "x64")),
            (("os", "darwin"), ("arch", "arm64")),
        ]

    def test_include_only(self):
        spec = MatrixSpec(include=[{"target": "x86_64"}, {"target": "aarch64"}])
        assert combinations(spec) == [(("target", "x86_64"),), (("target", "aarch64"),)]

    def test_empty_dimension_rejected(self):
        with pytest.raises(ConfigError):
            combinations(MatrixSpec(dimensions={"os": []}))

    def test_everything_excluded_rejected(self):
        with pytest.raises(ConfigError):
            combinations(matrix(os=["linux"], exclude=[{"os": "linux"}]))


class TestBuildErrors:
    def test_cycle(self):
        with pytest.raises(CycleError) as exc:
            build(stage("a", needs=["b"]), stage("b", needs=["a"]), stage("c"))
        assert exc.value.stuck == ["a", "b"]

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependencyError) as exc:
            build(stage("a", needs=["nope"]))
        assert exc.value.dependency == "nope"

    def test_duplicate_identity(self):
        with pytest.raises(DuplicateStageError):
            build(stage("a"), stage("a"))

    def test_condition_syntax_checked_at_build(self):
        with pytest.raises(ConditionSyntaxError):
            build(stage("a", when="outputs.tag == 'x'"))

    def test_ambiguous_matrix_output(self):
        with pytest.raises(AmbiguousOutputError) as exc:
            build(
                stage("build", outputs=["bin"], matrix=matrix(os=["linux", "macos"])),
                stage("pack", needs=["build"], inputs=["build.bin"]),
            )
        assert exc.value.producers == ["build[os=linux]", "build[os=macos]"]

    def test_input_must_come_from_an_ancestor(self):
        with pytest.raises(UnknownDependencyError):
            build(stage("a", outputs=["x"]), stage("b", inputs=["a.x"]))

    def test_release_tag_needs_a_release_stage(self):
        with pytest.raises(UnknownDependencyError):
            build(stage("a"), stage("b", needs=["a"], inputs=["release_tag"]))

    def test_malformed_reference(self):
        with pytest.raises(UnknownDependencyError):
            parse_ref("build[os].bin", "pack")


class TestResolution:
    def test_qualified_reference(self):
        g = build(
            stage("build", outputs=["bin"], matrix=matrix(os=["linux", "macos"])),
            stage("pack", needs=["build"], inputs=["build[os=macos].bin"]),
        )
        assert g.inputs_of("pack") == {"bin": ("build[os=macos]", "bin")}

    def test_matching_coordinates_resolve(self):
        g = build(
            stage("build", outputs=["bin"], matrix=matrix(os=["linux", "macos"])),
            stage("test", needs=["build"], inputs=["build.bin"], matrix=matrix(os=["linux", "macos"])),
        )
        assert g.inputs_of("test[os=linux]") == {"bin": ("build[os=linux]", "bin")}
        assert g.inputs_of("test[os=macos]") == {"bin": ("build[os=macos]", "bin")}
        assert g.producer_of("test[os=macos]", "build.bin") == "build[os=macos]"
        with pytest.raises(KeyError):
            g.producer_of("test[os=macos]", "build.other")

    def test_bare_key(self):
        g = build(stage("info", outputs=["tag"]), stage("publish", needs=["info"], inputs=["tag"]))
        assert g.inputs_of("publish") == {"tag": ("info", "tag")}

    def test_release_tag_is_run_scoped(self):
        g = build(
            stage("publish", release=True, inputs=["release_tag"]),
            stage("docs", needs=["publish"], inputs=["release_tag"]),
        )
        assert g.inputs_of("publish") == {"release_tag": (RUN_SCOPE, "release_tag")}
        assert g.inputs_of("docs") == {"release_tag": (RUN_SCOPE, "release_tag")}

    def test_condition_output_producer(self):
        g = build(stage("info", outputs=["tag"]), stage("publish", needs=["info"], when="outputs.info.tag != ''"))
        assert g.condition_producer("publish", "info", "tag") == "info"


class TestQueries:
    def setup_method(self):
        self.g = build(
            stage("lint"),
            stage("test", needs=["lint"], matrix=matrix(py=["3.11", "3.12"])),
            stage("dist", needs=["test"]),
            stage("docs"),
        )

    def test_order_respects_dependencies(self):
        order = self.g.order()
        assert order.index("lint") < order.index("test[py=3.11]") < order.index("dist")

    def test_levels(self):
        assert self.g.levels() == [["lint", "docs"], ["test[py=3.11]", "test[py=3.12]"], ["dist"]]

    def test_dependencies_span_all_instances(self):
        assert self.g.dependencies("dist") == {"test[py=3.11]", "test[py=3.12]"}
        assert self.g.dependents("lint") == {"test[py=3.11]", "test[py=3.12]"}

    def test_descendants_and_siblings(self):
        assert self.g.descendants("lint") == ["test[py=3.11]", "test[py=3.12]", "dist"]
        assert self.g.siblings("test[py=3.11]") == ["test[py=3.12]"]

    def test_ready(self, trigger):
        states = {iid: State.PENDING for iid in self.g.order()}
        assert self.g.ready(states, trigger) == {"lint", "docs"}
        states["lint"] = State.SUCCEEDED
        assert self.g.ready(states, trigger) == {"test[py=3.11]", "test[py=3.12]", "docs"}

    def test_dependency_status(self):
        states = {iid: State.PENDING for iid in self.g.order()}
        assert self.g.dependency_status("test[py=3.11]", states) == "waiting"
        states["lint"] = State.SKIPPED
        assert self.g.dependency_status("test[py=3.11]", states) == "blocked-out"
        states["lint"] = State.SUCCEEDED
        assert self.g.dependency_status("test[py=3.11]", states) == "satisfied"
