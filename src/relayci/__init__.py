from .gates import GateTable, after_approved, all_of, when
from .model import EventKind, MatrixSpec, StageTemplate, Step, TriggerContext, Workflow
from .runner import Orchestrator, load_workflow, plan
# Imported last: loading the relayci.matrix submodule would otherwise shadow dsl.matrix.
from .dsl import stage, sh, matrix, wf, StageBuilder, build

__all__ = [
    "stage", "sh", "matrix", "wf", "StageBuilder", "build",
    "GateTable", "after_approved", "all_of", "when",
    "EventKind", "MatrixSpec", "StageTemplate", "Step", "TriggerContext", "Workflow",
    "Orchestrator", "load_workflow", "plan",
]
