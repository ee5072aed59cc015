# store.py
"""
Durable run history.

Every state transition, gate and release decision is written as it
happens, so a restarted process can resume a run: succeeded stages (with
their outputs) are restored instead of re-executed.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ._log import get_logger
from .gates import RUN_FINISHED_ACTOR, Gate, GateStatus
from .model import EventKind, RunStatus, StageInstance, State, TriggerContext
from .release import ReleaseDecision, ReleaseOutcome

logger = get_logger("store")


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    concurrency_group: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    trigger_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    errors: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False)
    finished_at: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)
    cancel_requested: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)


class StageRow(Base):
    __tablename__ = "stage_instances"
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    instance_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    template: Mapped[str] = mapped_column(sa.Text, nullable=False)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)
    finished_at: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)


class GateRow(Base):
    __tablename__ = "gates"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    comment: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    requested_at: Mapped[float] = mapped_column(sa.Float, nullable=False)
    decided_at: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)


class ReleaseRow(Base):
    __tablename__ = "release_decisions"
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    decision: Mapped[str] = mapped_column(sa.Text, nullable=False)
    candidate: Mapped[str] = mapped_column(sa.Text, nullable=False)
    latest: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)


def trigger_to_dict(t: TriggerContext) -> Dict[str, Any]:
    return {
        "event": t.event.value,
        "ref": t.ref,
        "fork": t.fork,
        "actor": t.actor,
        "values": dict(t.values),
        "changed_files": list(t.changed_files),
        "workflow": t.workflow,
    }


def trigger_from_dict(d: Dict[str, Any]) -> TriggerContext:
    return TriggerContext(
        event=EventKind(d["event"]),
        ref=d["ref"],
        fork=bool(d.get("fork", False)),
        actor=d.get("actor", ""),
        values=d.get("values", {}),
        changed_files=tuple(d.get("changed_files", ())),
        workflow=d.get("workflow", ""),
    )


def _gate_from_row(row: GateRow) -> Gate:
    return Gate(
        name=row.name,
        run_id=row.run_id,
        status=GateStatus(row.status),
        actor=row.actor,
        comment=row.comment,
        requested_at=row.requested_at,
        decided_at=row.decided_at,
    )


@dataclass
class PersistedStage:
    instance_id: str
    state: State
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class PersistedRun:
    run_id: str
    workflow: str
    concurrency_group: str
    trigger: TriggerContext
    status: RunStatus
    errors: List[str]
    stages: Dict[str, PersistedStage]
    gates: List[Gate]
    release: Optional[ReleaseOutcome] = None


class RunStore:
    """SQLAlchemy-backed journal of runs. Thread-safe: one session per call."""

    def __init__(self, url: str):
        if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
            Path(url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url == "sqlite://":
                kwargs["poolclass"] = StaticPool
        self.engine = sa.create_engine(url, **kwargs)
        self._session = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self._session()

    # ------------------------------------------------------------------
    # Journal hooks
    # ------------------------------------------------------------------

    def create_run(self, run_id: str, trigger: TriggerContext, workflow: str = "",
                   concurrency_group: str = "") -> None:
        with self.session() as s, s.begin():
            s.add(RunRow(
                id=run_id,
                workflow=workflow,
                concurrency_group=concurrency_group,
                trigger_json=trigger_to_dict(trigger),
                status=RunStatus.RUNNING.value,
                errors=[],
            ))

    def record_state(self, run_id: str, instance: StageInstance) -> None:
        with self.session() as s, s.begin():
            s.merge(StageRow(
                run_id=run_id,
                instance_id=instance.id,
                template=instance.name,
                state=instance.state.value,
                outputs=dict(instance.outputs),
                error=instance.error,
                started_at=instance.started_at,
                finished_at=instance.finished_at,
            ))

    def record_gate(self, gate: Gate) -> None:
        with self.session() as s, s.begin():
            row = s.get(GateRow, gate.id)
            if row is not None and row.status != GateStatus.PENDING.value:
                return
            s.merge(GateRow(
                id=gate.id,
                run_id=gate.run_id,
                name=gate.name,
                status=gate.status.value,
                actor=gate.actor,
                comment=gate.comment,
                requested_at=gate.requested_at,
                decided_at=gate.decided_at,
            ))

    def record_release(self, run_id: str, outcome: ReleaseOutcome) -> None:
        with self.session() as s, s.begin():
            s.merge(ReleaseRow(
                run_id=run_id,
                decision=outcome.decision.value,
                candidate=outcome.candidate,
                latest=outcome.latest,
            ))

    def finish_run(self, run_id: str, status: RunStatus, errors: List[str]) -> None:
        with self.session() as s, s.begin():
            row = s.get(RunRow, run_id)
            if row is None:
                return
            row.status = status.value
            row.errors = list(errors)
            row.finished_at = time.time()

    def reopen_run(self, run_id: str) -> None:
        """Mark *run_id* running again and reopen the gates its end closed."""
        with self.session() as s, s.begin():
            row = s.get(RunRow, run_id)
            if row is not None:
                row.status = RunStatus.RUNNING.value
                row.finished_at = None
                row.cancel_requested = None
            s.execute(
                sa.update(GateRow)
                .where(GateRow.run_id == run_id, GateRow.actor == RUN_FINISHED_ACTOR)
                .values(status=GateStatus.PENDING.value, actor=None, comment="",
                        requested_at=time.time(), decided_at=None)
            )

    # ------------------------------------------------------------------
    # Concurrency groups across processes
    # ------------------------------------------------------------------

    def supersede(self, group: str, run_id: str, reason: str) -> List[str]:
        """Flag every other running run of *group* for cancellation; returns their ids."""
        with self.session() as s, s.begin():
            rows = s.scalars(
                sa.select(RunRow).where(
                    RunRow.concurrency_group == group,
                    RunRow.id != run_id,
                    RunRow.status == RunStatus.RUNNING.value,
                    RunRow.cancel_requested.is_(None),
                )
            ).all()
            for row in rows:
                row.cancel_requested = reason
            return [row.id for row in rows]

    def cancel_requested(self, run_id: str) -> Optional[str]:
        """Reason another process gave for cancelling *run_id*, if any."""
        with self.session() as s:
            row = s.get(RunRow, run_id)
            return row.cancel_requested if row is not None else None

    # ------------------------------------------------------------------
    # Gate decisions from other processes
    # ------------------------------------------------------------------

    def decide_gate(self, gid: str, decision: GateStatus, actor: str, comment: str = "") -> GateStatus:
        """Decide a pending gate row; a decided gate keeps its first decision."""
        with self.session() as s, s.begin():
            row = s.get(GateRow, gid)
            if row is None:
                raise KeyError(gid)
            if row.status == GateStatus.PENDING.value:
                row.status = decision.value
                row.actor = actor
                row.comment = comment
                row.decided_at = time.time()
            return GateStatus(row.status)

    def pending_gates(self) -> List[Gate]:
        with self.session() as s:
            rows = s.scalars(
                sa.select(GateRow).where(GateRow.status == GateStatus.PENDING.value).order_by(GateRow.requested_at)
            ).all()
            return [_gate_from_row(r) for r in rows]

    def decided_gates(self, run_id: str) -> List[Gate]:
        with self.session() as s:
            rows = s.scalars(
                sa.select(GateRow).where(GateRow.run_id == run_id, GateRow.status != GateStatus.PENDING.value)
            ).all()
            return [_gate_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load(self, run_id: str) -> PersistedRun:
        with self.session() as s:
            run = s.get(RunRow, run_id)
            if run is None:
                raise KeyError(run_id)
            stages = s.scalars(sa.select(StageRow).where(StageRow.run_id == run_id)).all()
            gates = s.scalars(sa.select(GateRow).where(GateRow.run_id == run_id)).all()
            rel = s.get(ReleaseRow, run_id)
            return PersistedRun(
                run_id=run.id,
                workflow=run.workflow,
                concurrency_group=run.concurrency_group,
                trigger=trigger_from_dict(run.trigger_json),
                status=RunStatus(run.status),
                errors=list(run.errors or []),
                stages={
                    r.instance_id: PersistedStage(r.instance_id, State(r.state), dict(r.outputs or {}), r.error)
                    for r in stages
                },
                gates=[_gate_from_row(g) for g in gates],
                release=ReleaseOutcome(ReleaseDecision(rel.decision), rel.candidate, rel.latest) if rel else None,
            )

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.session() as s:
            rows = s.scalars(sa.select(RunRow).order_by(RunRow.created_at.desc()).limit(limit)).all()
            return [
                {
                    "run_id": r.id,
                    "workflow": r.workflow,
                    "ref": (r.trigger_json or {}).get("ref", ""),
                    "status": r.status,
                    "created_at": r.created_at,
                }
                for r in rows
            ]
