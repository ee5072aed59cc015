from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from ._log import get_logger
from .errors import GateError
from .gates import Gate, GateStatus, GateTable

logger = get_logger("api")

# -------------------- Schemas --------------------

class GateResponse(BaseModel):
    id: str
    name: str
    run_id: str
    status: str
    actor: Optional[str] = None
    comment: str = ""
    requested_at: datetime
    decided_at: Optional[datetime] = None

class DecisionRequest(BaseModel):
    decision: str  # approve|reject
    actor: str
    comment: str = ""

class DecisionResponse(BaseModel):
    id: str
    status: str


def _ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _gate_response(g: Gate) -> GateResponse:
    return GateResponse(
        id=g.id,
        name=g.name,
        run_id=g.run_id,
        status=g.status.value,
        actor=g.actor,
        comment=g.comment,
        requested_at=_ts(g.requested_at),
        decided_at=_ts(g.decided_at),
    )


def create_app(gates: GateTable) -> FastAPI:
    """Approval API over a live gate table."""
    app = FastAPI(title="relayci approvals")

    # -------------------- Endpoints --------------------

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/gates", response_model=list[GateResponse])
    def list_gates(status: Optional[str] = Query(default=None), run_id: Optional[str] = Query(default=None)):
        if status is not None:
            try:
                wanted = GateStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown gate status: {status}")
        else:
            wanted = None
        return [
            _gate_response(g)
            for g in gates.all()
            if (wanted is None or g.status == wanted) and (run_id is None or g.run_id == run_id)
        ]

    # gate ids contain a slash (<run_id>/<name>)
    @app.get("/gates/{gate_id:path}", response_model=GateResponse)
    def get_gate(gate_id: str):
        try:
            return _gate_response(gates.get(gate_id))
        except GateError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/gates/{gate_id:path}/decision", response_model=DecisionResponse)
    def decide(gate_id: str, req: DecisionRequest):
        try:
            gates.get(gate_id)
        except GateError as e:
            raise HTTPException(status_code=404, detail=str(e))
        try:
            status = gates.decide(gate_id, req.decision, req.actor, req.comment)
        except GateError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return DecisionResponse(id=gate_id, status=status.value)

    return app


class ApprovalServer:
    """Serves `create_app` from a background thread while runs execute."""

    def __init__(self, gates: GateTable, host: str = "127.0.0.1", port: int = 8000):
        self.host = host
        self.port = port
        self._app = create_app(gates)
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    def _run(self) -> None:
        config = uvicorn.Config(self._app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._server.run()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True, name="relayci-api")
        self._thread.start()
        logger.info("approval API listening on http://%s:%d", self.host, self.port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
            if self._thread.is_alive() and self._server is not None:
                self._server.force_exit = True
                logger.warning("approval API did not stop within 5s")
