from __future__ import annotations
import os


def _int_or_none(raw: str | None) -> int | None:
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


def _float_or_none(raw: str | None) -> float | None:
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


DATABASE_URL = os.environ.get("RELAYCI_DATABASE_URL", "sqlite:///.relayci/runs.db")
MAX_PARALLEL = _int_or_none(os.environ.get("RELAYCI_MAX_PARALLEL"))
GLOBAL_CONCURRENCY = int(os.environ.get("RELAYCI_GLOBAL_CONCURRENCY", "8"))
GATE_TIMEOUT = _float_or_none(os.environ.get("RELAYCI_GATE_TIMEOUT"))
LOG_LEVEL = os.environ.get("RELAYCI_LOG_LEVEL", "WARNING")
