# outputs.py
from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Set, Tuple

from .errors import DuplicateOutputError, MissingOutputError, RelayError
from .graph import RUN_SCOPE


class OutputStore:
    """
    Write-once key/value store for values passed between stages.

    Writes are staged per producer and become visible only when the
    producer is committed (terminal success). A discarded producer
    (failed, skipped, cancelled) never publishes anything. Readers block
    until the producer is terminal.

    Run-scoped values (producer ``run``) are visible as soon as they are
    written.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._staged: Dict[str, Dict[str, str]] = {}
        self._committed: Dict[str, Dict[str, str]] = {}
        self._written: Set[Tuple[str, str]] = set()
        self._terminal: Set[str] = set()
        self._closed = False

    def put(self, instance_id: str, key: str, value: str) -> None:
        with self._cond:
            if (instance_id, key) in self._written:
                raise DuplicateOutputError(stage=instance_id, key=key)
            if instance_id in self._terminal and instance_id != RUN_SCOPE:
                raise RelayError(f"[{instance_id}] cannot write '{key}' after it terminated")
            self._written.add((instance_id, key))
            if instance_id == RUN_SCOPE:
                self._committed.setdefault(RUN_SCOPE, {})[key] = str(value)
                self._cond.notify_all()
            else:
                self._staged.setdefault(instance_id, {})[key] = str(value)

    def staged(self, instance_id: str) -> Dict[str, str]:
        with self._cond:
            return dict(self._staged.get(instance_id, {}))

    def commit(self, instance_id: str) -> Dict[str, str]:
        """Publish staged values of a producer that reached terminal success."""
        with self._cond:
            values = self._staged.pop(instance_id, {})
            self._committed.setdefault(instance_id, {}).update(values)
            self._terminal.add(instance_id)
            self._cond.notify_all()
            return dict(self._committed[instance_id])

    def discard(self, instance_id: str) -> None:
        """Drop staged values of a producer that did not succeed."""
        with self._cond:
            self._staged.pop(instance_id, None)
            self._terminal.add(instance_id)
            self._cond.notify_all()

    def restore(self, instance_id: str, values: Dict[str, str]) -> None:
        """Reinstate committed values of a producer recovered from persistence."""
        with self._cond:
            for key in values:
                self._written.add((instance_id, key))
            self._committed.setdefault(instance_id, {}).update(values)
            if instance_id != RUN_SCOPE:
                self._terminal.add(instance_id)
            self._cond.notify_all()

    def close(self) -> None:
        """Wake blocked readers once the run is over."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(
        self,
        instance_id: str,
        key: str,
        consumer: str | None = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Return the value *instance_id* wrote for *key*.

        Blocks until the producer is terminal (or the value is published).
        Raises MissingOutputError if it terminated without that key, and
        TimeoutError if *timeout* elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                values = self._committed.get(instance_id, {})
                if key in values:
                    return values[key]
                if instance_id in self._terminal or self._closed:
                    raise MissingOutputError(stage=instance_id, key=key)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    who = f" for {consumer}" if consumer else ""
                    raise TimeoutError(f"Timed out waiting{who} on {instance_id}.{key}")
                self._cond.wait(remaining)

    def peek(self, instance_id: str, key: str) -> str:
        """Non-blocking read of a published value; KeyError when absent."""
        with self._cond:
            return self._committed.get(instance_id, {})[key]

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        with self._cond:
            return {k: dict(v) for k, v in self._committed.items()}
