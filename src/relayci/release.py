# release.py
from __future__ import annotations

import enum
import re
import threading
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ._log import get_logger
from .model import TriggerContext

logger = get_logger("release")


class ReleaseDecision(str, enum.Enum):
    RELEASE = "release"
    SKIP = "skip"


def decide(candidate_version: str, latest_published_version: Optional[str]) -> ReleaseDecision:
    """
    Versions are opaque tokens: only equality matters.

    No previously published version means the candidate is released.
    """
    if latest_published_version is not None and candidate_version == latest_published_version:
        return ReleaseDecision.SKIP
    return ReleaseDecision.RELEASE


@dataclass(frozen=True)
class ReleaseOutcome:
    decision: ReleaseDecision
    candidate: str
    latest: Optional[str]

    @property
    def tag(self) -> str:
        return self.candidate if self.decision == ReleaseDecision.RELEASE else ""

    def as_mapping(self) -> Dict[str, str]:
        return {
            "decision": self.decision.value,
            "tag": self.tag,
            "candidate": self.candidate,
            "latest": self.latest or "",
        }


# ----------------------------------------------------------------------
# Version sources
# ----------------------------------------------------------------------

class VersionSource(ABC):
    @abstractmethod
    def candidate_version(self) -> str:
        """Version computed from project metadata."""

    @abstractmethod
    def latest_published_version(self) -> Optional[str]:
        """Latest version in the release registry, None if nothing was published."""


class StaticVersionSource(VersionSource):
    def __init__(self, candidate: str, latest: Optional[str] = None):
        self._candidate = candidate
        self._latest = latest

    def candidate_version(self) -> str:
        return self._candidate

    def latest_published_version(self) -> Optional[str]:
        return self._latest


class ContextVersionSource(VersionSource):
    """Reads ``version`` and ``latest_release`` from the trigger values."""

    def __init__(self, trigger: TriggerContext, candidate_key: str = "version",
                 latest_key: str = "latest_release"):
        self.trigger = trigger
        self.candidate_key = candidate_key
        self.latest_key = latest_key

    def candidate_version(self) -> str:
        try:
            return self.trigger.values[self.candidate_key]
        except KeyError:
            raise LookupError(f"trigger has no '{self.candidate_key}' value") from None

    def latest_published_version(self) -> Optional[str]:
        return self.trigger.values.get(self.latest_key) or None


class ProjectFileVersionSource(VersionSource):
    """
    Candidate version from a TOML project file (pyproject.toml, Cargo.toml),
    prefixed with ``v``. The latest published version comes from *latest*.
    """

    def __init__(self, path: str | Path, latest: Optional[str] = None, prefix: str = "v"):
        self.path = Path(path)
        self.latest = latest
        self.prefix = prefix

    def candidate_version(self) -> str:
        with self.path.open("rb") as f:
            data = tomllib.load(f)
        for table in ("project", "package", "tool.poetry"):
            node = data
            for part in table.split("."):
                node = node.get(part, {}) if isinstance(node, dict) else {}
            if isinstance(node, dict) and "version" in node:
                return f"{self.prefix}{node['version']}"
        m = re.search(r'^version\s*=\s*"([^"]+)"', self.path.read_text(), re.MULTILINE)
        if m:
            return f"{self.prefix}{m.group(1)}"
        raise LookupError(f"No version found in {self.path}")

    def latest_published_version(self) -> Optional[str]:
        return self.latest


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------

class ReleaseDecisionEngine:
    """
    Decides once per run whether the release stages are eligible.

    The version source is read only on the first call; every later call
    returns the memoized outcome, so a concurrent publish from another run
    cannot change this run's view.
    """

    def __init__(self, source: VersionSource):
        self.source = source
        self._lock = threading.Lock()
        self._outcome: Optional[ReleaseOutcome] = None

    @property
    def decided(self) -> bool:
        return self._outcome is not None

    def decide(self, candidate_version: str, latest_published_version: Optional[str]) -> ReleaseDecision:
        return decide(candidate_version, latest_published_version)

    def decide_for_run(self) -> ReleaseOutcome:
        with self._lock:
            if self._outcome is None:
                candidate = self.source.candidate_version()
                latest = self.source.latest_published_version()
                self._outcome = ReleaseOutcome(decide(candidate, latest), candidate, latest)
                if self._outcome.decision == ReleaseDecision.RELEASE:
                    logger.warning("Will create release for version: %s", candidate)
                else:
                    logger.warning("Will not create a release (%s already published)", candidate)
            return self._outcome

    def restore(self, outcome: ReleaseOutcome) -> None:
        with self._lock:
            self._outcome = outcome
