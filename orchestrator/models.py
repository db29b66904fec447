"""Domain model for orchestrated workflows."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .events import WorkflowEvent

_PRIORITY_RE = re.compile(r"^P[0-3]$")


class AgentType(StrEnum):
    """Agents of the change-delivery pipeline, in pipeline order."""

    SPEC = "spec"
    TESTS = "tests"
    IMPL = "impl"
    QA = "qa"
    SEC = "sec"
    DOCS = "docs"
    RELEASE = "release"


class Phase(StrEnum):
    """Workflow phases."""

    FOUNDATION = "Foundation"
    DEVELOPMENT = "Development"
    QUALITY = "Quality"
    DEPLOYMENT = "Deployment"


class AgentState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class GateState(StrEnum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class AgentStatus:
    """Lifecycle of one agent inside one workflow."""

    name: str
    status: AgentState = AgentState.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None

    def start(self, at: datetime | None = None) -> None:
        if self.status != AgentState.PENDING:
            raise ValueError(f"Agent {self.name} cannot start from {self.status}")
        self.status = AgentState.RUNNING
        self.started_at = at or _now()

    def complete(self, at: datetime | None = None) -> None:
        self._finish(AgentState.COMPLETE, at)

    def fail(self, error: str, at: datetime | None = None) -> None:
        self._finish(AgentState.ERROR, at)
        self.error = error

    def _finish(self, state: AgentState, at: datetime | None) -> None:
        if self.status != AgentState.RUNNING:
            raise ValueError(f"Agent {self.name} cannot move to {state} from {self.status}")
        self.status = state
        self.completed_at = at or _now()
        started = self.started_at or self.completed_at
        self.duration_ms = int((self.completed_at - started).total_seconds() * 1000)


@dataclass(frozen=True)
class QualityGate:
    name: str
    phase: Phase
    threshold: float

    def __post_init__(self) -> None:
        if not 0 <= self.threshold <= 100:
            raise ValueError(f"Gate threshold must be within [0, 100], got {self.threshold}")


@dataclass(frozen=True)
class QualityGateStatus:
    """Evaluated state of a quality gate."""

    gate: QualityGate
    state: GateState = GateState.PENDING
    score: float = 0.0
    criteria_results: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 <= self.score <= 100:
            raise ValueError(f"Gate score must be within [0, 100], got {self.score}")

    @classmethod
    def from_criteria(cls, gate: QualityGate, criteria: dict[str, float]) -> QualityGateStatus:
        """Score a gate as the mean of its criteria."""
        score = sum(criteria.values()) / len(criteria) if criteria else 0.0
        score = max(0.0, min(100.0, score))
        state = GateState.PASSED if score >= gate.threshold else GateState.FAILED
        return cls(gate=gate, state=state, score=score, criteria_results=dict(criteria))

    @property
    def passed(self) -> bool:
        return self.state == GateState.PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate": {
                "name": self.gate.name,
                "phase": self.gate.phase.value,
                "threshold": self.gate.threshold,
            },
            "state": self.state.value,
            "score": round(self.score, 2),
            "criteria_results": self.criteria_results,
        }


@dataclass
class Workflow:
    """One change request moving through the agent pipeline."""

    id: int
    title: str
    tags: list[str] = field(default_factory=list)
    body: str = ""
    current_phase: Phase = Phase.FOUNDATION
    active_agent: str | None = None
    agents: list[AgentStatus] = field(default_factory=list)
    quality_gates: list[QualityGateStatus] = field(default_factory=list)
    history: list[WorkflowEvent] = field(default_factory=list)
    overall_quality_score: float = 0.0

    @property
    def issue_number(self) -> int:
        return self.id

    @property
    def priority(self) -> str:
        for tag in self.tags:
            if _PRIORITY_RE.match(tag):
                return tag
        return "P2"

    def agent(self, name: str) -> AgentStatus:
        """Return the status for an agent, creating a pending one if needed."""
        for status in self.agents:
            if status.name == name:
                return status
        status = AgentStatus(name=name)
        self.agents.append(status)
        return status

    def completed_agents(self) -> list[str]:
        return [a.name for a in self.agents if a.status == AgentState.COMPLETE]

    def errored_agents(self) -> list[AgentStatus]:
        return [a for a in self.agents if a.status == AgentState.ERROR]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "tags": self.tags,
            "current_phase": self.current_phase.value,
            "active_agent": self.active_agent,
            "agents": [
                {
                    "name": a.name,
                    "status": a.status.value,
                    "duration_ms": a.duration_ms,
                    "error": a.error,
                }
                for a in self.agents
            ],
            "quality_gates": [g.to_dict() for g in self.quality_gates],
            "overall_quality_score": round(self.overall_quality_score, 2),
        }
