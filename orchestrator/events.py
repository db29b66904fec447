"""
Standardized event system for orchestrated workflows.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import QualityGateStatus, Workflow

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"

    PHASE_STARTED = "phase.started"
    PHASE_COMPLETED = "phase.completed"

    AGENT_STARTED = "agent.started"
    AGENT_COMPLETED = "agent.completed"
    AGENT_FAILED = "agent.failed"

    GATE_EVALUATED = "gate.evaluated"
    GATE_OPTIMIZED = "gate.optimized"

    BUDGET_WARNING = "budget.warning"


@dataclass
class WorkflowEvent:
    """One entry of a workflow's ordered history."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[["Workflow", WorkflowEvent], Awaitable[None] | None]


class EventEmitter:
    """Appends events to a workflow's history and notifies handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def emit(
        self, workflow: Workflow, type: EventType | str, **payload: Any
    ) -> WorkflowEvent:
        event = WorkflowEvent(type=str(type), payload=payload)
        workflow.history.append(event)
        for handler in self._handlers:
            try:
                result = handler(workflow, event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type)
        return event

    async def agent_started(self, workflow: Workflow, agent: str) -> WorkflowEvent:
        return await self.emit(workflow, EventType.AGENT_STARTED, agent=agent)

    async def agent_completed(
        self, workflow: Workflow, agent: str, *, duration_ms: int | None = None
    ) -> WorkflowEvent:
        return await self.emit(
            workflow, EventType.AGENT_COMPLETED, agent=agent, duration_ms=duration_ms
        )

    async def agent_failed(self, workflow: Workflow, agent: str, error: str) -> WorkflowEvent:
        return await self.emit(workflow, EventType.AGENT_FAILED, agent=agent, error=error)

    async def gate_evaluated(
        self, workflow: Workflow, status: QualityGateStatus
    ) -> WorkflowEvent:
        return await self.emit(
            workflow,
            EventType.GATE_EVALUATED,
            gate=status.gate.name,
            score=round(status.score, 2),
            state=status.state.value,
        )
