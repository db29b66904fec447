"""
Context engineering for agent calls.

Keeps what is sent to an agent small: a compact workflow snapshot, the latest
structured notes, a few retrieved references and a token budget check.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from .models import AgentState, GateState, Workflow

logger = logging.getLogger(__name__)

MAX_KEY_DECISIONS = 10
MAX_RECENT_EVENTS = 5


def _fmt_number(value: float) -> str:
    return f"{value:g}"


# ============================================================================
# Compaction
# ============================================================================


@dataclass(frozen=True)
class ContextSnapshot:
    issue_number: int
    title: str
    priority: str
    current_phase: str
    active_agent: str
    key_decisions: list[str]
    recent_events: list[str]
    estimated_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "title": self.title,
            "priority": self.priority,
            "current_phase": self.current_phase,
            "active_agent": self.active_agent,
            "key_decisions": self.key_decisions,
            "recent_events": self.recent_events,
            "estimated_tokens": self.estimated_tokens,
        }


def estimate_tokens(payload: Any) -> int:
    """Rough token count: four UTF-8 bytes per token."""
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    return math.ceil(len(encoded.encode("utf-8")) / 4)


class ContextCompactor:
    """Reduces a workflow to a bounded, high-signal snapshot."""

    def compact(self, workflow: Workflow) -> ContextSnapshot:
        decisions = self.extract_key_decisions(workflow)
        events = self.summarize_recent_events(workflow)
        return ContextSnapshot(
            issue_number=workflow.issue_number,
            title=workflow.title,
            priority=workflow.priority,
            current_phase=workflow.current_phase.value,
            active_agent=workflow.active_agent or "none",
            key_decisions=decisions,
            recent_events=events,
            estimated_tokens=estimate_tokens({"keyDecisions": decisions, "recentEvents": events}),
        )

    def extract_key_decisions(self, workflow: Workflow) -> list[str]:
        decisions: list[str] = []
        for status in workflow.quality_gates:
            if status.state in (GateState.PASSED, GateState.FAILED):
                decisions.append(
                    f"{status.gate.name}: {status.state.value.capitalize()} "
                    f"({_fmt_number(status.score)}%)"
                )

        completed = workflow.completed_agents()
        if completed:
            decisions.append(f"Completed: {', '.join(completed)}")

        for agent in workflow.agents:
            if agent.status == AgentState.ERROR:
                decisions.append(f"ERROR: {agent.name} - {agent.error}")

        return decisions[-MAX_KEY_DECISIONS:]

    def summarize_recent_events(self, workflow: Workflow) -> list[str]:
        lines: list[str] = []
        for event in workflow.history[-MAX_RECENT_EVENTS:]:
            keys = list(event.payload)[:2]
            if not keys:
                lines.append(f"{event.type}: (no details)")
                continue
            details = ", ".join(
                f"{key}={json.dumps(event.payload[key], default=str)}" for key in keys
            )
            lines.append(f"{event.type}: {details}")
        return lines


# ============================================================================
# Structured notes
# ============================================================================


class NoteCategory(StrEnum):
    DECISION = "decision"
    BLOCKER = "blocker"
    ACHIEVEMENT = "achievement"
    LEARNING = "learning"


@dataclass(frozen=True)
class StructuredNote:
    id: str
    workflow_id: int
    category: NoteCategory
    phase: str
    agent: str
    content: str
    timestamp: datetime
    references: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "category": self.category.value,
            "phase": self.phase,
            "agent": self.agent,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "references": list(self.references),
        }


class StructuredNotekeeper:
    """Append-only note log, one list per workflow."""

    def __init__(self) -> None:
        self._notes: dict[int, list[StructuredNote]] = {}

    def add_note(
        self,
        workflow_id: int,
        category: NoteCategory | str,
        phase: str,
        agent: str,
        content: str,
        references: Iterable[str] | None = None,
    ) -> StructuredNote:
        note = StructuredNote(
            id=f"note-{uuid4().hex[:12]}",
            workflow_id=workflow_id,
            category=NoteCategory(category),
            phase=phase,
            agent=agent,
            content=content,
            timestamp=datetime.now(UTC),
            references=tuple(references or ()),
        )
        self._notes.setdefault(workflow_id, []).append(note)
        return note

    def get_notes(self, workflow_id: int) -> list[StructuredNote]:
        return list(self._notes.get(workflow_id, []))

    def get_notes_by_category(
        self, workflow_id: int, category: NoteCategory | str
    ) -> list[StructuredNote]:
        wanted = NoteCategory(category)
        return [n for n in self._notes.get(workflow_id, []) if n.category == wanted]

    def get_notes_by_phase(self, workflow_id: int, phase: str) -> list[StructuredNote]:
        return [n for n in self._notes.get(workflow_id, []) if n.phase == phase]

    def get_recent_notes(self, workflow_id: int, limit: int = 5) -> list[StructuredNote]:
        if limit <= 0:
            return []
        return list(self._notes.get(workflow_id, [])[-limit:])

    def get_all_learnings(self) -> list[StructuredNote]:
        return [
            note
            for notes in self._notes.values()
            for note in notes
            if note.category == NoteCategory.LEARNING
        ]

    def clear_notes(self, workflow_id: int) -> None:
        self._notes.pop(workflow_id, None)


# ============================================================================
# Just-in-time retrieval
# ============================================================================

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {"the", "and", "for", "with", "from", "into", "that", "this", "add", "fix"}
_IGNORED_DIRS = {".git", "node_modules", ".venv", "venv", "__pycache__", "dist", "build", ".next"}
_TEXT_SUFFIXES = {
    ".py", ".ts", ".tsx", ".js", ".jsx", ".md", ".json", ".yaml", ".yml", ".toml", ".css", ".html"
}


def query_terms(text: str) -> list[str]:
    seen: list[str] = []
    for token in _TOKEN_RE.findall(text.lower()):
        if len(token) < 3 or token in _STOPWORDS or token in seen:
            continue
        seen.append(token)
    return seen


@dataclass(frozen=True)
class Reference:
    kind: str  # file | issue | output
    ref: str
    summary: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "ref": self.ref, "summary": self.summary, "score": self.score}


@dataclass(frozen=True)
class IssueRecord:
    number: int
    title: str
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class OutputRecord:
    agent: str
    issue_number: int
    summary: str


class JustInTimeRetriever:
    """Deterministic keyword lookup over files, past issues and agent outputs.

    Results are ordered by score, then by reference, so the same query over
    the same corpus always yields the same list.
    """

    def __init__(
        self,
        files: Mapping[str, str] | None = None,
        issues: Sequence[IssueRecord] | None = None,
    ) -> None:
        self._files = dict(files or {})
        self._issues = list(issues or [])
        self._outputs: list[OutputRecord] = []

    @classmethod
    def from_directory(cls, root: Path, *, max_file_bytes: int = 200_000) -> JustInTimeRetriever:
        files: dict[str, str] = {}
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.suffix not in _TEXT_SUFFIXES:
                continue
            rel = path.relative_to(root)
            if any(part in _IGNORED_DIRS for part in rel.parts):
                continue
            if path.stat().st_size > max_file_bytes:
                continue
            try:
                files[rel.as_posix()] = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError) as exc:
                logger.debug("Skipping %s: %s", rel, exc)
        return cls(files=files)

    def add_issue(self, issue: IssueRecord) -> None:
        self._issues.append(issue)

    def record_output(self, agent: str, issue_number: int, summary: str) -> None:
        self._outputs.append(OutputRecord(agent=agent, issue_number=issue_number, summary=summary))

    def retrieve_file_context(self, query: str, max_results: int = 5) -> list[Reference]:
        terms = query_terms(query)
        if not terms or max_results <= 0:
            return []
        refs: list[Reference] = []
        for path, content in self._files.items():
            lowered_path = path.lower()
            lowered = content.lower()
            score = 2.0 * sum(1 for t in terms if t in lowered_path)
            score += sum(1 for t in terms if t in lowered)
            if score > 0:
                first_line = content.strip().splitlines()[0][:120] if content.strip() else ""
                refs.append(Reference("file", path, first_line, score))
        return _top(refs, max_results)

    def retrieve_similar_issues(
        self, title: str, labels: Iterable[str] = (), limit: int = 3
    ) -> list[Reference]:
        terms = set(query_terms(title))
        wanted_labels = {label.lower() for label in labels}
        refs: list[Reference] = []
        for issue in self._issues:
            overlap = len(terms & set(query_terms(issue.title)))
            label_overlap = len(wanted_labels & {label.lower() for label in issue.labels})
            score = overlap + 0.5 * label_overlap
            if score > 0:
                refs.append(Reference("issue", f"#{issue.number}", issue.title, score))
        return _top(refs, limit)

    def retrieve_previous_outputs(self, agent: str, limit: int = 3) -> list[Reference]:
        matching = [o for o in self._outputs if o.agent == agent]
        return [
            Reference("output", f"{o.agent}#{o.issue_number}", o.summary, 1.0)
            for o in reversed(matching[-limit:] if limit > 0 else [])
        ]

    def retrieve(self, query: str, max_results: int = 3) -> list[Reference]:
        """Best references of any kind for a free-text query."""
        refs = self.retrieve_file_context(query, max_results)
        refs += self.retrieve_similar_issues(query, limit=max_results)
        terms = query_terms(query)
        for output in self._outputs:
            hits = sum(1 for t in terms if t in output.summary.lower() or t == output.agent)
            if hits:
                refs.append(
                    Reference(
                        "output", f"{output.agent}#{output.issue_number}", output.summary, hits
                    )
                )
        return _top(refs, max_results)


def _top(refs: list[Reference], limit: int) -> list[Reference]:
    refs.sort(key=lambda r: (-r.score, r.kind, r.ref))
    return refs[: max(limit, 0)]


# ============================================================================
# Budget
# ============================================================================


@dataclass(frozen=True)
class BudgetStatus:
    within_budget: bool
    percentage_used: float
    tokens_remaining: int
    should_compact: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "within_budget": self.within_budget,
            "percentage_used": round(self.percentage_used, 4),
            "tokens_remaining": self.tokens_remaining,
            "should_compact": self.should_compact,
        }


class ContextBudgetMonitor:
    """Tracks estimated token usage against a ceiling."""

    def __init__(self, max_tokens: int = 100_000, warning_threshold: float = 0.8) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens
        self.warning_threshold = warning_threshold

    def check_budget(self, estimated_tokens: int) -> BudgetStatus:
        percentage_used = estimated_tokens / self.max_tokens
        return BudgetStatus(
            within_budget=estimated_tokens < self.max_tokens,
            percentage_used=percentage_used,
            tokens_remaining=max(0, self.max_tokens - estimated_tokens),
            should_compact=percentage_used > self.warning_threshold,
        )

    def recommend_compaction(self, status: BudgetStatus) -> list[str]:
        actions: list[str] = []
        if status.should_compact:
            actions += [
                "Compact conversation history (keep last 5 messages)",
                "Summarize completed agent outputs",
                "Remove redundant event payloads",
            ]
        if not status.within_budget:
            actions += [
                "CRITICAL: Context exceeds budget",
                "Consider sub-agent architecture with clean contexts",
                "Offload history to structured notes",
            ]
        return actions


# ============================================================================
# Facade
# ============================================================================


@dataclass(frozen=True)
class AgentContext:
    snapshot: ContextSnapshot
    notes: list[StructuredNote]
    references: list[Reference]
    budget: BudgetStatus
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "notes": [n.to_dict() for n in self.notes],
            "references": [r.to_dict() for r in self.references],
            "budget": self.budget.to_dict(),
            "recommendations": self.recommendations,
        }

    def render(self) -> str:
        """Plain-text block handed to the agent alongside its input."""
        lines: list[str] = []
        if self.snapshot.key_decisions:
            lines.append("Key decisions:")
            lines += [f"- {d}" for d in self.snapshot.key_decisions]
        if self.notes:
            lines.append("Recent notes:")
            lines += [f"- [{n.category.value}] {n.agent}: {n.content}" for n in self.notes]
        if self.references:
            lines.append("References:")
            lines += [f"- {r.kind} {r.ref}: {r.summary}" for r in self.references]
        return "\n".join(lines)


class ContextManager:
    """Single entry point assembling an agent's context."""

    def __init__(
        self,
        *,
        compactor: ContextCompactor | None = None,
        notekeeper: StructuredNotekeeper | None = None,
        retriever: JustInTimeRetriever | None = None,
        monitor: ContextBudgetMonitor | None = None,
    ) -> None:
        self.compactor = compactor or ContextCompactor()
        self.notekeeper = notekeeper or StructuredNotekeeper()
        self.retriever = retriever or JustInTimeRetriever()
        self.monitor = monitor or ContextBudgetMonitor()

    def get_agent_context(self, workflow: Workflow, agent_name: str) -> AgentContext:
        snapshot = self.compactor.compact(workflow)
        notes = self.notekeeper.get_recent_notes(workflow.id, 5)
        references = self.retriever.retrieve(f"{workflow.title} {agent_name}", 3)
        budget = self.monitor.check_budget(snapshot.estimated_tokens)
        if budget.should_compact:
            logger.warning(
                "Context approaching limit (%.0f%%). Consider compaction.",
                budget.percentage_used * 100,
            )
        return AgentContext(
            snapshot=snapshot,
            notes=notes,
            references=references,
            budget=budget,
            recommendations=self.monitor.recommend_compaction(budget),
        )

    def log_note(
        self,
        workflow: Workflow,
        category: NoteCategory | str,
        content: str,
        *,
        agent: str | None = None,
        references: Iterable[str] | None = None,
    ) -> StructuredNote:
        return self.notekeeper.add_note(
            workflow.id,
            category,
            workflow.current_phase.value,
            agent or workflow.active_agent or "orchestrator",
            content,
            references,
        )
