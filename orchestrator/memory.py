"""
Cross-run memory: execution patterns, learnings and aggregate metrics.

Everything is kept in memory and mirrored to three JSON files under a
directory (``patterns.json``, ``learnings.json``, ``metrics.json``). The
files are plain, sorted, indented JSON so they can be repaired by hand.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from .context import query_terms
from .models import AgentState, GateState, Workflow
from .triage import classify_issue

logger = logging.getLogger(__name__)

PATTERNS_FILE = "patterns.json"
LEARNINGS_FILE = "learnings.json"
METRICS_FILE = "metrics.json"

SIMILARITY_FLOOR = 0.3
BEST_PRACTICE_RATE = 0.8
MAX_PATTERN_NOTES = 20


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _workflow_duration(workflow: Workflow) -> int:
    return sum(a.duration_ms or 0 for a in workflow.agents if a.completed_at is not None)


def _append_unique(items: list[str], text: str, cap: int = MAX_PATTERN_NOTES) -> None:
    if text not in items and len(items) < cap:
        items.append(text)


# ============================================================================
# Patterns
# ============================================================================


@dataclass
class ExecutionPattern:
    id: str
    issue_type: str
    agent_sequence: list[str]
    success_rate: float
    average_duration: float
    usage_count: int
    last_used: str
    best_practices: list[str] = field(default_factory=list)
    common_pitfalls: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return pattern_key(self.issue_type, self.agent_sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issueType": self.issue_type,
            "agentSequence": list(self.agent_sequence),
            "successRate": self.success_rate,
            "averageDuration": self.average_duration,
            "usageCount": self.usage_count,
            "lastUsed": self.last_used,
            "bestPractices": list(self.best_practices),
            "commonPitfalls": list(self.common_pitfalls),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionPattern:
        success_rate = float(data["successRate"])
        if not 0 <= success_rate <= 1:
            raise ValueError(f"successRate out of range: {success_rate}")
        return cls(
            id=str(data["id"]),
            issue_type=str(data["issueType"]),
            agent_sequence=[str(a) for a in data.get("agentSequence", [])],
            success_rate=success_rate,
            average_duration=data.get("averageDuration", 0),
            usage_count=int(data.get("usageCount", 0)),
            last_used=str(data.get("lastUsed", "")),
            best_practices=[str(p) for p in data.get("bestPractices", [])],
            common_pitfalls=[str(p) for p in data.get("commonPitfalls", [])],
        )


def pattern_key(issue_type: str, agents: Iterable[str]) -> str:
    return f"{issue_type}:{'-'.join(agents)}"


class PatternRecognitionEngine:
    """Learns which agent sequences work for which kinds of issue."""

    def __init__(self) -> None:
        self._patterns: dict[str, ExecutionPattern] = {}

    def __len__(self) -> int:
        return len(self._patterns)

    @property
    def patterns(self) -> list[ExecutionPattern]:
        return list(self._patterns.values())

    def get(self, key: str) -> ExecutionPattern | None:
        return self._patterns.get(key)

    def record_execution(self, workflow: Workflow, success: bool) -> ExecutionPattern:
        issue_type = classify_issue(workflow).value
        agents = workflow.completed_agents()
        key = pattern_key(issue_type, agents)
        duration = _workflow_duration(workflow)
        outcome = 1.0 if success else 0.0

        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = ExecutionPattern(
                id=f"pattern-{uuid4().hex[:12]}",
                issue_type=issue_type,
                agent_sequence=agents,
                success_rate=outcome,
                average_duration=duration,
                usage_count=1,
                last_used=_now_iso(),
            )
            self._patterns[key] = pattern
        else:
            n = pattern.usage_count
            pattern.success_rate = (pattern.success_rate * n + outcome) / (n + 1)
            pattern.average_duration = (pattern.average_duration * n + duration) / (n + 1)
            pattern.usage_count = n + 1
            pattern.last_used = _now_iso()

        if success and workflow.quality_gates and all(
            g.state == GateState.PASSED for g in workflow.quality_gates
        ):
            _append_unique(
                pattern.best_practices,
                f"Sequence {' -> '.join(agents)} passed all quality gates",
            )
        for agent in workflow.agents:
            if agent.status == AgentState.ERROR:
                _append_unique(pattern.common_pitfalls, f"{agent.name} failed: {agent.error}")
        return pattern

    def score(self, pattern: ExecutionPattern, issue_type: str, tags: Iterable[str]) -> float:
        similarity = 0.0
        if pattern.issue_type == issue_type:
            similarity += 0.5
        labels = {t.lower() for t in tags}
        parts = pattern.issue_type.split("-")
        denominator = max(len(labels), len(parts))
        if denominator:
            similarity += len(labels & set(parts)) / denominator * 0.3
        similarity += pattern.success_rate * 0.2
        return min(1.0, similarity)

    def score_patterns(self, workflow: Workflow) -> list[tuple[ExecutionPattern, float]]:
        issue_type = classify_issue(workflow).value
        scored = [
            (pattern, self.score(pattern, issue_type, workflow.tags))
            for pattern in self._patterns.values()
        ]
        scored = [item for item in scored if item[1] > SIMILARITY_FLOOR]
        scored.sort(key=lambda item: (-item[1], -item[0].usage_count, item[0].key))
        return scored

    def find_similar_patterns(self, workflow: Workflow, limit: int = 3) -> list[ExecutionPattern]:
        return [pattern for pattern, _ in self.score_patterns(workflow)[: max(limit, 0)]]

    def get_best_practices(self, issue_type: str) -> list[str]:
        practices: list[str] = []
        for pattern in self._patterns.values():
            if pattern.issue_type == issue_type and pattern.success_rate > BEST_PRACTICE_RATE:
                for practice in pattern.best_practices:
                    if practice not in practices:
                        practices.append(practice)
        return practices

    def export_patterns(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in sorted(self._patterns.values(), key=lambda p: p.key)]

    def import_patterns(self, data: Iterable[Mapping[str, Any]]) -> int:
        """Merge patterns by key; stored entries replace in-memory ones."""
        count = 0
        for index, item in enumerate(data):
            try:
                pattern = ExecutionPattern.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping malformed pattern at index %d: %r", index, exc)
                continue
            self._patterns[pattern.key] = pattern
            count += 1
        return count


# ============================================================================
# Learnings
# ============================================================================


class LearningCategory(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    OPTIMIZATION = "optimization"
    PATTERN = "pattern"


@dataclass(frozen=True)
class LearningRecord:
    id: str
    category: LearningCategory
    agent: str
    lesson: str
    context: str
    confidence: float
    timestamp: str
    issue_number: int | None = None
    issue_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0 <= self.confidence <= 1:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "issueNumber": self.issue_number,
            "issueLabels": list(self.issue_labels),
            "agent": self.agent,
            "lesson": self.lesson,
            "context": self.context,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LearningRecord:
        return cls(
            id=str(data["id"]),
            category=LearningCategory(data["category"]),
            issue_number=data.get("issueNumber"),
            issue_labels=tuple(str(label) for label in data.get("issueLabels", [])),
            agent=str(data.get("agent", "")),
            lesson=str(data["lesson"]),
            context=str(data.get("context", "")),
            confidence=data["confidence"],
            timestamp=str(data["timestamp"]),
        )


class LearningRepository:
    """Append-only store of lessons, bounded to the newest ``max_records``."""

    def __init__(self, max_records: int = 1000) -> None:
        if max_records <= 0:
            raise ValueError("max_records must be positive")
        self.max_records = max_records
        self._records: list[LearningRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[LearningRecord]:
        return list(self._records)

    def add_learning(
        self,
        category: LearningCategory | str,
        lesson: str,
        *,
        agent: str,
        confidence: float,
        context: str = "",
        issue_number: int | None = None,
        issue_labels: Iterable[str] = (),
    ) -> LearningRecord:
        record = LearningRecord(
            id=f"learning-{uuid4().hex[:12]}",
            category=LearningCategory(category),
            agent=agent,
            lesson=lesson,
            context=context,
            confidence=confidence,
            timestamp=_now_iso(),
            issue_number=issue_number,
            issue_labels=tuple(issue_labels),
        )
        self._append(record)
        return record

    def _append(self, record: LearningRecord) -> None:
        self._records.append(record)
        if len(self._records) > self.max_records:
            del self._records[: len(self._records) - self.max_records]

    def _newest_first(self, records: Iterable[LearningRecord]) -> list[LearningRecord]:
        # Reverse first so equal timestamps keep "later append wins".
        return sorted(reversed(list(records)), key=lambda r: r.timestamp, reverse=True)

    def search_learnings(self, query: str, limit: int = 10) -> list[LearningRecord]:
        needle = query.lower()
        matches = [
            r for r in self._records if needle in r.lesson.lower() or needle in r.context.lower()
        ]
        return self._newest_first(matches)[: max(limit, 0)]

    def get_high_confidence_learnings(self, min_confidence: float = 0.8) -> list[LearningRecord]:
        matches = [r for r in self._records if r.confidence >= min_confidence]
        return sorted(matches, key=lambda r: r.confidence, reverse=True)

    def get_learnings_by_category(self, category: LearningCategory | str) -> list[LearningRecord]:
        wanted = LearningCategory(category)
        return [r for r in self._records if r.category == wanted]

    def get_learnings_by_agent(self, agent: str) -> list[LearningRecord]:
        return [r for r in self._records if r.agent == agent]

    def get_recent_learnings(self, limit: int = 20) -> list[LearningRecord]:
        return self._newest_first(self._records)[: max(limit, 0)]

    def export_learnings(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._records]

    def import_learnings(self, data: Iterable[Mapping[str, Any]]) -> int:
        """Append records whose ids are not already known."""
        known = {r.id for r in self._records}
        added = 0
        for index, item in enumerate(data):
            try:
                record = LearningRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping malformed learning at index %d: %r", index, exc)
                continue
            if record.id in known:
                continue
            known.add(record.id)
            self._append(record)
            added += 1
        return added


# ============================================================================
# Metrics
# ============================================================================


@dataclass
class WorkflowMetrics:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_duration: float = 0
    common_failure_points: dict[str, int] = field(default_factory=dict)
    quality_score_trend: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalExecutions": self.total_executions,
            "successfulExecutions": self.successful_executions,
            "failedExecutions": self.failed_executions,
            "averageDuration": self.average_duration,
            "commonFailurePoints": dict(self.common_failure_points),
            "qualityScoreTrend": list(self.quality_score_trend),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowMetrics:
        return cls(
            total_executions=int(data.get("totalExecutions", 0)),
            successful_executions=int(data.get("successfulExecutions", 0)),
            failed_executions=int(data.get("failedExecutions", 0)),
            average_duration=data.get("averageDuration", 0),
            common_failure_points={
                str(k): int(v) for k, v in dict(data.get("commonFailurePoints", {})).items()
            },
            quality_score_trend=list(data.get("qualityScoreTrend", [])),
        )


@dataclass(frozen=True)
class QualityTrend:
    improving: bool
    average_score: float
    older_average: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "improving": self.improving,
            "averageScore": round(self.average_score, 2),
            "olderAverage": round(self.older_average, 2),
        }


class MetricsTracker:
    def __init__(self, trend_cap: int = 100) -> None:
        self.trend_cap = trend_cap
        self.metrics = WorkflowMetrics()

    def record_execution(self, workflow: Workflow, success: bool) -> None:
        m = self.metrics
        m.total_executions += 1
        if success:
            m.successful_executions += 1
        else:
            m.failed_executions += 1
            failed = next((a for a in workflow.agents if a.status == AgentState.ERROR), None)
            if failed is not None:
                points = m.common_failure_points
                points[failed.name] = points.get(failed.name, 0) + 1

        n = m.total_executions
        m.average_duration = (m.average_duration * (n - 1) + _workflow_duration(workflow)) / n

        m.quality_score_trend.append(workflow.overall_quality_score)
        if len(m.quality_score_trend) > self.trend_cap:
            del m.quality_score_trend[: len(m.quality_score_trend) - self.trend_cap]

    def get_success_rate(self) -> float:
        m = self.metrics
        return m.successful_executions / m.total_executions if m.total_executions else 0.0

    def get_quality_trend(self) -> QualityTrend:
        trend = self.metrics.quality_score_trend
        if len(trend) < 2:
            return QualityTrend(improving=False, average_score=0.0)
        recent = trend[-10:]
        older = trend[-20:-10]
        recent_avg = sum(recent) / len(recent)
        older_avg = sum(older) / (len(older) or 1)
        return QualityTrend(
            improving=recent_avg > older_avg, average_score=recent_avg, older_average=older_avg
        )


# ============================================================================
# Storage
# ============================================================================


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


class PersistentStorage:
    """Full-file JSON persistence for the three memory stores."""

    def __init__(self, directory: Path | str = ".agent-memory") -> None:
        self.directory = Path(directory)
        self._locks: dict[str, asyncio.Lock] = {}

    def path(self, name: str) -> Path:
        return self.directory / name

    def _lock(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    async def write(self, name: str, data: Any) -> None:
        async with self._lock(name):
            await asyncio.to_thread(self._write_sync, self.path(name), dump_json(data))

    async def read(self, name: str) -> Any | None:
        async with self._lock(name):
            return await asyncio.to_thread(self._read_sync, self.path(name))

    @staticmethod
    def _write_sync(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read_sync(path: Path) -> Any | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("Ignoring unreadable memory file %s: %s", path, exc)
            return None

    async def save_patterns(self, engine: PatternRecognitionEngine) -> None:
        await self.write(PATTERNS_FILE, engine.export_patterns())

    async def load_patterns(self, engine: PatternRecognitionEngine) -> int:
        data = await self.read(PATTERNS_FILE)
        return engine.import_patterns(data) if isinstance(data, list) else 0

    async def save_learnings(self, repository: LearningRepository) -> None:
        await self.write(LEARNINGS_FILE, repository.export_learnings())

    async def load_learnings(self, repository: LearningRepository) -> int:
        data = await self.read(LEARNINGS_FILE)
        return repository.import_learnings(data) if isinstance(data, list) else 0

    async def save_metrics(self, tracker: MetricsTracker) -> None:
        await self.write(METRICS_FILE, tracker.metrics.to_dict())

    async def load_metrics(self, tracker: MetricsTracker) -> bool:
        data = await self.read(METRICS_FILE)
        if not isinstance(data, dict):
            return False
        try:
            tracker.metrics = WorkflowMetrics.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Ignoring malformed %s: %r", METRICS_FILE, exc)
            tracker.metrics = WorkflowMetrics()
            return False
        return True


# ============================================================================
# Facade
# ============================================================================


@dataclass(frozen=True)
class Recommendations:
    patterns: list[ExecutionPattern]
    learnings: list[LearningRecord]
    best_practices: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "learnings": [r.to_dict() for r in self.learnings],
            "bestPractices": self.best_practices,
        }


class PersistentMemorySystem:
    """Records finished workflows and recommends from past runs."""

    def __init__(
        self,
        directory: Path | str = ".agent-memory",
        *,
        max_records: int = 1000,
        storage: PersistentStorage | None = None,
    ) -> None:
        self.storage = storage or PersistentStorage(directory)
        self.patterns = PatternRecognitionEngine()
        self.learnings = LearningRepository(max_records)
        self.metrics = MetricsTracker()
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls, directory: Path | str = ".agent-memory", **kwargs: Any
    ) -> PersistentMemorySystem:
        memory = cls(directory, **kwargs)
        await memory.load()
        return memory

    async def load(self) -> None:
        async with self._lock:
            patterns = await self.storage.load_patterns(self.patterns)
            learnings = await self.storage.load_learnings(self.learnings)
            await self.storage.load_metrics(self.metrics)
        logger.debug("Loaded %d patterns and %d new learnings", patterns, learnings)

    async def save(self) -> None:
        async with self._lock:
            await self._save_all()

    async def _save_all(self) -> None:
        await self.storage.save_patterns(self.patterns)
        await self.storage.save_learnings(self.learnings)
        await self.storage.save_metrics(self.metrics)

    async def record_workflow(self, workflow: Workflow, success: bool) -> ExecutionPattern:
        async with self._lock:
            pattern = self.patterns.record_execution(workflow, success)
            self.metrics.record_execution(workflow, success)
            await self.storage.save_patterns(self.patterns)
            await self.storage.save_metrics(self.metrics)
        logger.info(
            "Recorded workflow #%s as %s (pattern %s)",
            workflow.id,
            "success" if success else "failure",
            pattern.key,
        )
        return pattern

    async def add_learning(
        self,
        category: LearningCategory | str,
        lesson: str,
        *,
        agent: str,
        confidence: float,
        context: str = "",
        issue_number: int | None = None,
        issue_labels: Iterable[str] = (),
    ) -> LearningRecord:
        async with self._lock:
            record = self.learnings.add_learning(
                category,
                lesson,
                agent=agent,
                confidence=confidence,
                context=context,
                issue_number=issue_number,
                issue_labels=issue_labels,
            )
            await self.storage.save_learnings(self.learnings)
        return record

    def get_recommendations(self, workflow: Workflow) -> Recommendations:
        matches: dict[str, LearningRecord] = {}
        for term in [workflow.title, *query_terms(workflow.title)]:
            for record in self.learnings.search_learnings(term, self.learnings.max_records):
                if record.confidence > 0.7:
                    matches.setdefault(record.id, record)
        learnings = sorted(
            reversed(list(matches.values())), key=lambda r: r.timestamp, reverse=True
        )[:5]

        return Recommendations(
            patterns=self.patterns.find_similar_patterns(workflow, 3),
            learnings=learnings,
            best_practices=self.patterns.get_best_practices(classify_issue(workflow).value),
        )

    def get_statistics(self) -> dict[str, Any]:
        return {
            "totalPatterns": len(self.patterns),
            "totalLearnings": len(self.learnings),
            "successRate": self.metrics.get_success_rate(),
            "qualityTrend": self.metrics.get_quality_trend().to_dict(),
        }
