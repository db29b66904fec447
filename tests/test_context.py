import logging

import pytest

from orchestrator.context import (
    ContextBudgetMonitor,
    ContextCompactor,
    ContextManager,
    IssueRecord,
    JustInTimeRetriever,
    NoteCategory,
    StructuredNotekeeper,
    estimate_tokens,
    query_terms,
)
from orchestrator.events import EventEmitter
from orchestrator.models import Phase, QualityGate, QualityGateStatus


def test_estimate_tokens_counts_bytes() -> None:
    assert estimate_tokens({}) == 1
    assert estimate_tokens("abcdefgh") == 3  # '"abcdefgh"' is 10 bytes
    assert estimate_tokens("é") == 1


@pytest.mark.asyncio
async def test_compact_snapshot(workflow) -> None:
    gate = QualityGate("quality", Phase.QUALITY, 90)
    workflow.quality_gates.append(QualityGateStatus.from_criteria(gate, {"a": 85}))
    workflow.agent("spec").start()
    workflow.agent("spec").complete()
    workflow.agent("tests").start()
    workflow.agent("tests").fail("timeout")

    events = EventEmitter()
    for i in range(7):
        await events.emit(workflow, "agent.started", agent=f"a{i}", attempt=i, extra=True)
    await events.emit(workflow, "phase.completed")

    snapshot = ContextCompactor().compact(workflow)

    assert snapshot.issue_number == 42
    assert snapshot.priority == "P1"
    assert snapshot.active_agent == "none"
    assert snapshot.key_decisions == [
        "quality: Failed (85%)",
        "Completed: spec",
        "ERROR: tests - timeout",
    ]
    assert len(snapshot.recent_events) == 5
    assert snapshot.recent_events[0] == 'agent.started: agent="a3", attempt=3'
    assert snapshot.recent_events[-1] == "phase.completed: (no details)"
    assert snapshot.estimated_tokens > 0


def test_key_decisions_are_capped(workflow) -> None:
    for i in range(12):
        workflow.agent(f"agent{i}").start()
        workflow.agent(f"agent{i}").fail("boom")
    decisions = ContextCompactor().extract_key_decisions(workflow)
    assert len(decisions) == 10
    assert decisions[-1] == "ERROR: agent11 - boom"


def test_notekeeper_filters() -> None:
    keeper = StructuredNotekeeper()
    keeper.add_note(1, NoteCategory.DECISION, "Foundation", "spec", "Use CSS variables")
    keeper.add_note(1, "learning", "Development", "impl", "Tokens live in theme.ts")
    keeper.add_note(2, NoteCategory.LEARNING, "Quality", "qa", "Contrast matters")

    assert [n.content for n in keeper.get_notes_by_category(1, "decision")] == [
        "Use CSS variables"
    ]
    assert [n.agent for n in keeper.get_notes_by_phase(1, "Development")] == ["impl"]
    assert len(keeper.get_all_learnings()) == 2
    assert keeper.get_recent_notes(1, 1)[0].content == "Tokens live in theme.ts"
    assert keeper.get_recent_notes(1, 0) == []

    keeper.clear_notes(1)
    assert keeper.get_notes(1) == []
    assert len(keeper.get_notes(2)) == 1


def test_query_terms_drop_noise() -> None:
    assert query_terms("Add the dark-mode toggle to UI, dark!") == ["dark", "mode", "toggle"]


def test_file_retrieval_ranks_path_hits_higher() -> None:
    retriever = JustInTimeRetriever(
        files={
            "src/theme/dark.ts": "export const palette = {}",
            "src/app.ts": "// dark mode wiring\nimport './theme'",
            "README.md": "Nothing relevant",
        }
    )
    refs = retriever.retrieve_file_context("dark theme")
    assert [r.ref for r in refs] == ["src/theme/dark.ts", "src/app.ts"]
    assert refs[0].score == 4.0
    assert refs[1].summary == "// dark mode wiring"


def test_retrieval_is_deterministic() -> None:
    files = {f"src/mod{i}.ts": "toggle" for i in (3, 1, 2)}
    first = JustInTimeRetriever(files=files).retrieve_file_context("toggle")
    second = JustInTimeRetriever(files=dict(reversed(list(files.items())))).retrieve_file_context(
        "toggle"
    )
    assert [r.ref for r in first] == [r.ref for r in second] == [
        "src/mod1.ts",
        "src/mod2.ts",
        "src/mod3.ts",
    ]


def test_similar_issues_and_previous_outputs() -> None:
    retriever = JustInTimeRetriever(
        issues=[
            IssueRecord(10, "Dark mode for dashboard", ("frontend",)),
            IssueRecord(11, "Speed up API", ("backend",)),
        ]
    )
    refs = retriever.retrieve_similar_issues("Dark mode toggle", ["frontend"])
    assert [r.ref for r in refs] == ["#10"]
    assert refs[0].score == 2.5

    retriever.record_output("spec", 1, "first")
    retriever.record_output("spec", 2, "second")
    retriever.record_output("qa", 2, "qa run")
    assert [r.ref for r in retriever.retrieve_previous_outputs("spec", 1)] == ["spec#2"]


def test_from_directory_skips_ignored(tmp_path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "theme.ts").write_text("dark palette")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("dark")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")

    refs = JustInTimeRetriever.from_directory(tmp_path).retrieve_file_context("dark")
    assert [r.ref for r in refs] == ["src/theme.ts"]


@pytest.mark.parametrize(
    ("tokens", "within", "compact", "remaining"),
    [
        (50_000, True, False, 50_000),
        (85_000, True, True, 15_000),
        (120_000, False, True, 0),
    ],
)
def test_budget_status(tokens, within, compact, remaining) -> None:
    status = ContextBudgetMonitor(100_000, 0.8).check_budget(tokens)
    assert status.within_budget is within
    assert status.should_compact is compact
    assert status.tokens_remaining == remaining


def test_compaction_recommendations() -> None:
    monitor = ContextBudgetMonitor(100, 0.8)
    assert monitor.recommend_compaction(monitor.check_budget(10)) == []
    assert len(monitor.recommend_compaction(monitor.check_budget(90))) == 3
    over = monitor.recommend_compaction(monitor.check_budget(150))
    assert "CRITICAL: Context exceeds budget" in over
    assert len(over) == 6


def test_budget_rejects_non_positive_ceiling() -> None:
    with pytest.raises(ValueError):
        ContextBudgetMonitor(0)


def test_agent_context_warns_near_limit(workflow, caplog) -> None:
    manager = ContextManager(monitor=ContextBudgetMonitor(max_tokens=10, warning_threshold=0.5))
    manager.log_note(workflow, NoteCategory.DECISION, "Ship behind a flag", agent="impl")

    with caplog.at_level(logging.WARNING, logger="orchestrator.context"):
        ctx = manager.get_agent_context(workflow, "qa")

    assert ctx.budget.should_compact
    assert ctx.notes[0].content == "Ship behind a flag"
    assert ctx.notes[0].phase == "Foundation"
    assert "Context approaching limit" in caplog.text
    assert ctx.recommendations
