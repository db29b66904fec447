import pytest

from conftest import (
    DOCS_OUTPUT,
    IMPL_OUTPUT,
    QA_OUTPUT,
    RELEASE_OUTPUT,
    SEC_OUTPUT,
    SPEC_OUTPUT,
    TESTS_OUTPUT,
    fenced,
)
from orchestrator.events import EventEmitter, EventType
from orchestrator.llm_client import LLMResponse
from orchestrator.memory import PersistentMemorySystem
from orchestrator.models import AgentState, Phase
from orchestrator.pipeline import DeliveryPipeline, gate_criteria
from orchestrator.run_agent import AgentExecutor

OUTPUTS = {
    "spec": SPEC_OUTPUT,
    "tests": TESTS_OUTPUT,
    "impl": IMPL_OUTPUT,
    "qa": QA_OUTPUT,
    "sec": SEC_OUTPUT,
    "docs": DOCS_OUTPUT,
    "release": RELEASE_OUTPUT,
}


class RoutedLLM:
    """Answers each agent from a fixed table, keyed by its system prompt."""

    def __init__(self, outputs: dict[str, dict | str]) -> None:
        self.outputs = outputs
        self.agents: list[str] = []
        self.requests: dict[str, str] = {}

    async def complete(self, system: str, messages) -> LLMResponse:
        agent = system.split()[3]
        self.agents.append(agent)
        self.requests[agent] = messages[-1]["content"]
        answer = self.outputs[agent]
        return LLMResponse(text=answer if isinstance(answer, str) else fenced(answer))


def _pipeline(llm, test_settings, tmp_path, events=None):
    executor = AgentExecutor(llm, settings=test_settings)
    memory = PersistentMemorySystem(tmp_path / "memory")
    return DeliveryPipeline(executor, memory=memory, events=events), memory


def test_gate_criteria() -> None:
    criteria = gate_criteria(
        {**QA_OUTPUT, "testResults": [{"passed": 3, "failed": 1}]},
        {**SEC_OUTPUT, "securityChecks": [{"status": "pass"}, {"status": "warning"}]},
    )
    assert criteria == {
        "accessibility": 98.0,
        "test_pass_rate": 75.0,
        "security": 85.0,
        "lint": 100.0,
        "typecheck": 100.0,
    }


@pytest.mark.asyncio
async def test_happy_path_runs_every_agent(test_settings, tmp_path, workflow) -> None:
    llm = RoutedLLM(OUTPUTS)
    seen: list[str] = []
    events = EventEmitter()
    events.on_event(lambda wf, event: seen.append(event.type))
    pipeline, memory = _pipeline(llm, test_settings, tmp_path, events)

    result = await pipeline.run(workflow)

    assert result.success
    assert sorted(llm.agents) == sorted(OUTPUTS)
    assert llm.agents[:3] == ["spec", "tests", "impl"]
    assert llm.agents[-2:] == ["docs", "release"]
    assert all(a.status == AgentState.COMPLETE for a in workflow.agents)
    assert workflow.current_phase == Phase.DEPLOYMENT
    assert workflow.quality_gates[0].passed
    assert workflow.overall_quality_score == pytest.approx(99.6)
    assert result.outputs["release"]["prUrl"] == RELEASE_OUTPUT["prUrl"]
    assert result.optimization is None

    assert seen[0] == EventType.WORKFLOW_STARTED
    assert seen[-1] == EventType.WORKFLOW_COMPLETED
    assert EventType.GATE_EVALUATED in seen
    assert seen.count(EventType.PHASE_COMPLETED) == 4
    assert seen[-2] == EventType.PHASE_COMPLETED
    assert memory.metrics.metrics.successful_executions == 1
    assert (tmp_path / "memory" / "patterns.json").exists()

    assert "CONTEXT:" not in llm.requests["spec"]
    assert "- [achievement] spec: spec completed" in llm.requests["impl"]
    assert "Key decisions:\n- Completed: spec, tests" in llm.requests["impl"]
    similar = pipeline.context.retriever.retrieve_similar_issues("dark mode settings")
    assert [ref.ref for ref in similar] == ["#42"]


@pytest.mark.asyncio
async def test_failed_gate_stops_before_docs(test_settings, tmp_path, workflow) -> None:
    llm = RoutedLLM({**OUTPUTS, "qa": {**QA_OUTPUT, "accessibilityScore": 40}})
    pipeline, memory = _pipeline(llm, test_settings, tmp_path)

    result = await pipeline.run(workflow)

    assert not result.success
    assert "docs" not in llm.agents and "release" not in llm.agents
    assert result.feedback is not None and not result.feedback.passed
    assert workflow.overall_quality_score == pytest.approx(88.0)
    assert result.optimization is not None and result.optimization.estimated
    assert any(e.type == EventType.GATE_OPTIMIZED for e in workflow.history)
    assert workflow.history[-1].type == EventType.WORKFLOW_FAILED
    assert memory.metrics.metrics.failed_executions == 1


@pytest.mark.asyncio
async def test_agent_failure_routes_to_finish(test_settings, tmp_path, workflow) -> None:
    llm = RoutedLLM({**OUTPUTS, "impl": "I could not do it."})
    pipeline, memory = _pipeline(llm, test_settings, tmp_path)

    result = await pipeline.run(workflow)

    assert not result.success
    assert llm.agents == ["spec", "tests", "impl", "impl", "impl"]
    impl = workflow.agent("impl")
    assert impl.status == AgentState.ERROR
    assert impl.error == "No JSON found in response"
    assert memory.metrics.metrics.common_failure_points == {"impl": 1}
    notes = pipeline.context.notekeeper.get_notes_by_category(workflow.id, "blocker")
    assert notes[-1].content == "impl: No JSON found in response"
