"""LangGraph-based delivery pipeline.

Drives one workflow through the fixed agent sequence:

    spec -> tests -> impl -> (qa | sec) -> quality gate -> docs -> release

Any failed agent or a failed quality gate routes straight to ``finish``,
which records the run in persistent memory.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypedDict

from .context import ContextManager, IssueRecord, NoteCategory
from .events import EventEmitter, EventType
from .memory import PersistentMemorySystem
from .models import AgentType, Phase, QualityGate, QualityGateStatus, Workflow
from .quality import EvaluationFeedback, OptimizationResult, OptimizerConfig, evaluate_and_optimize
from .run_agent import AgentExecutor, AgentInvocation, AgentResult

logger = logging.getLogger(__name__)

AGENT_PHASES: dict[AgentType, Phase] = {
    AgentType.SPEC: Phase.FOUNDATION,
    AgentType.TESTS: Phase.DEVELOPMENT,
    AgentType.IMPL: Phase.DEVELOPMENT,
    AgentType.QA: Phase.QUALITY,
    AgentType.SEC: Phase.QUALITY,
    AgentType.DOCS: Phase.DEPLOYMENT,
    AgentType.RELEASE: Phase.DEPLOYMENT,
}

QUALITY_GATE = QualityGate(name="quality", phase=Phase.QUALITY, threshold=90)

_CHECK_SCORES = {"pass": 100.0, "warning": 70.0, "fail": 0.0}


class PipelineState(TypedDict, total=False):
    workflow: Workflow
    outputs: dict[str, dict[str, Any]]
    failed: bool
    feedback: EvaluationFeedback | None
    optimization: OptimizationResult | None


@dataclass
class PipelineResult:
    workflow: Workflow
    success: bool
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    feedback: EvaluationFeedback | None = None
    optimization: OptimizationResult | None = None


def _require_langgraph() -> tuple[object, object]:
    try:
        from langgraph.graph import END, StateGraph  # type: ignore[import-not-found]
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "LangGraph is not installed. Install dependencies and retry (e.g. `pip install -e .`)."
        ) from exc
    return END, StateGraph


def _check_score(check: dict[str, Any]) -> float:
    if isinstance(check.get("score"), (int, float)):
        return float(check["score"])
    return _CHECK_SCORES.get(str(check.get("status")), 0.0)


def gate_criteria(qa: dict[str, Any], sec: dict[str, Any]) -> dict[str, float]:
    """Map QA and security agent outputs onto quality-gate criteria scores."""
    criteria: dict[str, float] = {"accessibility": float(qa.get("accessibilityScore", 0))}

    test_results = qa.get("testResults") or []
    total = sum(r.get("passed", 0) + r.get("failed", 0) for r in test_results)
    if total:
        passed = sum(r.get("passed", 0) for r in test_results)
        criteria["test_pass_rate"] = 100.0 * passed / total

    checks = sec.get("securityChecks") or []
    if checks:
        criteria["security"] = sum(_check_score(c) for c in checks) / len(checks)
    if "lintResults" in sec:
        criteria["lint"] = _check_score(sec["lintResults"])
    if "typeCheckResults" in sec:
        criteria["typecheck"] = _check_score(sec["typeCheckResults"])
    return criteria


class DeliveryPipeline:
    """Runs the agent sequence for one issue at a time."""

    def __init__(
        self,
        executor: AgentExecutor,
        *,
        memory: PersistentMemorySystem | None = None,
        context: ContextManager | None = None,
        events: EventEmitter | None = None,
        gate: QualityGate = QUALITY_GATE,
        optimizer_config: OptimizerConfig | None = None,
    ) -> None:
        self.executor = executor
        self.memory = memory
        self.context = context or ContextManager()
        self.events = events or EventEmitter()
        self.gate = gate
        self.optimizer_config = optimizer_config

    # ------------------------------------------------------------------
    # Agent bookkeeping
    # ------------------------------------------------------------------

    async def _begin(self, workflow: Workflow, agent: AgentType) -> str:
        phase = AGENT_PHASES[agent]
        if workflow.current_phase != phase:
            await self.events.emit(
                workflow, EventType.PHASE_COMPLETED, phase=workflow.current_phase.value
            )
            workflow.current_phase = phase
            await self.events.emit(workflow, EventType.PHASE_STARTED, phase=phase.value)
        workflow.active_agent = agent.value
        workflow.agent(agent.value).start()
        await self.events.agent_started(workflow, agent.value)

        ctx = self.context.get_agent_context(workflow, agent.value)
        if ctx.budget.should_compact:
            await self.events.emit(
                workflow,
                EventType.BUDGET_WARNING,
                agent=agent.value,
                percentage_used=round(ctx.budget.percentage_used, 4),
            )
        return ctx.render()

    async def _finish_agent(self, workflow: Workflow, result: AgentResult) -> bool:
        status = workflow.agent(result.agent.value)
        if result.success:
            status.complete()
            await self.events.agent_completed(
                workflow, result.agent.value, duration_ms=result.duration_ms
            )
            self.context.retriever.record_output(
                result.agent.value, workflow.id, _summarize_output(result.output)
            )
            self.context.log_note(
                workflow, NoteCategory.ACHIEVEMENT, f"{result.agent.value} completed"
            )
            return True

        error = "; ".join(result.errors) or "agent reported failure"
        status.fail(error)
        await self.events.agent_failed(workflow, result.agent.value, error)
        self.context.log_note(workflow, NoteCategory.BLOCKER, f"{result.agent.value}: {error}")
        return False

    async def _run(
        self, state: PipelineState, agent: AgentType, payload: dict[str, Any]
    ) -> PipelineState:
        workflow = state["workflow"]
        context = await self._begin(workflow, agent)
        result = await self.executor.execute(agent, payload, context=context)
        ok = await self._finish_agent(workflow, result)
        outputs = {**state.get("outputs", {}), agent.value: result.output}
        return {"outputs": outputs, "failed": not ok}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def node_spec(self, state: PipelineState) -> PipelineState:
        workflow = state["workflow"]
        payload = {
            "issueNumber": workflow.id,
            "issueTitle": workflow.title,
            "issueBody": workflow.body,
            "labels": [t for t in workflow.tags if t != workflow.priority],
            "priority": workflow.priority,
        }
        return await self._run(state, AgentType.SPEC, payload)

    async def node_tests(self, state: PipelineState) -> PipelineState:
        spec = state["outputs"]["spec"]
        payload = {
            "issueNumber": state["workflow"].id,
            "specPath": spec["specPath"],
            "testMatrix": spec["testMatrix"],
        }
        return await self._run(state, AgentType.TESTS, payload)

    async def node_impl(self, state: PipelineState) -> PipelineState:
        outputs = state["outputs"]
        payload = {
            "issueNumber": state["workflow"].id,
            "specPath": outputs["spec"]["specPath"],
            "testFiles": [f["path"] for f in outputs["tests"]["testFiles"]],
        }
        return await self._run(state, AgentType.IMPL, payload)

    async def node_verify(self, state: PipelineState) -> PipelineState:
        workflow = state["workflow"]
        changed = [f["path"] for f in state["outputs"]["impl"]["changedFiles"]]
        invocations = [
            AgentInvocation(
                agent,
                {"issueNumber": workflow.id, "changedFiles": changed},
                context=await self._begin(workflow, agent),
            )
            for agent in (AgentType.QA, AgentType.SEC)
        ]
        results = await self.executor.execute_parallel(invocations)

        outputs = dict(state["outputs"])
        ok = True
        for result in results:
            ok = await self._finish_agent(workflow, result) and ok
            outputs[result.agent.value] = result.output
        return {"outputs": outputs, "failed": not ok}

    async def node_gate(self, state: PipelineState) -> PipelineState:
        workflow = state["workflow"]
        outputs = state["outputs"]
        status = QualityGateStatus.from_criteria(
            self.gate, gate_criteria(outputs["qa"], outputs["sec"])
        )
        workflow.quality_gates.append(status)
        workflow.overall_quality_score = status.score
        await self.events.gate_evaluated(workflow, status)

        feedback, optimization = evaluate_and_optimize(
            status, AgentType.IMPL.value, self.optimizer_config
        )
        for recommendation in feedback.recommendations:
            self.context.log_note(workflow, NoteCategory.DECISION, recommendation)
        if optimization is not None:
            await self.events.emit(
                workflow,
                EventType.GATE_OPTIMIZED,
                gate=status.gate.name,
                projected_score=optimization.final_score,
                iterations=optimization.iterations,
            )
            for change in optimization.changes_made:
                self.context.log_note(workflow, NoteCategory.BLOCKER, change)
        return {"failed": not feedback.passed, "feedback": feedback, "optimization": optimization}

    async def node_docs(self, state: PipelineState) -> PipelineState:
        workflow = state["workflow"]
        outputs = state["outputs"]
        payload = {
            "issueNumber": workflow.id,
            "specPath": outputs["spec"]["specPath"],
            "changedFiles": [f["path"] for f in outputs["impl"]["changedFiles"]],
            "executionLog": [
                {
                    "phase": str(e.payload.get("agent", e.type)),
                    "status": str(e.type),
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in workflow.history
                if e.type in (EventType.AGENT_COMPLETED, EventType.AGENT_FAILED)
            ],
        }
        return await self._run(state, AgentType.DOCS, payload)

    async def node_release(self, state: PipelineState) -> PipelineState:
        sec = state["outputs"]["sec"]
        checks = [sec["lintResults"], sec["typeCheckResults"], *sec.get("securityChecks", [])]
        payload = {
            "issueNumber": state["workflow"].id,
            "mode": "create-pr",
            "testResults": checks,
        }
        return await self._run(state, AgentType.RELEASE, payload)

    async def node_finish(self, state: PipelineState) -> PipelineState:
        workflow = state["workflow"]
        success = not state.get("failed", False)
        workflow.active_agent = None
        if success:
            await self.events.emit(
                workflow, EventType.PHASE_COMPLETED, phase=workflow.current_phase.value
            )
        self.context.retriever.add_issue(
            IssueRecord(workflow.id, workflow.title, tuple(workflow.tags))
        )
        await self.events.emit(
            workflow,
            EventType.WORKFLOW_COMPLETED if success else EventType.WORKFLOW_FAILED,
            completed=workflow.completed_agents(),
        )
        if self.memory is not None:
            await self.memory.record_workflow(workflow, success)
        return {"failed": not success}

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def build(self) -> Any:
        END, StateGraph = _require_langgraph()

        graph = StateGraph(PipelineState)
        steps = [
            ("spec", self.node_spec),
            ("tests", self.node_tests),
            ("impl", self.node_impl),
            ("verify", self.node_verify),
            ("gate", self.node_gate),
            ("docs", self.node_docs),
            ("release", self.node_release),
        ]
        for name, node in steps:
            graph.add_node(name, node)
        graph.add_node("finish", self.node_finish)

        graph.set_entry_point("spec")
        for (name, _), (next_name, _) in zip(steps, steps[1:]):
            graph.add_conditional_edges(
                name,
                _route_to(next_name),
                {next_name: next_name, "finish": "finish"},
            )
        graph.add_edge("release", "finish")
        graph.add_edge("finish", END)
        return graph.compile()

    async def run(self, workflow: Workflow) -> PipelineResult:
        app = self.build()
        logger.info("Starting pipeline for issue #%s: %s", workflow.id, workflow.title)
        await self.events.emit(workflow, EventType.WORKFLOW_STARTED, title=workflow.title)
        final_state = await app.ainvoke({"workflow": workflow, "outputs": {}, "failed": False})
        return PipelineResult(
            workflow=workflow,
            success=not final_state.get("failed", False),
            outputs=final_state.get("outputs", {}),
            feedback=final_state.get("feedback"),
            optimization=final_state.get("optimization"),
        )


def _route_to(next_node: str) -> Callable[[PipelineState], str]:
    def route(state: PipelineState) -> str:
        return "finish" if state.get("failed") else next_node

    return route


def _summarize_output(output: dict[str, Any]) -> str:
    for key in ("problemStatement", "changelogEntry", "rollbackStrategy", "prUrl"):
        value = output.get(key)
        if isinstance(value, str) and value:
            return value[:200]
    return ", ".join(sorted(output))[:200]
