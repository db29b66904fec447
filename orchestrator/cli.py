"""Main CLI entry point for agent-orchestrator."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import settings
from .context import ContextBudgetMonitor
from .history import create_history_store
from .invoke_parallel import invoke_parallel, load_invocations
from .memory import LearningCategory, PersistentMemorySystem
from .models import AgentType, GateState, Phase, QualityGate, QualityGateStatus, Workflow
from .pipeline import DeliveryPipeline
from .quality import OptimizerConfig, evaluate_and_optimize
from .run_agent import AgentExecutor

console = Console()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}") from e


def workflow_from_issue(issue: dict[str, Any]) -> Workflow:
    """Build a workflow from ``{"number", "title", "body"?, "labels"?, "priority"?}``."""
    try:
        number = int(issue["number"])
        title = str(issue["title"])
    except (KeyError, TypeError, ValueError) as e:
        raise click.BadParameter(f"Issue needs a numeric 'number' and a 'title': {e}") from e
    tags = [str(label) for label in issue.get("labels", [])]
    priority = issue.get("priority")
    if priority and priority not in tags:
        tags.append(str(priority))
    return Workflow(id=number, title=title, tags=tags, body=str(issue.get("body", "")))


def _print_json(data: Any, title: str, style: str = "blue") -> None:
    console.print(Panel(JSON.from_data(data, indent=2), title=title, border_style=style))


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Log level (default from settings)")
def main(log_level: str | None) -> None:
    """Multi-agent workflow orchestrator CLI.

    Runs the spec, tests, impl, qa, sec, docs and release agents under
    schema contracts, quality gates and context budgets.
    """
    setup_logging(log_level or settings.log_level)


@main.command()
@click.argument("agent", type=click.Choice([a.value for a in AgentType]))
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--timeout", type=float, default=None, help="Seconds per attempt")
@click.option("--retries", type=int, default=None, help="Retry budget")
def run(agent: str, input_file: Path, timeout: float | None, retries: int | None) -> None:
    """Run one agent against an input JSON file.

    AGENT: spec, tests, impl, qa, sec, docs or release
    """
    payload = _read_json(input_file)

    async def do_run() -> bool:
        executor = AgentExecutor(settings=settings)
        try:
            result = await executor.execute(agent, payload, timeout=timeout, retries=retries)
        finally:
            await executor.aclose()
        style = "green" if result.success else "red"
        _print_json(result.output, f"{agent} ({result.duration_ms}ms)", style)
        for error in result.errors:
            console.print(f"[red]- {escape(error)}[/red]")
        return result.success

    sys.exit(0 if asyncio.run(do_run()) else 1)


@main.command()
@click.argument("invocations_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def parallel(invocations_file: Path) -> None:
    """Run several agents concurrently.

    INVOCATIONS_FILE: JSON array of {"agent": ..., "input": {...}} objects
    """
    try:
        invocations = load_invocations(invocations_file)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    async def do_parallel() -> bool:
        executor = AgentExecutor(settings=settings)
        try:
            result = await invoke_parallel(executor, invocations, out=console)
        finally:
            await executor.aclose()
        return result.all_succeeded

    sys.exit(0 if asyncio.run(do_parallel()) else 1)


@main.command()
@click.argument("issue_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--memory-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--no-memory", is_flag=True, help="Do not record the run")
def pipeline(issue_file: Path, memory_dir: Path | None, no_memory: bool) -> None:
    """Drive an issue through the whole agent pipeline."""
    workflow = workflow_from_issue(_read_json(issue_file))
    console.print(
        Panel(
            f"[bold]{escape(workflow.title)}[/bold]\n\nPriority: {workflow.priority}",
            title=f"Issue #{workflow.id}",
            border_style="blue",
        )
    )

    async def do_pipeline() -> bool:
        memory = None
        if not no_memory:
            memory = await PersistentMemorySystem.open(
                memory_dir or settings.memory_dir, max_records=settings.max_learning_records
            )
        executor = AgentExecutor(settings=settings)
        try:
            result = await DeliveryPipeline(executor, memory=memory).run(workflow)
        finally:
            await executor.aclose()

        table = Table(title="Agents")
        table.add_column("Agent", style="cyan")
        table.add_column("Status")
        table.add_column("Duration")
        table.add_column("Error")
        for status in result.workflow.agents:
            table.add_row(
                status.name,
                status.status.value,
                f"{status.duration_ms}ms" if status.duration_ms is not None else "-",
                escape(status.error or ""),
            )
        console.print(table)
        if result.feedback is not None:
            for line in result.feedback.recommendations:
                console.print(f"[yellow]- {escape(line)}[/yellow]")
        style = "green" if result.success else "red"
        console.print(f"[bold {style}]Pipeline {'succeeded' if result.success else 'failed'}[/]")
        return result.success

    sys.exit(0 if asyncio.run(do_pipeline()) else 1)


@main.command()
@click.argument("gate_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--agent", default=AgentType.IMPL.value, help="Agent responsible for fixes")
@click.option("--optimize/--no-optimize", default=True, help="Plan an optimization run")
@click.option("--max-iterations", default=3, help="Optimizer iteration cap")
@click.option("--target-score", default=95.0, help="Optimizer target score")
def evaluate(
    gate_file: Path, agent: str, optimize: bool, max_iterations: int, target_score: float
) -> None:
    """Evaluate a quality gate result.

    GATE_FILE: {"name", "phase", "threshold", "criteria": {...}, "score"?}
    """
    data = _read_json(gate_file)
    try:
        gate = QualityGate(
            name=str(data["name"]), phase=Phase(data["phase"]), threshold=float(data["threshold"])
        )
        criteria = {str(k): float(v) for k, v in data.get("criteria", {}).items()}
        status = QualityGateStatus.from_criteria(gate, criteria)
        if "score" in data:
            # An explicit score overrides the criteria mean.
            score = float(data["score"])
            status = QualityGateStatus(
                gate=gate,
                state=GateState.PASSED if score >= gate.threshold else GateState.FAILED,
                score=score,
                criteria_results=criteria,
            )
    except (KeyError, TypeError, ValueError) as e:
        raise click.BadParameter(f"Invalid gate file: {e}") from e

    config = OptimizerConfig(max_iterations=max_iterations, target_score=target_score)
    feedback, optimization = evaluate_and_optimize(status, agent, config)
    _print_json(feedback.to_dict(), f"Gate: {gate.name}", "green" if feedback.passed else "red")
    if optimize and optimization is not None:
        _print_json(optimization.to_dict(), "Optimization plan (estimated)", "yellow")
    sys.exit(0 if feedback.passed else 1)


@main.command()
@click.argument("tokens", type=int)
@click.option("--max-tokens", default=None, type=int, help="Token ceiling")
@click.option("--threshold", default=None, type=float, help="Warning threshold (0-1)")
def budget(tokens: int, max_tokens: int | None, threshold: float | None) -> None:
    """Check an estimated token count against the context budget."""
    monitor = ContextBudgetMonitor(
        max_tokens or settings.context_max_tokens,
        settings.context_warning_threshold if threshold is None else threshold,
    )
    status = monitor.check_budget(tokens)
    _print_json(status.to_dict(), "Context budget", "green" if status.within_budget else "red")
    for action in monitor.recommend_compaction(status):
        console.print(f"- {escape(action)}")


# =============================================================================
# Memory
# =============================================================================


@main.group(name="memory")
@click.option("--dir", "memory_dir", type=click.Path(file_okay=False, path_type=Path))
@click.pass_context
def memory_group(ctx: click.Context, memory_dir: Path | None) -> None:
    """Inspect and extend persistent memory."""
    ctx.obj = memory_dir or settings.memory_dir


async def _open_memory(directory: Path) -> PersistentMemorySystem:
    return await PersistentMemorySystem.open(directory, max_records=settings.max_learning_records)


@memory_group.command(name="stats")
@click.pass_obj
def memory_stats(directory: Path) -> None:
    """Show pattern, learning and quality statistics."""
    memory = asyncio.run(_open_memory(directory))
    stats = memory.get_statistics()

    table = Table(title="Memory")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Patterns", str(stats["totalPatterns"]))
    table.add_row("Learnings", str(stats["totalLearnings"]))
    table.add_row("Success rate", f"{stats['successRate'] * 100:.1f}%")
    trend = stats["qualityTrend"]
    direction = "improving" if trend["improving"] else "flat"
    table.add_row("Quality trend", f"{trend['averageScore']} ({direction})")
    console.print(table)

    failures = memory.metrics.metrics.common_failure_points
    if failures:
        console.print("\n[bold]Common failure points:[/bold]")
        for agent, count in sorted(failures.items(), key=lambda item: -item[1]):
            console.print(f"  {agent}: {count}")


@memory_group.command(name="recommend")
@click.argument("issue_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def memory_recommend(directory: Path, issue_file: Path) -> None:
    """Recommend patterns, learnings and practices for an issue."""
    workflow = workflow_from_issue(_read_json(issue_file))
    memory = asyncio.run(_open_memory(directory))
    _print_json(memory.get_recommendations(workflow).to_dict(), f"Issue #{workflow.id}")


@memory_group.command(name="learn")
@click.option(
    "--category",
    type=click.Choice([c.value for c in LearningCategory]),
    required=True,
)
@click.option("--lesson", required=True, help="What was learned")
@click.option("--agent", required=True, help="Agent the lesson is about")
@click.option("--confidence", type=click.FloatRange(0, 1), default=0.8)
@click.option("--context", "context_text", default="", help="Extra context")
@click.option("--issue", "issue_number", type=int, default=None)
@click.pass_obj
def memory_learn(
    directory: Path,
    category: str,
    lesson: str,
    agent: str,
    confidence: float,
    context_text: str,
    issue_number: int | None,
) -> None:
    """Record a learning."""

    async def do_learn() -> str:
        memory = await _open_memory(directory)
        record = await memory.add_learning(
            category,
            lesson,
            agent=agent,
            confidence=confidence,
            context=context_text,
            issue_number=issue_number,
        )
        return record.id

    console.print(f"[green]Recorded {asyncio.run(do_learn())}[/green]")


@memory_group.command(name="search")
@click.argument("query")
@click.option("--limit", default=10, help="Maximum results")
@click.pass_obj
def memory_search(directory: Path, query: str, limit: int) -> None:
    """Search learnings by text."""
    memory = asyncio.run(_open_memory(directory))
    results = memory.learnings.search_learnings(query, limit)
    if not results:
        console.print("[yellow]No matching learnings[/yellow]")
        return

    table = Table(title=f"Learnings matching '{query}'")
    table.add_column("When", style="dim")
    table.add_column("Category", style="cyan")
    table.add_column("Agent")
    table.add_column("Confidence")
    table.add_column("Lesson")
    for record in results:
        table.add_row(
            record.timestamp[:19],
            record.category.value,
            record.agent,
            f"{record.confidence:.2f}",
            escape(record.lesson),
        )
    console.print(table)


# =============================================================================
# History
# =============================================================================


@main.group(name="history")
def history_group() -> None:
    """Manage agent conversation history."""


@history_group.command(name="clear")
@click.argument("agent", type=click.Choice([a.value for a in AgentType]))
@click.option("--issue", "issue_number", type=int, default=None, help="Only this issue")
def history_clear(agent: str, issue_number: int | None) -> None:
    """Clear stored conversation history for an agent."""
    if settings.history_backend != "redis":
        console.print("[yellow]In-memory history is per process; nothing to clear.[/yellow]")
        return

    async def do_clear() -> int:
        store = create_history_store("redis", redis_url=settings.redis_url)
        return await store.clear_agent(agent, issue_number)

    console.print(f"[green]Removed {asyncio.run(do_clear())} conversation(s)[/green]")


if __name__ == "__main__":
    main()
