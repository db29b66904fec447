"""Parallel agent invocation with a progress display."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

from .models import AgentType
from .run_agent import AgentExecutor, AgentInvocation, AgentResult

console = Console()


@dataclass
class ParallelResult:
    results: list[AgentResult] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return bool(self.results) and all(r.success for r in self.results)


def load_invocations(path: Path) -> list[AgentInvocation]:
    """Read a JSON array of ``{"agent", "input", "timeout"?, "retries"?}`` objects."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of invocations")
    invocations: list[AgentInvocation] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict) or "agent" not in item or "input" not in item:
            raise ValueError(f"Invocation {index} needs 'agent' and 'input' keys")
        invocations.append(
            AgentInvocation(
                agent=AgentType(item["agent"]),
                payload=item["input"],
                timeout=item.get("timeout"),
                retries=item.get("retries"),
            )
        )
    return invocations


async def invoke_parallel(
    executor: AgentExecutor,
    invocations: Sequence[AgentInvocation],
    *,
    out: Console | None = None,
) -> ParallelResult:
    out = out or console
    out.print(f"[bold blue]Starting parallel execution of {len(invocations)} agents[/bold blue]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=out,
    ) as progress:
        task_ids = [
            progress.add_task(f"Running {inv.agent}...", total=None) for inv in invocations
        ]

        async def run_single(index: int, inv: AgentInvocation) -> AgentResult:
            result = await executor.execute(
                inv.agent, inv.payload, timeout=inv.timeout, retries=inv.retries
            )
            progress.update(task_ids[index], completed=True)
            return result

        results = await asyncio.gather(
            *(run_single(index, inv) for index, inv in enumerate(invocations))
        )

    for result in results:
        if result.success:
            out.print(f"[green]{result.agent} completed in {result.duration_ms}ms[/green]")
        else:
            reason = "; ".join(result.errors) or "agent reported failure"
            out.print(f"[red]{escape(str(result.agent))} failed: {escape(reason)}[/red]")

    return ParallelResult(results=list(results))
