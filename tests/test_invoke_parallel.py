import json

import pytest
from rich.console import Console

from conftest import QA_OUTPUT, FakeLLM, fenced
from orchestrator.invoke_parallel import invoke_parallel, load_invocations
from orchestrator.models import AgentType
from orchestrator.run_agent import AgentExecutor


def test_load_invocations(tmp_path) -> None:
    path = tmp_path / "batch.json"
    path.write_text(
        json.dumps(
            [
                {"agent": "qa", "input": {"issueNumber": 1, "changedFiles": []}, "timeout": 30},
                {"agent": "sec", "input": {"issueNumber": 1, "changedFiles": []}},
            ]
        )
    )

    invocations = load_invocations(path)

    assert [inv.agent for inv in invocations] == [AgentType.QA, AgentType.SEC]
    assert invocations[0].timeout == 30
    assert invocations[1].retries is None


@pytest.mark.parametrize(
    "content",
    ['{"agent": "qa"}', '[{"agent": "qa"}]', '[{"agent": "nobody", "input": {}}]'],
)
def test_load_invocations_rejects_bad_files(tmp_path, content: str) -> None:
    path = tmp_path / "batch.json"
    path.write_text(content)
    with pytest.raises(ValueError):
        load_invocations(path)


@pytest.mark.asyncio
async def test_invoke_parallel_reports_each_agent(test_settings, history, tmp_path) -> None:
    llm = FakeLLM(fenced(QA_OUTPUT))
    executor = AgentExecutor(llm, history=history, settings=test_settings)
    path = tmp_path / "batch.json"
    path.write_text(
        json.dumps(
            [
                {"agent": "qa", "input": {"issueNumber": 1, "changedFiles": ["a.ts"]}},
                {"agent": "sec", "input": {"issueNumber": "one", "changedFiles": []}},
            ]
        )
    )
    out = Console(record=True, width=120)

    result = await invoke_parallel(executor, load_invocations(path), out=out)

    assert [r.success for r in result.results] == [True, False]
    assert not result.all_succeeded
    text = out.export_text()
    assert "qa completed" in text
    assert "sec failed: issueNumber" in text
