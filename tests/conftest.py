"""Shared test fixtures and configuration for pytest."""

import json
from pathlib import Path
from typing import Any

import pytest

from orchestrator.config import Settings
from orchestrator.contracts import CONTRACTS
from orchestrator.history import InMemoryHistoryStore
from orchestrator.llm_client import LLMResponse, TokenUsage
from orchestrator.models import Workflow


class FakeLLM:
    """Scripted language model.

    Each queued item is either response text, an exception to raise, or a
    callable taking (system, messages) and returning one of those.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def complete(self, system: str, messages: list[dict[str, str]]) -> LLMResponse:
        self.calls.append((system, [dict(m) for m in messages]))
        if not self.responses:
            raise AssertionError("FakeLLM ran out of scripted responses")
        item = self.responses.pop(0)
        if callable(item) and not isinstance(item, type):
            item = item(system, messages)
            if hasattr(item, "__await__"):
                item = await item
        if isinstance(item, BaseException):
            raise item
        return LLMResponse(text=item, usage=TokenUsage(input_tokens=10, output_tokens=5))


def fenced(payload: dict[str, Any]) -> str:
    """Wrap a payload the way agents are asked to answer."""
    return f"Here you go.\n\n```json\n{json.dumps(payload)}\n```\n"


SPEC_INPUT: dict[str, Any] = {
    "issueNumber": 42,
    "issueTitle": "Add dark mode toggle",
    "issueBody": "Users want a dark theme on the settings page.",
    "labels": ["frontend"],
    "priority": "P1",
}

SPEC_OUTPUT: dict[str, Any] = {
    "success": True,
    "specPath": "docs/specs/issue-42.md",
    "problemStatement": "Settings page has no dark theme.",
    "scope": ["Theme toggle"],
    "outOfScope": ["Per-page themes"],
    "acceptanceCriteria": ["Toggle persists across reloads"],
    "risks": [
        {
            "description": "Contrast regressions",
            "likelihood": "Medium",
            "impact": "High",
            "mitigation": "Run axe checks",
        }
    ],
    "testMatrix": {"unit": 4, "integration": 2, "e2e": 1},
    "qualityBudgets": {"accessibility": ">= 95", "performance": "< 200ms", "security": "0 high"},
    "filesToModify": ["src/settings/Theme.tsx"],
    "estimatedComplexity": "Low",
}

TESTS_OUTPUT: dict[str, Any] = {
    "success": True,
    "testFiles": [
        {
            "path": "tests/theme.test.ts",
            "type": "unit",
            "testCount": 4,
            "description": "Toggle behaviour",
        }
    ],
    "failingTests": 4,
    "totalTests": 4,
    "coverageTargets": ["src/settings/Theme.tsx"],
}

IMPL_OUTPUT: dict[str, Any] = {
    "success": True,
    "changedFiles": [{"path": "src/settings/Theme.tsx", "type": "modified", "linesChanged": 40}],
    "passingTests": 4,
    "totalTests": 4,
    "breakingChanges": False,
    "backwardCompatible": True,
    "rollbackStrategy": "Revert the theme commit.",
}

QA_OUTPUT: dict[str, Any] = {
    "success": True,
    "accessibilityScore": 98,
    "accessibilityViolations": [],
    "keyboardNavigation": True,
    "testResults": [
        {"testFile": "tests/theme.test.ts", "passed": 4, "failed": 0, "skipped": 0, "duration": 120}
    ],
}

SEC_OUTPUT: dict[str, Any] = {
    "success": True,
    "securityChecks": [{"name": "deps", "status": "pass"}],
    "vulnerabilities": [],
    "lintResults": {"name": "lint", "status": "pass"},
    "typeCheckResults": {"name": "typecheck", "status": "pass"},
    "performanceResults": {
        "apiResponseTimes": [{"endpoint": "/api/theme", "avgTime": 80, "passed": True}]
    },
}

DOCS_OUTPUT: dict[str, Any] = {
    "success": True,
    "documentationFiles": [
        {"path": "CHANGELOG.md", "type": "changelog", "description": "Dark mode entry"}
    ],
    "changelogEntry": "Added dark mode toggle.",
    "adrCreated": False,
    "apiDocsUpdated": False,
}

RELEASE_OUTPUT: dict[str, Any] = {
    "success": True,
    "branchName": "feature/42-dark-mode",
    "prUrl": "https://git.example.com/acme/app/pull/7",
    "ciStatus": "pending",
}


@pytest.fixture
def prompt_dir(tmp_path: Path) -> Path:
    """A directory holding a system prompt for every agent."""
    directory = tmp_path / "agents"
    directory.mkdir()
    for agent, contract in CONTRACTS.items():
        (directory / contract.prompt_file).write_text(f"You are the {agent} agent.\n")
    return directory


@pytest.fixture
def test_settings(prompt_dir: Path, tmp_path: Path) -> Settings:
    return Settings(
        anthropic_api_key=None,
        agent_dir=prompt_dir,
        memory_dir=tmp_path / "memory",
        retry_backoff_base=0,
        agent_timeout=5.0,
        max_retries=2,
        history_backend="memory",
    )


@pytest.fixture
def history() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture
def workflow() -> Workflow:
    return Workflow(
        id=42,
        title="Add dark mode toggle",
        tags=["frontend", "P1"],
        body="Users want a dark theme on the settings page.",
    )


@pytest.fixture
def mock_redis_url() -> str:
    """Mock Redis URL for testing."""
    return "redis://localhost:6379/1"
