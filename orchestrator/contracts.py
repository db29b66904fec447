"""
Per-agent input/output contracts.

Every agent of the pipeline has one input model and one output model. The
wire names are camelCase and are shared with the issue tracker and with the
files the agents generate, so they must not drift.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError, format_validation_errors
from .models import AgentType

# Scalars are strict: "5" is not a number and 1 is not a boolean.
Number = Union[StrictInt, StrictFloat]
Percent = Union[
    Annotated[StrictInt, Field(ge=0, le=100)],
    Annotated[StrictFloat, Field(ge=0, le=100)],
]
Level = Literal["Low", "Medium", "High"]
Priority = Literal["P0", "P1", "P2", "P3"]


class Contract(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        """Dump with wire names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# Shared shapes
# ============================================================================


class FileChange(Contract):
    path: StrictStr
    type: Literal["created", "modified", "deleted"]
    lines_changed: Number | None = None
    description: StrictStr | None = None


class TestResult(Contract):
    __test__ = False

    test_file: StrictStr
    passed: Number
    failed: Number
    skipped: Number
    duration: Number  # milliseconds
    failures: list[StrictStr] | None = None


class QualityCheck(Contract):
    name: StrictStr
    status: Literal["pass", "fail", "warning"]
    score: Percent | None = None
    details: StrictStr | None = None
    errors: list[StrictStr] | None = None


class TestMatrix(Contract):
    __test__ = False

    unit: Number
    integration: Number
    e2e: Number = Field(alias="e2e")


def _issue(number: int) -> str:
    return f"Issue #{number}"


class AgentInput(Contract, ABC):
    issue_number: StrictInt

    @abstractmethod
    def summary(self) -> str:
        """Minimal natural-language projection sent to the model."""


class AgentOutput(Contract, ABC):
    success: StrictBool

    @classmethod
    @abstractmethod
    def failure(cls, message: str) -> AgentOutput:
        """Schema-shaped output with safe defaults and success=False."""


# ============================================================================
# spec
# ============================================================================


class Risk(Contract):
    description: StrictStr
    likelihood: Level
    impact: Level
    mitigation: StrictStr


class QualityBudgets(Contract):
    accessibility: StrictStr
    performance: StrictStr
    security: StrictStr
    bundle: StrictStr | None = None


class SpecInput(AgentInput):
    issue_title: StrictStr
    issue_body: StrictStr
    labels: list[StrictStr] = Field(default_factory=list)
    priority: Priority = "P2"
    existing_specs: list[StrictStr] | None = None

    def summary(self) -> str:
        return (
            f"{_issue(self.issue_number)}: {self.issue_title}\n\n"
            f"Priority: {self.priority}\n\n"
            f"Description:\n{self.issue_body}"
        )


class SpecOutput(AgentOutput):
    spec_path: StrictStr
    problem_statement: StrictStr
    scope: list[StrictStr]
    out_of_scope: list[StrictStr]
    acceptance_criteria: list[StrictStr]
    risks: list[Risk]
    test_matrix: TestMatrix
    quality_budgets: QualityBudgets
    files_to_modify: list[StrictStr]
    estimated_complexity: Level

    @classmethod
    def failure(cls, message: str) -> SpecOutput:
        return cls(
            success=False,
            spec_path="",
            problem_statement=f"Error: {message}",
            scope=[],
            out_of_scope=[],
            acceptance_criteria=[],
            risks=[],
            test_matrix=TestMatrix(unit=0, integration=0, e2e=0),
            quality_budgets=QualityBudgets(accessibility="N/A", performance="N/A", security="N/A"),
            files_to_modify=[],
            estimated_complexity="Low",
        )


# ============================================================================
# tests
# ============================================================================


class TestFile(Contract):
    __test__ = False

    path: StrictStr
    type: Literal["unit", "integration", "e2e"]
    test_count: Number
    description: StrictStr


class TestsInput(AgentInput):
    __test__ = False

    spec_path: StrictStr
    test_matrix: TestMatrix
    existing_test_files: list[StrictStr] | None = None

    def summary(self) -> str:
        matrix = json.dumps(self.test_matrix.to_payload())
        return f"{_issue(self.issue_number)}\nSpec: {self.spec_path}\nTest Matrix: {matrix}"


class TestsOutput(AgentOutput):
    __test__ = False

    test_files: list[TestFile]
    failing_tests: Number
    total_tests: Number
    coverage_targets: list[StrictStr]

    @classmethod
    def failure(cls, message: str) -> TestsOutput:
        del message
        return cls(
            success=False, test_files=[], failing_tests=0, total_tests=0, coverage_targets=[]
        )


# ============================================================================
# impl
# ============================================================================


class FeatureFlagRequest(Contract):
    name: StrictStr
    default_value: StrictBool
    description: StrictStr


class FeatureFlag(Contract):
    name: StrictStr
    env_var: StrictStr
    default_value: StrictBool
    description: StrictStr


class ImplInput(AgentInput):
    spec_path: StrictStr
    test_files: list[StrictStr]
    feature_flags: list[FeatureFlagRequest] | None = None

    def summary(self) -> str:
        return (
            f"{_issue(self.issue_number)}\nSpec: {self.spec_path}\n"
            f"Test Files: {', '.join(self.test_files)}"
        )


class ImplOutput(AgentOutput):
    changed_files: list[FileChange]
    feature_flags: list[FeatureFlag] | None = None
    passing_tests: Number
    total_tests: Number
    breaking_changes: StrictBool
    backward_compatible: StrictBool
    rollback_strategy: StrictStr

    @classmethod
    def failure(cls, message: str) -> ImplOutput:
        return cls(
            success=False,
            changed_files=[],
            passing_tests=0,
            total_tests=0,
            breaking_changes=False,
            backward_compatible=False,
            rollback_strategy=f"Error: {message}",
        )


# ============================================================================
# qa
# ============================================================================


class AccessibilityViolation(Contract):
    rule: StrictStr
    severity: Literal["critical", "serious", "moderate", "minor"]
    description: StrictStr
    element: StrictStr | None = None


class QAInput(AgentInput):
    changed_files: list[StrictStr]
    changed_routes: list[StrictStr] | None = None
    accessibility_threshold: Number = 95

    def summary(self) -> str:
        routes = ", ".join(self.changed_routes) if self.changed_routes else "N/A"
        return (
            f"{_issue(self.issue_number)}\n"
            f"Changed Files: {', '.join(self.changed_files)}\n"
            f"Routes: {routes}"
        )


class QAOutput(AgentOutput):
    accessibility_score: Percent
    accessibility_violations: list[AccessibilityViolation]
    visual_regressions: list[StrictStr] = Field(default_factory=list)
    keyboard_navigation: StrictBool
    test_results: list[TestResult]
    recommendations: list[StrictStr] | None = None

    @classmethod
    def failure(cls, message: str) -> QAOutput:
        return cls(
            success=False,
            accessibility_score=0,
            accessibility_violations=[],
            keyboard_navigation=False,
            test_results=[],
            recommendations=[f"Error: {message}"],
        )


# ============================================================================
# sec
# ============================================================================


class PerformanceBudgets(Contract):
    max_api_response_time: Number = 200  # ms
    max_bundle_size: Number = 250  # KB


class Vulnerability(Contract):
    severity: Literal["critical", "high", "medium", "low"]
    package: StrictStr
    vulnerability: StrictStr
    fix_available: StrictBool


class ApiResponseTime(Contract):
    endpoint: StrictStr
    avg_time: Number
    passed: StrictBool


class BundleSize(Contract):
    size: Number
    passed: StrictBool


class PerformanceResults(Contract):
    api_response_times: list[ApiResponseTime]
    bundle_size: BundleSize | None = None


class SecInput(AgentInput):
    changed_files: list[StrictStr]
    performance_budgets: PerformanceBudgets | None = None

    def summary(self) -> str:
        return f"{_issue(self.issue_number)}\nChanged Files: {', '.join(self.changed_files)}"


class SecOutput(AgentOutput):
    security_checks: list[QualityCheck]
    vulnerabilities: list[Vulnerability]
    lint_results: QualityCheck
    type_check_results: QualityCheck
    performance_results: PerformanceResults
    secrets_found: list[StrictStr] = Field(default_factory=list)

    @classmethod
    def failure(cls, message: str) -> SecOutput:
        return cls(
            success=False,
            security_checks=[],
            vulnerabilities=[],
            lint_results=QualityCheck(name="lint", status="fail", errors=[message]),
            type_check_results=QualityCheck(name="typecheck", status="fail", errors=[message]),
            performance_results=PerformanceResults(api_response_times=[]),
        )


# ============================================================================
# docs
# ============================================================================


class ExecutionLogEntry(Contract):
    phase: StrictStr
    status: StrictStr
    timestamp: StrictStr


class DocumentationFile(Contract):
    path: StrictStr
    type: Literal["spec", "adr", "changelog", "readme", "api"]
    description: StrictStr


class DocsInput(AgentInput):
    spec_path: StrictStr
    changed_files: list[StrictStr]
    execution_log: list[ExecutionLogEntry] | None = None

    def summary(self) -> str:
        return (
            f"{_issue(self.issue_number)}\nSpec: {self.spec_path}\n"
            f"Changed Files: {', '.join(self.changed_files)}"
        )


class DocsOutput(AgentOutput):
    documentation_files: list[DocumentationFile]
    changelog_entry: StrictStr
    adr_created: StrictBool
    api_docs_updated: StrictBool

    @classmethod
    def failure(cls, message: str) -> DocsOutput:
        del message
        return cls(
            success=False,
            documentation_files=[],
            changelog_entry="",
            adr_created=False,
            api_docs_updated=False,
        )


# ============================================================================
# release
# ============================================================================


class ReleaseInput(AgentInput):
    mode: Literal["create-pr", "merge-cleanup"]
    test_results: list[QualityCheck] | None = None
    pr_url: StrictStr | None = None

    def summary(self) -> str:
        return f"{_issue(self.issue_number)}\nMode: {self.mode}\nPR: {self.pr_url or 'N/A'}"


class ReleaseOutput(AgentOutput):
    branch_name: StrictStr | None = None
    pr_url: StrictStr | None = None
    commit_hash: StrictStr | None = None
    tag: StrictStr | None = None
    deployment_url: StrictStr | None = None
    ci_status: Literal["pending", "running", "passed", "failed"] | None = None

    @classmethod
    def failure(cls, message: str) -> ReleaseOutput:
        del message
        return cls(success=False)


# ============================================================================
# Registry
# ============================================================================


@dataclass(frozen=True)
class AgentContract:
    """Everything the executor needs to know about one agent."""

    agent: AgentType
    input_model: type[AgentInput]
    output_model: type[AgentOutput]
    prompt_file: str
    instruction: str

    def output_schema(self) -> dict[str, Any]:
        return self.output_model.model_json_schema(by_alias=True)


CONTRACTS: dict[AgentType, AgentContract] = {
    AgentType.SPEC: AgentContract(
        AgentType.SPEC,
        SpecInput,
        SpecOutput,
        "10-spec.prompt.md",
        "Analyze the issue and create a comprehensive specification document.",
    ),
    AgentType.TESTS: AgentContract(
        AgentType.TESTS,
        TestsInput,
        TestsOutput,
        "20-tests.prompt.md",
        "Create failing tests based on the specification. "
        "Tests should be comprehensive and cover edge cases.",
    ),
    AgentType.IMPL: AgentContract(
        AgentType.IMPL,
        ImplInput,
        ImplOutput,
        "30-impl.prompt.md",
        "Implement minimal code changes to make the tests pass. "
        "Use feature flags for risky changes.",
    ),
    AgentType.QA: AgentContract(
        AgentType.QA,
        QAInput,
        QAOutput,
        "40-qa.prompt.md",
        "Run accessibility checks, visual regression tests, and keyboard navigation validation.",
    ),
    AgentType.SEC: AgentContract(
        AgentType.SEC,
        SecInput,
        SecOutput,
        "50-sec.prompt.md",
        "Perform security audit, dependency scanning, linting, type checking, "
        "and performance validation.",
    ),
    AgentType.DOCS: AgentContract(
        AgentType.DOCS,
        DocsInput,
        DocsOutput,
        "60-docs.prompt.md",
        "Generate documentation including spec, ADR, changelog, and API docs.",
    ),
    AgentType.RELEASE: AgentContract(
        AgentType.RELEASE,
        ReleaseInput,
        ReleaseOutput,
        "70-release.prompt.md",
        "Handle branch creation, PR management, merge strategy, and deployment.",
    ),
}

_missing = set(AgentType) - set(CONTRACTS)
if _missing:
    raise RuntimeError(f"No contract registered for agents: {sorted(_missing)}")


def get_contract(agent: AgentType | str) -> AgentContract:
    return CONTRACTS[AgentType(agent)]


def validate_input(agent: AgentType | str, payload: Mapping[str, Any] | AgentInput) -> AgentInput:
    """Validate an agent request, reporting every violated field."""
    contract = get_contract(agent)
    if isinstance(payload, contract.input_model):
        return payload
    try:
        return contract.input_model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(str(agent), "input", format_validation_errors(e.errors())) from e


def validate_output(
    agent: AgentType | str, payload: Mapping[str, Any] | AgentOutput
) -> AgentOutput:
    """Validate an agent response, reporting every violated field."""
    contract = get_contract(agent)
    if isinstance(payload, contract.output_model):
        return payload
    try:
        return contract.output_model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(str(agent), "output", format_validation_errors(e.errors())) from e


def failure_output(agent: AgentType | str, message: str) -> AgentOutput:
    return get_contract(agent).output_model.failure(message)
