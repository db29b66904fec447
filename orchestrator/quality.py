"""
Quality-gate evaluation and the iterative optimizer loop.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from .models import GateState, Phase, QualityGateStatus


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueCategory(StrEnum):
    ACCESSIBILITY = "accessibility"
    PERFORMANCE = "performance"
    SECURITY = "security"
    TESTING = "testing"
    CODE_QUALITY = "code_quality"
    FUNCTIONALITY = "functionality"
    GENERAL = "general"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}

# Checked in order; the first match wins.
CATEGORY_PATTERNS: list[tuple[IssueCategory, re.Pattern[str]]] = [
    (IssueCategory.ACCESSIBILITY, re.compile(r"a11y|accessibility|wcag|aria|keyboard", re.I)),
    (IssueCategory.PERFORMANCE, re.compile(r"performance|lighthouse|speed|load|bundle", re.I)),
    (IssueCategory.SECURITY, re.compile(r"security|vulnerability|audit|secrets", re.I)),
    (IssueCategory.TESTING, re.compile(r"test|coverage|playwright|jest", re.I)),
    (IssueCategory.CODE_QUALITY, re.compile(r"lint|type|eslint|typescript", re.I)),
    (IssueCategory.FUNCTIONALITY, re.compile(r"feature|behavior|functionality|works", re.I)),
]

SUGGESTIONS: dict[IssueCategory, str] = {
    IssueCategory.ACCESSIBILITY: (
        "Run axe DevTools to identify violations. Focus on ARIA labels, "
        "contrast ratios ≥4.5:1, and keyboard navigation."
    ),
    IssueCategory.PERFORMANCE: (
        "Analyze bundle size with 'npm run build'. "
        "Check API response times and consider caching strategies."
    ),
    IssueCategory.SECURITY: (
        "Run 'npm audit fix' to resolve vulnerabilities. Check for secrets with gitleaks."
    ),
    IssueCategory.TESTING: (
        "Add missing test cases. Ensure edge cases and error paths are covered. "
        "Aim for ≥{threshold}% coverage."
    ),
    IssueCategory.CODE_QUALITY: (
        "Fix linting errors with 'npm run lint --fix'. Resolve TypeScript errors in strict mode."
    ),
    IssueCategory.FUNCTIONALITY: (
        "Review acceptance criteria. Ensure core user flows work end-to-end."
    ),
    IssueCategory.GENERAL: "Review implementation against specification. Gap: {gap} points.",
}

FIX_TEMPLATES: dict[IssueCategory, str] = {
    IssueCategory.ACCESSIBILITY: "[{agent}] Add ARIA labels and improve keyboard navigation",
    IssueCategory.PERFORMANCE: "[{agent}] Optimize bundle size and API response times",
    IssueCategory.SECURITY: "[{agent}] Resolve {severity} security vulnerability",
    IssueCategory.TESTING: "[{agent}] Add missing test coverage for {category}",
    IssueCategory.CODE_QUALITY: "[{agent}] Fix linting and type errors",
    IssueCategory.FUNCTIONALITY: "[{agent}] Implement missing acceptance criteria",
}

# Points a single fix is assumed to recover. A planning estimate only.
ESTIMATED_IMPROVEMENT: dict[Severity, float] = {
    Severity.CRITICAL: 15,
    Severity.HIGH: 10,
    Severity.MEDIUM: 7,
    Severity.LOW: 5,
}

MAX_FIXES_PER_ITERATION = 5


def _fmt(value: float) -> str:
    return f"{value:g}"


def classify_severity(gap: float) -> Severity:
    if gap >= 30:
        return Severity.CRITICAL
    if gap >= 20:
        return Severity.HIGH
    if gap >= 10:
        return Severity.MEDIUM
    return Severity.LOW


def categorize_criterion(criterion: str) -> IssueCategory:
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(criterion):
            return category
    return IssueCategory.GENERAL


@dataclass(frozen=True)
class QualityIssue:
    criterion: str
    score: float
    threshold: float
    gap: float
    severity: Severity
    category: IssueCategory
    description: str
    suggestion: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "criterion": self.criterion,
            "score": self.score,
            "threshold": self.threshold,
            "gap": round(self.gap, 2),
            "severity": self.severity.value,
            "category": self.category.value,
            "description": self.description,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class EvaluationFeedback:
    passed: bool
    score: float
    threshold: float
    gap: float
    issues: list[QualityIssue] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def critical_issues(self) -> list[QualityIssue]:
        return [i for i in self.issues if i.severity == Severity.CRITICAL]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "score": round(self.score, 2),
            "threshold": self.threshold,
            "gap": round(self.gap, 2),
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": self.recommendations,
        }


class QualityGateEvaluator:
    """Scores gate results against thresholds and explains the gaps."""

    def evaluate(self, status: QualityGateStatus) -> EvaluationFeedback:
        threshold = status.gate.threshold
        issues: list[QualityIssue] = []
        for criterion, score in status.criteria_results.items():
            if score >= threshold:
                continue
            gap = threshold - score
            category = categorize_criterion(criterion)
            issues.append(
                QualityIssue(
                    criterion=criterion,
                    score=score,
                    threshold=threshold,
                    gap=gap,
                    severity=classify_severity(gap),
                    category=category,
                    description=(
                        f"{criterion}: Score {_fmt(score)} is below threshold {_fmt(threshold)}"
                    ),
                    suggestion=SUGGESTIONS[category].format(
                        threshold=_fmt(threshold), gap=_fmt(gap)
                    ),
                )
            )

        gap = max(0.0, threshold - status.score)
        recommendations: list[str] = []
        if status.score < threshold:
            recommendations = self._recommendations(status, issues, gap)

        return EvaluationFeedback(
            passed=status.state == GateState.PASSED,
            score=status.score,
            threshold=threshold,
            gap=gap,
            issues=issues,
            recommendations=recommendations,
        )

    def _recommendations(
        self, status: QualityGateStatus, issues: list[QualityIssue], gap: float
    ) -> list[str]:
        lines: list[str] = []
        critical = sum(1 for i in issues if i.severity == Severity.CRITICAL)
        if critical:
            lines.append(
                f"CRITICAL: {critical} critical issues must be resolved before proceeding."
            )

        phase = status.gate.phase
        if phase == Phase.FOUNDATION and gap > 10:
            lines.append(
                "Foundation issues may cascade. "
                "Resolve baseline stability before adding features."
            )
        elif phase == Phase.DEVELOPMENT and gap > 15:
            lines.append("Consider breaking down implementation into smaller, testable units.")
        elif phase == Phase.QUALITY:
            lines.append(
                "Quality gate failures at this phase may indicate scope creep "
                "or insufficient testing earlier."
            )
        elif phase == Phase.DEPLOYMENT and gap > 5:
            lines.append("BLOCKER: Deployment gate must achieve ≥95% to proceed to production.")

        if gap > 20:
            lines.append(
                f"Large gap ({_fmt(gap)} points) suggests fundamental issues. "
                "Consider revisiting spec or implementation approach."
            )
        elif gap > 10:
            lines.append(
                f"Moderate gap. Focus on top {len(issues)} issues for quickest improvement."
            )
        else:
            lines.append("Minor adjustments needed. Prioritize high-severity items.")
        return lines


# ============================================================================
# Optimizer
# ============================================================================


@dataclass(frozen=True)
class OptimizerConfig:
    max_iterations: int = 3
    target_score: float = 95
    auto_fix: bool = True
    stop_on_first_pass: bool = True


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of an optimizer run.

    Scores after the first iteration are projections from the fix table, not
    measurements; ``estimated`` is always True.
    """

    improved: bool
    iterations: int
    initial_score: float
    final_score: float
    changes_made: list[str]
    final_status: QualityGateStatus
    estimated: bool = True

    @property
    def passed(self) -> bool:
        return self.final_status.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "improved": self.improved,
            "iterations": self.iterations,
            "initial_score": round(self.initial_score, 2),
            "final_score": round(self.final_score, 2),
            "changes_made": self.changes_made,
            "passed": self.passed,
            "estimated": self.estimated,
        }


class QualityGateOptimizer:
    """Plans remediation rounds until a gate is projected to pass."""

    def __init__(self, config: OptimizerConfig | None = None) -> None:
        self.config = config or OptimizerConfig()

    def optimize(
        self, status: QualityGateStatus, evaluator: QualityGateEvaluator, agent: str
    ) -> OptimizationResult:
        config = self.config
        initial_score = status.score
        current = status
        changes: list[str] = []
        iterations = 0
        feedback = evaluator.evaluate(current)

        while (
            iterations < config.max_iterations
            and not feedback.passed
            and current.score < config.target_score
        ):
            iterations += 1
            if not config.auto_fix:
                break

            top = sorted(feedback.issues, key=lambda i: SEVERITY_RANK[i.severity])
            top = top[:MAX_FIXES_PER_ITERATION]
            actions = [self._fix_action(issue, agent) for issue in top]
            if not actions:
                break
            changes.extend(actions)

            new_score = min(100.0, current.score + ESTIMATED_IMPROVEMENT[top[0].severity])
            state = GateState.PASSED if new_score >= current.gate.threshold else GateState.FAILED
            current = replace(current, score=new_score, state=state)

            feedback = evaluator.evaluate(current)
            if feedback.passed and config.stop_on_first_pass:
                break

        return OptimizationResult(
            improved=current.score > initial_score,
            iterations=iterations,
            initial_score=initial_score,
            final_score=current.score,
            changes_made=changes,
            final_status=current,
        )

    def _fix_action(self, issue: QualityIssue, agent: str) -> str:
        template = FIX_TEMPLATES.get(issue.category)
        if template is None:
            return f"[{agent}] {issue.suggestion}"
        return template.format(
            agent=agent, severity=issue.severity.value, category=issue.category.value
        )


def evaluate_and_optimize(
    status: QualityGateStatus, agent: str, config: OptimizerConfig | None = None
) -> tuple[EvaluationFeedback, OptimizationResult | None]:
    """Evaluate a gate and, when it failed, plan an optimization run."""
    evaluator = QualityGateEvaluator()
    feedback = evaluator.evaluate(status)
    if feedback.passed:
        return feedback, None
    return feedback, QualityGateOptimizer(config).optimize(status, evaluator, agent)
