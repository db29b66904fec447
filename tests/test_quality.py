import pytest

from orchestrator.models import GateState, Phase, QualityGate, QualityGateStatus
from orchestrator.quality import (
    IssueCategory,
    OptimizerConfig,
    QualityGateEvaluator,
    QualityGateOptimizer,
    Severity,
    categorize_criterion,
    classify_severity,
    evaluate_and_optimize,
)


def _status(
    score: float,
    criteria: dict[str, float],
    *,
    threshold: float = 95,
    phase: Phase = Phase.QUALITY,
) -> QualityGateStatus:
    gate = QualityGate("quality", phase, threshold)
    state = GateState.PASSED if score >= threshold else GateState.FAILED
    return QualityGateStatus(gate=gate, state=state, score=score, criteria_results=criteria)


@pytest.mark.parametrize(
    ("gap", "severity"),
    [
        (35, Severity.CRITICAL),
        (30, Severity.CRITICAL),
        (20, Severity.HIGH),
        (12, Severity.MEDIUM),
        (9.9, Severity.LOW),
    ],
)
def test_classify_severity(gap: float, severity: Severity) -> None:
    assert classify_severity(gap) == severity


@pytest.mark.parametrize(
    ("criterion", "category"),
    [
        ("a11y", IssueCategory.ACCESSIBILITY),
        ("bundle_size", IssueCategory.PERFORMANCE),
        ("npm audit", IssueCategory.SECURITY),
        ("test_pass_rate", IssueCategory.TESTING),
        ("eslint", IssueCategory.CODE_QUALITY),
        ("feature parity", IssueCategory.FUNCTIONALITY),
        ("vibes", IssueCategory.GENERAL),
    ],
)
def test_categorize_criterion(criterion: str, category: IssueCategory) -> None:
    assert categorize_criterion(criterion) == category


def test_critical_accessibility_issue() -> None:
    feedback = QualityGateEvaluator().evaluate(_status(60, {"a11y": 60}))

    assert not feedback.passed
    assert feedback.gap == 35
    [issue] = feedback.issues
    assert issue.severity == Severity.CRITICAL
    assert issue.category == IssueCategory.ACCESSIBILITY
    assert issue.description == "a11y: Score 60 is below threshold 95"
    assert feedback.critical_issues == [issue]
    assert feedback.recommendations[0] == (
        "CRITICAL: 1 critical issues must be resolved before proceeding."
    )
    assert any("scope creep" in line for line in feedback.recommendations)
    assert "Large gap (35 points)" in feedback.recommendations[-1]


def test_testing_suggestion_mentions_threshold() -> None:
    feedback = QualityGateEvaluator().evaluate(_status(80, {"coverage": 80}, threshold=90))
    assert feedback.issues[0].suggestion.endswith("Aim for ≥90% coverage.")


def test_passing_gate_has_no_recommendations() -> None:
    feedback = QualityGateEvaluator().evaluate(_status(97, {"lint": 100, "a11y": 94}))
    assert feedback.passed
    assert feedback.recommendations == []
    # Individual criteria below threshold are still reported.
    assert [i.criterion for i in feedback.issues] == ["a11y"]


def test_deployment_blocker_recommendation() -> None:
    feedback = QualityGateEvaluator().evaluate(
        _status(88, {"release": 88}, phase=Phase.DEPLOYMENT)
    )
    assert any(line.startswith("BLOCKER:") for line in feedback.recommendations)
    assert feedback.recommendations[-1] == (
        "Minor adjustments needed. Prioritize high-severity items."
    )


def test_optimizer_projects_until_pass() -> None:
    status = _status(70, {"a11y": 60})
    result = QualityGateOptimizer(OptimizerConfig(max_iterations=3)).optimize(
        status, QualityGateEvaluator(), "impl"
    )

    assert result.improved
    assert result.iterations == 2
    assert result.initial_score == 70
    assert result.final_score == 100
    assert result.passed
    assert result.estimated
    assert result.changes_made == [
        "[impl] Add ARIA labels and improve keyboard navigation",
        "[impl] Add ARIA labels and improve keyboard navigation",
    ]


def test_optimizer_respects_iteration_cap() -> None:
    status = _status(20, {"mystery": 0, "lint": 40})
    result = QualityGateOptimizer(OptimizerConfig(max_iterations=2)).optimize(
        status, QualityGateEvaluator(), "impl"
    )

    assert result.iterations == 2
    assert result.final_score == 50
    assert not result.passed
    # Both gaps are critical, so criteria order decides; general issues inline their suggestion.
    assert result.changes_made[0].startswith("[impl] Review implementation")
    assert result.changes_made[1] == "[impl] Fix linting and type errors"


def test_optimizer_without_auto_fix_counts_one_iteration() -> None:
    status = _status(70, {"a11y": 60})
    result = QualityGateOptimizer(OptimizerConfig(auto_fix=False)).optimize(
        status, QualityGateEvaluator(), "impl"
    )
    assert result.iterations == 1
    assert not result.improved
    assert result.changes_made == []


def test_optimizer_stops_at_target_score() -> None:
    # Above target but below threshold: nothing to plan.
    status = _status(96, {"a11y": 96}, threshold=98)
    result = QualityGateOptimizer(OptimizerConfig(target_score=95)).optimize(
        status, QualityGateEvaluator(), "impl"
    )
    assert result.iterations == 0


def test_evaluate_and_optimize_skips_passing_gate() -> None:
    feedback, optimization = evaluate_and_optimize(_status(99, {"a11y": 99}), "impl")
    assert feedback.passed
    assert optimization is None

    feedback, optimization = evaluate_and_optimize(_status(70, {"a11y": 60}), "impl")
    assert not feedback.passed
    assert optimization is not None and optimization.iterations == 2


def test_gate_status_score_bounds() -> None:
    gate = QualityGate("q", Phase.QUALITY, 90)
    with pytest.raises(ValueError):
        QualityGateStatus(gate=gate, score=101)
    with pytest.raises(ValueError):
        QualityGate("q", Phase.QUALITY, -1)
