"""
Multi-Agent Workflow Orchestrator

This package runs specialized AI agents (spec, tests, impl, qa, sec, docs,
release) under schema-validated contracts, with quality gates, context
budgets and persistent memory of past runs.
"""

__version__ = "0.1.0"

# Configuration
from orchestrator.config import Settings

# Context engineering
from orchestrator.context import (
    ContextBudgetMonitor,
    ContextCompactor,
    ContextManager,
    JustInTimeRetriever,
    StructuredNotekeeper,
)

# Contracts
from orchestrator.contracts import CONTRACTS, AgentContract, validate_input, validate_output
from orchestrator.errors import (
    OrchestratorError,
    ParseError,
    TransportError,
    ValidationError,
)

# Events
from orchestrator.events import EventEmitter, EventType, WorkflowEvent

# Memory
from orchestrator.memory import (
    LearningRepository,
    MetricsTracker,
    PatternRecognitionEngine,
    PersistentMemorySystem,
)

# Core models
from orchestrator.models import (
    AgentState,
    AgentStatus,
    AgentType,
    GateState,
    Phase,
    QualityGate,
    QualityGateStatus,
    Workflow,
)

# Orchestration
from orchestrator.pipeline import DeliveryPipeline

# Quality gates
from orchestrator.quality import (
    OptimizerConfig,
    QualityGateEvaluator,
    QualityGateOptimizer,
    evaluate_and_optimize,
)

# Agent execution
from orchestrator.run_agent import AgentExecutor, AgentInvocation, AgentResult

# Issue triage
from orchestrator.triage import IssueClassifier, IssueType

__all__ = [
    # Version
    "__version__",
    # Models
    "AgentType",
    "Phase",
    "AgentState",
    "AgentStatus",
    "GateState",
    "QualityGate",
    "QualityGateStatus",
    "Workflow",
    # Config
    "Settings",
    # Errors
    "OrchestratorError",
    "ValidationError",
    "TransportError",
    "ParseError",
    # Contracts
    "CONTRACTS",
    "AgentContract",
    "validate_input",
    "validate_output",
    # Agent
    "AgentExecutor",
    "AgentInvocation",
    "AgentResult",
    # Context
    "ContextManager",
    "ContextCompactor",
    "StructuredNotekeeper",
    "JustInTimeRetriever",
    "ContextBudgetMonitor",
    # Quality
    "QualityGateEvaluator",
    "QualityGateOptimizer",
    "OptimizerConfig",
    "evaluate_and_optimize",
    # Memory
    "PersistentMemorySystem",
    "PatternRecognitionEngine",
    "LearningRepository",
    "MetricsTracker",
    # Events
    "EventEmitter",
    "EventType",
    "WorkflowEvent",
    # Triage
    "IssueClassifier",
    "IssueType",
    # Orchestration
    "DeliveryPipeline",
]
