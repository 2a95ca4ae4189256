"""Step execution and verification pipeline.

Only leaf modules are re-exported here; the workspace layer imports this
package's models and exceptions. Import the components themselves from
their modules, e.g. ``from src.pipeline.step_executor import StepExecutor``.
"""

from src.pipeline.config import PipelineConfig, ToolMarker, load_config
from src.pipeline.exceptions import (
    CommandInvocationError,
    CommandTimeoutError,
    DependencyGraphError,
    FileOperationError,
    GenerationError,
    InvalidTransitionError,
    LedgerCorruptionError,
    PipelineError,
    RefactoringError,
)
from src.pipeline.models import (
    ActionType,
    BuildError,
    BuildResult,
    ChangeType,
    CodeAction,
    CodeFix,
    CodeGenerationRequest,
    ExecutionMetrics,
    FileChange,
    PlanStep,
    RefactoringPlan,
    RefactoringResult,
    RepositoryContext,
    StepActionPlan,
    StepExecutionResult,
    TestFailure,
    TestValidationResult,
)

__all__ = [
    "ActionType",
    "BuildError",
    "BuildResult",
    "ChangeType",
    "CodeAction",
    "CodeFix",
    "CodeGenerationRequest",
    "CommandInvocationError",
    "CommandTimeoutError",
    "DependencyGraphError",
    "ExecutionMetrics",
    "FileChange",
    "FileOperationError",
    "GenerationError",
    "InvalidTransitionError",
    "LedgerCorruptionError",
    "PipelineConfig",
    "PipelineError",
    "PlanStep",
    "RefactoringError",
    "RefactoringPlan",
    "RefactoringResult",
    "RepositoryContext",
    "StepActionPlan",
    "StepExecutionResult",
    "TestFailure",
    "TestValidationResult",
    "ToolMarker",
    "load_config",
]
