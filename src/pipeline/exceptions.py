"""Pipeline exception types.

Expected failures (a red build, a failing test) are reported as result values.
These exceptions cover invocation, generation, application and corruption
conditions that abort the current operation.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class CommandInvocationError(PipelineError):
    """Raised when a command could not be started."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Could not run '{command}': {reason}")


class CommandTimeoutError(CommandInvocationError):
    """Raised when a command exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float):
        self.timeout = timeout
        super().__init__(command, f"timed out after {timeout}s")


class FileOperationError(PipelineError):
    """Raised when a file operation cannot be applied."""

    def __init__(self, operation: str, path: str, reason: str):
        self.operation = operation
        self.path = path
        self.reason = reason
        super().__init__(f"{operation} failed for {path}: {reason}")


class GenerationError(PipelineError):
    """Raised when the text generator fails or returns nothing usable."""


class InvalidTransitionError(PipelineError):
    """Raised when a step executor transition is not in the transition table."""

    def __init__(self, phase, transition):
        self.phase = phase
        self.transition = transition
        super().__init__(
            f"Invalid transition: {transition.value} from {phase.value}"
        )


class LedgerCorruptionError(PipelineError):
    """Raised when the change ledger is inconsistent with a requested operation."""


class DependencyGraphError(PipelineError):
    """Raised when a dependency graph references nodes it does not contain."""


class RefactoringError(PipelineError):
    """Raised when a multi-file changeset could not be applied."""

    def __init__(self, message: str, applied_count: int = 0):
        self.applied_count = applied_count
        super().__init__(message)
