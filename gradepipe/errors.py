"""
Error taxonomy for the grade pipeline.

Infrastructure errors (fetch, sandbox, scoring) abort the pipeline of a single
submission. Timeouts and harness errors are recorded in the TestResult and
never leave the runner.
"""


class PipelineError(Exception):
    """Base class for every error raised by the grade pipeline."""

    stage: str = "pipeline"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigError(PipelineError):
    """Invalid or missing configuration."""

    stage = "config"


class FetchError(PipelineError):
    """The submission reference is missing, unreachable or oversized."""

    stage = "fetching"


class SandboxError(PipelineError):
    """The sandbox could not execute a suite at all."""

    stage = "testing"


class SuiteTimeoutError(PipelineError):
    """A suite exceeded its wall-clock bound."""

    stage = "testing"


class HarnessError(PipelineError):
    """The test harness failed to start or collect the suite."""

    stage = "testing"


class ScoringError(PipelineError):
    """The similarity corpus is unreadable or corrupt."""

    stage = "similarity_checking"


class SuiteAccessError(PipelineError, PermissionError):
    """A caller requested suites it is not permitted to see."""

    stage = "access"


class AlreadyGradedError(PipelineError):
    """A submission with an existing report was submitted without a regrade."""

    stage = "pending"
