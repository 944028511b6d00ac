"""
Exception hierarchy for imtools.

Fatal errors (ScanError, ServiceUnavailableError, PlanValidationError) abort a
command. Per-entry and per-operation errors are turned into Skip operations or
report failures and never stop a batch.
"""


class ImtoolsError(Exception):
    """Base error for imtools."""


class ScanError(ImtoolsError):
    pass


class ClassificationError(ImtoolsError):
    pass


class ServiceUnavailableError(ClassificationError):
    pass


class ConflictResolutionExhausted(ImtoolsError):
    pass


class PlanValidationError(ImtoolsError):
    pass


class ApplyError(ImtoolsError):
    pass


class ConversionError(ImtoolsError):
    pass


class DownloadError(ImtoolsError):
    pass


class PipelineCancelled(ImtoolsError):
    """Raised when cancellation is observed before the apply step."""

    def __init__(self, message: str = "Operation cancelled", plan=None, outcomes=None):
        super().__init__(message)
        self.plan = plan
        self.outcomes = outcomes or []
