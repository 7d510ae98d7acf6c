"""
Error taxonomy for the build-and-register pipeline.
Every error is terminal for the job that raised it; none are retried.
"""
from enum import Enum
from typing import Optional


class ErrorReason(str, Enum):
    """Machine-readable failure reason reported to clients."""
    CLONE_FAILED = "clone-failed"
    EXTRACT_FAILED = "extract-failed"
    LAUNCH_FAILED = "launch-failed"
    BUILD_FAILED = "build-failed"
    AMBIGUOUS_ARTIFACT = "ambiguous-artifact"
    TIMEOUT = "timeout"
    EXTRACTION_FAILED = "extraction-failed"
    STORE_FAILED = "store-failed"
    WORKSPACE_FAILED = "workspace-failed"
    INTERNAL_ERROR = "internal-error"


class PipelineError(Exception):
    """Base class for failures of a build job."""

    def __init__(self, reason: ErrorReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class IntakeError(PipelineError):
    """Workspace creation, clone or archive extraction failed."""


class BuildError(PipelineError):
    """Container build failed, timed out, or produced no single artifact."""

    def __init__(self, reason: ErrorReason, detail: str = "", exit_code: Optional[int] = None):
        super().__init__(reason, detail)
        self.exit_code = exit_code


class MetadataError(PipelineError):
    """Manifest tool failed or its output could not be parsed."""

    def __init__(self, detail: str = ""):
        super().__init__(ErrorReason.EXTRACTION_FAILED, detail)


class StoreError(PipelineError):
    """Persistence I/O failed."""

    def __init__(self, detail: str = ""):
        super().__init__(ErrorReason.STORE_FAILED, detail)
