"""
Pydantic schemas for build progress messages and program responses.
"""
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Build job state machine."""
    INTAKE = "intake"
    BUILDING = "building"
    HASHING = "hashing"
    EXTRACTING_METADATA = "extracting-metadata"
    REGISTERING = "registering"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Streamed build messages (one JSON object per line)
# =============================================================================

class StatusMessage(BaseModel):
    """The job moved to a new stage."""
    type: Literal["status"] = "status"
    job_id: str
    status: JobStatus


class LogMessage(BaseModel):
    """One line of combined build output."""
    type: Literal["log"] = "log"
    job_id: str
    line: str


class SuccessMessage(BaseModel):
    """Terminal message: the program is registered."""
    type: Literal["success"] = "success"
    job_id: str
    hash: str = Field(..., description="Hex-encoded BLAKE2b-256 hash of the artifact")
    metadata: dict[str, Any]


class ErrorMessage(BaseModel):
    """Terminal message: the job failed."""
    type: Literal["error"] = "error"
    job_id: str
    reason: str
    error: str
    exit_code: Optional[int] = None


BuildMessage = Union[StatusMessage, LogMessage, SuccessMessage, ErrorMessage]


def encode_message(message: BuildMessage) -> bytes:
    """Serialize a message as one NDJSON line."""
    return (message.model_dump_json() + "\n").encode("utf-8")
