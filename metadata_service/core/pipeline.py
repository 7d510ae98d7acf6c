"""
Build-and-register pipeline.

Each submission becomes a BuildJob that runs in a worker thread:

    intake -> building -> hashing -> extracting-metadata -> registering -> done
                                  (any stage) -> failed

Progress is written to the job's MessageChannel. The job never waits on its
reader, so a slow or disconnected client cannot stall or cancel it.
Logs only job_id, status, hash and error reason - never inputs or metadata.
"""
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from metadata_service.config import ServiceConfig
from metadata_service.core.build_runner import BuildRunner
from metadata_service.core.channel import MessageChannel
from metadata_service.core.errors import ErrorReason, PipelineError
from metadata_service.core.hasher import hash_artifact
from metadata_service.core.intake import SourceIntake
from metadata_service.core.metadata import MetadataExtractor, read_declared_image
from metadata_service.core.metrics import metrics
from metadata_service.core.program_store import ProgramStore
from metadata_service.core.workspace import WorkspaceManager
from metadata_service.schemas.build import (
    ErrorMessage,
    JobStatus,
    StatusMessage,
    SuccessMessage,
)

logger = logging.getLogger(__name__)


@dataclass
class BuildJob:
    """One submission's unit of work (never persisted)."""
    id: str
    source: Optional[SourceIntake]
    channel: MessageChannel
    status: JobStatus = JobStatus.INTAKE
    program_hash: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None


class BuildService:
    """Accepts submissions and runs them on a bounded worker pool."""

    def __init__(
        self,
        config: ServiceConfig,
        store: ProgramStore,
        workspaces: Optional[WorkspaceManager] = None,
        runner: Optional[BuildRunner] = None,
        extractor: Optional[MetadataExtractor] = None,
    ):
        self._config = config
        self._store = store
        self._workspaces = workspaces or WorkspaceManager(config.workspace_dir)
        self._runner = runner or BuildRunner(
            docker_command=config.docker_command,
            timeout=config.build_timeout_s,
            default_image=config.build_image,
        )
        self._extractor = extractor or MetadataExtractor(
            cargo_command=config.cargo_command,
            timeout=config.metadata_timeout_s,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_builds,
            thread_name_prefix="build",
        )

    @property
    def workspaces(self) -> WorkspaceManager:
        return self._workspaces

    def _new_job(self, source: Optional[SourceIntake]) -> BuildJob:
        job = BuildJob(
            id=str(uuid.uuid4()),
            source=source,
            channel=MessageChannel(self._config.channel_capacity),
        )
        job.channel.put(StatusMessage(job_id=job.id, status=JobStatus.INTAKE))
        return job

    def submit(self, source: SourceIntake) -> BuildJob:
        """Queue a build; its messages appear on the returned job's channel."""
        job = self._new_job(source)
        metrics.inc("builds_started_total")
        logger.info(
            f"job_submitted origin={source.kind}",
            extra={"job_id": job.id, "status": job.status.value},
        )
        self._executor.submit(self.run_job, job)
        return job

    def reject(self, error: PipelineError) -> BuildJob:
        """A job that failed before it could be queued (e.g. oversized upload)."""
        job = self._new_job(None)
        metrics.inc("builds_started_total")
        self._fail(job, error.reason, error.detail)
        job.channel.close()
        return job

    def run_job(self, job: BuildJob) -> None:
        """Drive one job to done or failed. Never raises."""
        start = time.perf_counter()
        metrics.inc("builds_running")
        try:
            program_hash, metadata = self._execute(job)
        except PipelineError as e:
            self._fail(job, e.reason, e.detail, getattr(e, "exit_code", None))
        except Exception as e:
            logger.exception("job_crashed", extra={"job_id": job.id})
            self._fail(job, ErrorReason.INTERNAL_ERROR, f"Unexpected error: {type(e).__name__}")
        else:
            job.status = JobStatus.DONE
            job.program_hash = program_hash
            job.completed_at = datetime.now(timezone.utc)
            metrics.inc("builds_succeeded_total")
            job.channel.put(SuccessMessage(job_id=job.id, hash=program_hash, metadata=metadata))
        finally:
            metrics.dec("builds_running")
            if job.source is not None:
                job.source.close()
            job.channel.close()
            logger.info(
                "job_finished",
                extra={
                    "job_id": job.id,
                    "status": job.status.value,
                    "program_hash": job.program_hash,
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                },
            )

    def _execute(self, job: BuildJob) -> tuple[str, dict]:
        assert job.source is not None
        # The workspace is gone before the terminal message is sent
        with self._workspaces.scoped() as workspace:
            job.source.populate(workspace)
            image = read_declared_image(workspace.source_dir)

            self._transition(job, JobStatus.BUILDING)
            for message in self._runner.run(workspace, job.id, image):
                job.channel.put(message)

            self._transition(job, JobStatus.HASHING)
            program_hash = hash_artifact(workspace.output_dir, self._config.artifact_suffix)
            job.program_hash = program_hash

            self._transition(job, JobStatus.EXTRACTING_METADATA)
            metadata = self._extractor.extract(workspace, image)

            self._transition(job, JobStatus.REGISTERING)
            program, _ = self._store.upsert(program_hash, metadata)

        return program.hash, program.metadata

    def _transition(self, job: BuildJob, status: JobStatus) -> None:
        job.status = status
        job.channel.put(StatusMessage(job_id=job.id, status=status))
        logger.info("job_status", extra={"job_id": job.id, "status": status.value})

    def _fail(
        self,
        job: BuildJob,
        reason: ErrorReason,
        detail: str,
        exit_code: Optional[int] = None,
    ) -> None:
        job.status = JobStatus.FAILED
        job.error = detail or reason.value
        job.completed_at = datetime.now(timezone.utc)
        metrics.inc("builds_failed_total")
        logger.warning("job_failed", extra={"job_id": job.id, "reason": reason.value})
        job.channel.put(ErrorMessage(
            job_id=job.id,
            reason=reason.value,
            error=job.error,
            exit_code=exit_code,
        ))

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting work; running builds finish on their own."""
        self._executor.shutdown(wait=wait)
