"""
Program API routes.

Endpoints:
- POST /add-program-git - Build a program from a git URL (raw body), streamed NDJSON
- POST /add-program-tar - Build a program from a tar archive (raw body), streamed NDJSON
- GET /programs - Hex hashes of all registered programs
- GET /program/{hash} - Stored metadata document of one program
- GET / - HTML index of registered programs
"""
import html
import logging
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse

from metadata_service.config import ServiceConfig
from metadata_service.core.errors import ErrorReason, IntakeError, StoreError
from metadata_service.core.hasher import normalize_hash
from metadata_service.core.intake import ArchiveSource, GitSource, spool_upload
from metadata_service.core.pipeline import BuildJob, BuildService
from metadata_service.core.program_store import ProgramStore
from metadata_service.schemas.build import encode_message

logger = logging.getLogger(__name__)

router = APIRouter(tags=["programs"])

MAX_GIT_URL_BYTES = 4096


def get_config(request: Request) -> ServiceConfig:
    return request.app.state.config


def get_build_service(request: Request) -> BuildService:
    return request.app.state.build_service


def get_program_store(request: Request) -> ProgramStore:
    return request.app.state.program_store


def stream_job(job: BuildJob) -> StreamingResponse:
    """
    Relay a job's messages as they are produced, one JSON object per line.

    If the client goes away the response stops; the job keeps running.
    """
    async def body() -> AsyncIterator[bytes]:
        async for message in job.channel.aiter():
            yield encode_message(message)

    return StreamingResponse(
        body(),
        media_type="application/x-ndjson",
        headers={
            "X-Build-Job-Id": job.id,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post("/add-program-git")
async def add_program_git(request: Request) -> StreamingResponse:
    """Clone the repository at the given URL, build it and register the binary."""
    config = get_config(request)
    service = get_build_service(request)

    raw = await request.body()
    try:
        if len(raw) > MAX_GIT_URL_BYTES:
            raise IntakeError(ErrorReason.CLONE_FAILED, "Git URL too long")
        try:
            url = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise IntakeError(ErrorReason.CLONE_FAILED, "Git URL is not valid UTF-8")
    except IntakeError as e:
        return stream_job(service.reject(e))

    job = service.submit(GitSource(url, git_command=config.git_command, timeout=config.clone_timeout_s))
    return stream_job(job)


@router.post("/add-program-tar")
async def add_program_tar(request: Request) -> StreamingResponse:
    """Unpack the uploaded tar archive, build it and register the binary."""
    config = get_config(request)
    service = get_build_service(request)

    try:
        upload = await spool_upload(request.stream(), config.max_archive_bytes)
    except IntakeError as e:
        return stream_job(service.reject(e))

    job = service.submit(ArchiveSource(
        upload,
        max_extracted_bytes=config.max_extracted_bytes,
        max_members=config.max_archive_members,
    ))
    return stream_job(job)


@router.get("/programs")
def list_programs(request: Request) -> list[str]:
    """Hashes of all registered programs."""
    try:
        return get_program_store(request).list_hashes()
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/program/{program_hash}")
def get_program(program_hash: str, request: Request) -> JSONResponse:
    """Metadata document registered under a hash."""
    try:
        program_hash = normalize_hash(program_hash)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Cannot decode hash: {e}")

    try:
        program = get_program_store(request).get(program_hash)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if program is None:
        raise HTTPException(status_code=404, detail="Program not found")
    return JSONResponse(program.metadata)


@router.get("/", response_class=HTMLResponse)
def front_page(request: Request):
    """Web page listing registered programs."""
    try:
        programs = get_program_store(request).list_programs()
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

    items = []
    for program in programs:
        name = program.metadata.get("name", "unnamed")
        items.append(
            f'<li><a href="program/{program.hash}">{html.escape(str(name))} '
            f"<code>{program.hash}</code></a></li>"
        )

    listing = "\n".join(items)
    return f"""
    <!doctype html>
    <html>
      <head><title>Program metadata service</title></head>
      <body>
        <h1>Program metadata http service</h1>
        <ul>{listing}</ul>
      </body>
    </html>
    """
