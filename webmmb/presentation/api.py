"""HTTP layer for the job service.

Translates requests into service calls and maps error kinds onto status
codes. Authentication happens upstream; the caller's session id arrives in
the ``X-Session-Id`` header.
"""

from __future__ import annotations

from typing import Annotated, Any, Final

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import (
    DuplicateJobError,
    JobStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    WebMMBError,
)
from webmmb.domain.models import JobView, SessionInfo
from webmmb.observability.tracing import correlation_scope
from webmmb.use_cases.job_service import JobService

logger = get_logger(__name__)

SESSION_HEADER: Final[str] = "X-Session-Id"
CORRELATION_HEADER: Final[str] = "X-Correlation-Id"

_STATUS_BY_ERROR: Final[tuple[tuple[type[WebMMBError], int], ...]] = (
    (DuplicateJobError, 409),
    (JobStateError, 409),
    (ValidationError, 400),
    (UnauthorizedError, 403),
    (NotFoundError, 404),
)

SessionId = Annotated[str, Header(alias=SESSION_HEADER)]


class OpenSessionRequest(BaseModel):
    principal: str = Field(..., description="Authenticated user name")


class SubmitJobRequest(BaseModel):
    name: str
    parameters: str | dict[str, Any] | list[Any] = Field(
        ..., description="Simulation commands (text) or structured parameters"
    )


class CloneJobRequest(BaseModel):
    name: str


class JobCommandsResponse(BaseModel):
    job_id: str
    parameters: str


class DiagnosticsResponse(BaseModel):
    job_id: str
    output: str


def status_for(exc: WebMMBError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(service: JobService) -> FastAPI:
    """Build the FastAPI application around a wired service."""

    app = FastAPI(
        title="WebMMB Job Service",
        description="Submit, track and collect structural-biology simulation jobs.",
        version="1.0.0",
    )

    @app.middleware("http")
    async def _correlation(request: Request, call_next):
        with correlation_scope(request.headers.get(CORRELATION_HEADER)) as correlation_id:
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(WebMMBError)
    async def _domain_error(request: Request, exc: WebMMBError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"detail": detail})

    @app.post("/api/sessions", response_model=SessionInfo, status_code=201)
    def open_session(request: OpenSessionRequest) -> SessionInfo:
        return service.open_session(request.principal)

    @app.delete("/api/sessions", status_code=204)
    def close_session(session_id: SessionId) -> None:
        service.close_session(session_id)

    @app.post("/api/jobs", response_model=JobView, status_code=201)
    def submit_job(request: SubmitJobRequest, session_id: SessionId) -> JobView:
        return service.submit(session_id, request.name, request.parameters)

    @app.get("/api/jobs", response_model=list[JobView])
    def list_jobs(session_id: SessionId) -> list[JobView]:
        return service.list_jobs(session_id)

    @app.get("/api/jobs/{job_id}", response_model=JobView)
    def job_status(job_id: str, session_id: SessionId) -> JobView:
        return service.status(session_id, job_id)

    @app.post("/api/jobs/{job_id}/clone", response_model=JobView, status_code=201)
    def clone_job(
        job_id: str, request: CloneJobRequest, session_id: SessionId
    ) -> JobView:
        return service.clone(session_id, job_id, request.name)

    @app.get("/api/jobs/{job_id}/commands", response_model=JobCommandsResponse)
    def job_commands(job_id: str, session_id: SessionId) -> JobCommandsResponse:
        return JobCommandsResponse(
            job_id=job_id, parameters=service.commands(session_id, job_id)
        )

    @app.post("/api/jobs/{job_id}/cancel", response_model=JobView)
    def cancel_job(job_id: str, session_id: SessionId) -> JobView:
        return service.cancel(session_id, job_id)

    @app.delete("/api/jobs/{job_id}", status_code=204)
    def delete_job(job_id: str, session_id: SessionId) -> None:
        service.delete(session_id, job_id)

    @app.get("/api/jobs/{job_id}/results", response_model=JobView)
    def job_results(job_id: str, session_id: SessionId) -> JobView:
        return service.results(session_id, job_id)

    @app.get("/api/jobs/{job_id}/results/{name}")
    def download_artifact(job_id: str, name: str, session_id: SessionId) -> FileResponse:
        path = service.artifact_path(session_id, job_id, name)
        return FileResponse(path, filename=path.name)

    @app.get("/api/jobs/{job_id}/diagnostics", response_model=DiagnosticsResponse)
    def job_diagnostics(job_id: str, session_id: SessionId) -> DiagnosticsResponse:
        return DiagnosticsResponse(
            job_id=job_id, output=service.diagnostics(session_id, job_id)
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "backend": service.controller.backend.kind.value,
            "active_jobs": service.controller.active_count,
        }

    return app


__all__ = ["create_app", "status_for"]
