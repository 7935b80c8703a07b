from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from tests.conftest import FakeExecutionBackend, ManualClock
from webmmb.config.settings import Settings
from webmmb.domain.exceptions import (
    DatabaseInUseError,
    DuplicateJobError,
    JobStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from webmmb.domain.models import JobStatus, PollResult
from webmmb.use_cases.job_service import JobService, build_service


@pytest.fixture
def service(
    settings: Settings, fake_backend: FakeExecutionBackend, clock: ManualClock
) -> Generator[JobService, None, None]:
    service = build_service(settings, backend=fake_backend, clock=clock)
    yield service
    service.shutdown()


def _finish(service: JobService, backend: FakeExecutionBackend, job_id: str) -> None:
    backend.script(job_id, PollResult.succeeded())
    service.sweep()


def test_submit_binds_job_to_session(service: JobService) -> None:
    session = service.open_session("alice")

    view = service.submit(session.session_id, "folding", {"timesteps": 10})

    assert view.status is JobStatus.RUNNING
    assert view.name == "folding"
    assert [job.job_id for job in service.list_jobs(session.session_id)] == [view.job_id]


def test_structured_parameters_written_as_json(service: JobService, settings: Settings) -> None:
    session = service.open_session("alice")

    view = service.submit(session.session_id, "json", {"timesteps": 10})

    commands = Path(settings.jobs_root) / view.job_id / "commands.txt"
    assert commands.read_text() == '{\n  "timesteps": 10\n}'


def test_other_session_is_unauthorized(service: JobService) -> None:
    owner = service.open_session("alice")
    stranger = service.open_session("mallory")
    view = service.submit(owner.session_id, "private", "timesteps 1")

    with pytest.raises(UnauthorizedError):
        service.status(stranger.session_id, view.job_id)
    with pytest.raises(UnauthorizedError):
        service.cancel(stranger.session_id, view.job_id)
    with pytest.raises(UnauthorizedError):
        service.results(stranger.session_id, view.job_id)

    assert service.status(owner.session_id, view.job_id).status is JobStatus.RUNNING


def test_unknown_ids_are_not_found(service: JobService) -> None:
    session = service.open_session("alice")

    with pytest.raises(NotFoundError):
        service.status("no-such-session", "job")
    with pytest.raises(NotFoundError):
        service.status(session.session_id, "no-such-job")


def test_submit_validates_request(service: JobService) -> None:
    session = service.open_session("alice")

    with pytest.raises(ValidationError, match="Job must have a name"):
        service.submit(session.session_id, "   ", "timesteps 1")

    service.submit(session.session_id, "unique", "timesteps 1")
    with pytest.raises(DuplicateJobError):
        service.submit(session.session_id, "unique", "timesteps 2")


def test_results_require_terminal_job(
    service: JobService, fake_backend: FakeExecutionBackend, clock: ManualClock
) -> None:
    session = service.open_session("alice")
    view = service.submit(session.session_id, "result", "timesteps 1")

    with pytest.raises(JobStateError):
        service.results(session.session_id, view.job_id)

    _finish(service, fake_backend, view.job_id)
    final = service.results(session.session_id, view.job_id)

    assert final.status is JobStatus.COMPLETED
    assert final.summary is not None

    # Fetched results are kept for the shorter window only
    clock.advance(121)
    service.sweep()
    with pytest.raises(NotFoundError):
        service.status(session.session_id, view.job_id)


def test_list_jobs_newest_first(service: JobService, clock: ManualClock) -> None:
    session = service.open_session("alice")
    first = service.submit(session.session_id, "one", "a")
    clock.advance(1)
    second = service.submit(session.session_id, "two", "b")

    views = service.list_jobs(session.session_id)

    assert [view.job_id for view in views] == [second.job_id, first.job_id]


def test_delete_removes_terminal_job(
    service: JobService, fake_backend: FakeExecutionBackend
) -> None:
    session = service.open_session("alice")
    view = service.submit(session.session_id, "gone", "a")

    with pytest.raises(JobStateError):
        service.delete(session.session_id, view.job_id)

    _finish(service, fake_backend, view.job_id)
    service.delete(session.session_id, view.job_id)

    assert service.list_jobs(session.session_id) == []
    with pytest.raises(NotFoundError):
        service.status(session.session_id, view.job_id)


def test_view_reports_progress_and_stages(service: JobService, settings: Settings) -> None:
    session = service.open_session("alice")
    view = service.submit(session.session_id, "progress", "a")
    workspace = Path(settings.jobs_root) / view.job_id
    (workspace / "progress.json").write_text(
        '{"state": "running", "step": 3, "total_steps": 10}'
    )
    (workspace / "trajectory.2.pdb").write_text("")
    (workspace / "trajectory.1.pdb").write_text("")

    current = service.status(session.session_id, view.job_id)

    assert current.progress is not None
    assert current.progress.step == 3
    assert current.stages == [1, 2]


def test_diagnostics_and_artifacts(
    service: JobService, fake_backend: FakeExecutionBackend, settings: Settings
) -> None:
    session = service.open_session("alice")
    view = service.submit(session.session_id, "diag", "a")
    workspace = Path(settings.jobs_root) / view.job_id

    assert service.diagnostics(session.session_id, view.job_id) == ""

    (workspace / "doutput.txt").write_text("stage 1 done\n")
    (workspace / "last.pdb").write_text("ATOM\n")
    _finish(service, fake_backend, view.job_id)

    assert service.diagnostics(session.session_id, view.job_id) == "stage 1 done\n"
    path = service.artifact_path(session.session_id, view.job_id, "last.pdb")
    assert path == (workspace / "last.pdb").resolve()
    with pytest.raises(NotFoundError):
        service.artifact_path(session.session_id, view.job_id, "../../etc/passwd")


def test_jobs_survive_session_renewal(service: JobService) -> None:
    first = service.open_session("alice")
    view = service.submit(first.session_id, "long", "a")

    service.close_session(first.session_id)
    with pytest.raises(NotFoundError):
        service.status(first.session_id, view.job_id)

    renewed = service.open_session("alice")
    assert service.status(renewed.session_id, view.job_id).job_id == view.job_id


def test_persisted_jobs_recovered_after_restart(
    settings: Settings, clock: ManualClock, tmp_path: Path
) -> None:
    persistent = settings.model_copy(
        update={"persistence_path": str(tmp_path / "state" / "jobs.db")}
    )
    backend = FakeExecutionBackend()
    service = build_service(persistent, backend=backend, clock=clock)
    session = service.open_session("bob")
    view = service.submit(session.session_id, "batch", "a")
    service.shutdown()

    restarted_backend = FakeExecutionBackend()
    restarted = build_service(persistent, backend=restarted_backend, clock=clock)
    try:
        renewed = restarted.open_session("bob")
        recovered = restarted.status(renewed.session_id, view.job_id)

        assert recovered.status is JobStatus.RUNNING
        assert restarted.controller.active_count == 1
    finally:
        restarted.shutdown()


def test_clone_copies_parameters_of_finished_job(
    service: JobService, fake_backend: FakeExecutionBackend, settings: Settings
) -> None:
    session = service.open_session("alice")
    source = service.submit(session.session_id, "original", "timesteps 7\n")

    with pytest.raises(JobStateError, match="Running jobs cannot be cloned"):
        service.clone(session.session_id, source.job_id, "copy")

    _finish(service, fake_backend, source.job_id)
    copy = service.clone(session.session_id, source.job_id, "copy")

    assert copy.job_id != source.job_id
    assert copy.status is JobStatus.RUNNING
    assert service.commands(session.session_id, copy.job_id) == "timesteps 7\n"
    assert (Path(settings.jobs_root) / copy.job_id / "commands.txt").read_text() == (
        "timesteps 7\n"
    )
    with pytest.raises(DuplicateJobError):
        service.clone(session.session_id, source.job_id, "copy")


def test_commands_and_clone_check_ownership(service: JobService) -> None:
    owner = service.open_session("alice")
    stranger = service.open_session("mallory")
    view = service.submit(owner.session_id, "private", {"timesteps": 3})

    assert service.commands(owner.session_id, view.job_id) == '{\n  "timesteps": 3\n}'
    with pytest.raises(UnauthorizedError):
        service.commands(stranger.session_id, view.job_id)
    with pytest.raises(UnauthorizedError):
        service.clone(stranger.session_id, view.job_id, "stolen")


def test_sessions_need_a_principal(service: JobService) -> None:
    with pytest.raises(ValidationError):
        service.open_session("")


def test_expired_session_jobs_stay_reachable(
    service: JobService, clock: ManualClock, settings: Settings
) -> None:
    first = service.open_session("alice")
    view = service.submit(first.session_id, "long", "a")

    clock.advance(settings.session_ttl_seconds + 1)
    service.sweep()
    with pytest.raises(NotFoundError):
        service.status(first.session_id, view.job_id)

    renewed = service.open_session("alice")
    assert service.status(renewed.session_id, view.job_id).status is JobStatus.RUNNING


def test_second_service_cannot_claim_live_database(
    settings: Settings, clock: ManualClock, tmp_path: Path
) -> None:
    persistent = settings.model_copy(
        update={"persistence_path": str(tmp_path / "state" / "jobs.db")}
    )
    service = build_service(persistent, backend=FakeExecutionBackend(), clock=clock)
    try:
        session = service.open_session("bob")
        view = service.submit(session.session_id, "live", "a")

        with pytest.raises(DatabaseInUseError):
            build_service(persistent, backend=FakeExecutionBackend(), clock=clock)

        assert service.status(session.session_id, view.job_id).status is JobStatus.RUNNING
    finally:
        service.shutdown()

    reopened = build_service(persistent, backend=FakeExecutionBackend(), clock=clock)
    reopened.shutdown()
