from __future__ import annotations

from datetime import datetime, timezone

from autoapply.models import ApplicationState, JobPosting, MatchResult, Platform
from autoapply.repository import FileRepository
from tests.conftest import write_profile


def _posting(external_id: str = "remotive_1", user_id: str = "u1") -> JobPosting:
    return JobPosting(
        id="",
        external_id=external_id,
        user_id=user_id,
        platform=Platform.REMOTIVE,
        job_url="https://remotive.com/job/1",
        title="Full Stack Developer",
        company="Acme",
        location="Remote",
    )


def test_profile_and_preferences_load(repo, settings):
    profile = repo.get_profile("u1")
    assert profile.name == "Jane Doe"
    assert profile.skills == ("React", "Node.js", "MongoDB", "Express")
    pref = repo.get_preference("u1")
    assert pref.roles == ("Full Stack Developer",)
    assert pref.score_threshold == 0.65
    assert repo.get_profile("nobody") is None


def test_relative_resume_path_resolves_against_profiles_dir(settings):
    write_profile(settings.profiles_dir, "u2", resume_path="resume.pdf")
    repo = FileRepository(settings.data_dir, settings.profiles_dir)
    assert repo.get_profile("u2").resume_path == str((settings.profiles_dir / "resume.pdf").resolve())


def test_list_user_ids(repo, settings):
    write_profile(settings.profiles_dir, "u0")
    assert repo.list_user_ids() == ["u0", "u1"]


def test_save_posting_assigns_id_and_rejects_duplicates(repo):
    stored = repo.save_posting(_posting())
    assert stored.id
    assert repo.get_posting(stored.id) == stored
    assert repo.save_posting(_posting()) is None
    assert repo.save_posting(_posting(user_id="u2")) is not None


def test_update_description(repo):
    stored = repo.save_posting(_posting())
    assert repo.update_description(stored.id, "React and Node")
    assert repo.get_posting(stored.id).description == "React and Node"
    assert not repo.update_description("missing", "x")


def test_terminal_status_is_final(repo):
    record = repo.create_application("u1", "job-1")
    assert record.status is ApplicationState.QUEUED
    assert repo.set_status(record.id, ApplicationState.PROCESSING)
    assert repo.set_status(record.id, ApplicationState.APPLIED)
    assert not repo.set_status(record.id, ApplicationState.FAILED, "late failure")
    stored = repo.get_application(record.id)
    assert stored.status is ApplicationState.APPLIED
    assert stored.error == ""


def test_manual_intervention_is_not_terminal(repo):
    record = repo.create_application("u1", "job-1")
    assert repo.set_status(record.id, ApplicationState.MANUAL_INTERVENTION)
    assert repo.set_status(record.id, ApplicationState.APPLIED)


def test_record_attempts(repo):
    record = repo.create_application("u1", "job-1")
    repo.record_attempts(record.id, 2)
    assert repo.get_application(record.id).attempts == 2


def test_last_run_roundtrip(repo):
    assert repo.get_last_run("u1") is None
    when = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    repo.set_last_run("u1", when)
    repo.set_last_run("u1", when)
    assert repo.get_last_run("u1") == when
    assert len(repo.runs.rows()) == 1


def test_save_match_appends_row(repo):
    match = MatchResult(score=65, is_match=True, reasons=("Fully remote", "Title matches: MERN"))
    repo.save_match("job-1", match, 0.8)
    row = repo.matches.rows()[0]
    assert row["score"] == "65"
    assert row["ai_score"] == "0.80"
    assert row["reasons"] == "Fully remote | Title matches: MERN"
