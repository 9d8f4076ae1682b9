"""
Tests for CLI commands.
"""

import uuid
from contextlib import contextmanager
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from tutorchat.cli import app
from tutorchat.jobs.queue import JOB_CHAT_MAINTAIN, JobQueue
from tutorchat.models.db import JobRun

# Disable Rich formatting in tests using NO_COLOR environment variable
runner = CliRunner(env={"NO_COLOR": "1", "TERM": "dumb", "COLUMNS": "200"})


@pytest.fixture
def cli_session(db_session):
    """Route the CLI's db_session() to the test session and silence file logging."""

    @contextmanager
    def fake_db_session():
        yield db_session
        db_session.commit()

    with patch("tutorchat.db.connection.db_session", fake_db_session), patch(
        "tutorchat.cli.setup_logging"
    ), patch("tutorchat.vector.create_vector_store", return_value=None):
        yield db_session


class TestArgumentValidation:
    """Tests for argument parsing."""

    def test_rebuild_requires_user(self):
        result = runner.invoke(app, ["rebuild", str(uuid.uuid4())])
        assert result.exit_code != 0

    def test_invalid_thread_id(self, cli_session):
        result = runner.invoke(app, ["rebuild", "not-a-uuid", "--user", str(uuid.uuid4())])

        assert result.exit_code == 2
        assert "Invalid thread ID" in result.stdout

    def test_invalid_node_id(self, cli_session, user_id, sample_path):
        result = runner.invoke(
            app,
            ["index-path", str(sample_path.id), "--user", str(user_id), "--node", "n-1", "--no-llm"],
        )

        assert result.exit_code == 2
        assert "Invalid node ID" in result.stdout


class TestRebuildCommand:
    """Tests for the rebuild command."""

    def test_rebuild_enqueues_maintenance(self, cli_session, user_id, sample_thread):
        result = runner.invoke(app, ["rebuild", str(sample_thread.id), "--user", str(user_id)])

        assert result.exit_code == 0
        assert "maintain_job_id" in result.stdout
        job = cli_session.query(JobRun).one()
        assert job.job_type == JOB_CHAT_MAINTAIN

    def test_rebuild_without_maintenance(self, cli_session, user_id, sample_thread):
        result = runner.invoke(
            app, ["rebuild", str(sample_thread.id), "--user", str(user_id), "--no-maintain"]
        )

        assert result.exit_code == 0
        assert cli_session.query(JobRun).count() == 0

    def test_rebuild_foreign_thread_fails(self, cli_session, other_user_id, sample_thread):
        result = runner.invoke(
            app, ["rebuild", str(sample_thread.id), "--user", str(other_user_id)]
        )

        assert result.exit_code == 1
        assert "Rebuild failed" in result.stdout


class TestIndexPathCommand:
    def test_index_path_without_llm(self, cli_session, user_id, sample_path):
        result = runner.invoke(
            app, ["index-path", str(sample_path.id), "--user", str(user_id), "--no-llm"]
        )

        assert result.exit_code == 0
        assert "docs_upserted" in result.stdout


class TestJobsCommand:
    """Tests for the jobs command."""

    def test_shows_queue_counts(self, cli_session, user_id, sample_thread):
        JobQueue(cli_session).enqueue(
            user_id, JOB_CHAT_MAINTAIN, "chat_thread", sample_thread.id, {}
        )
        cli_session.commit()

        result = runner.invoke(app, ["jobs"])

        assert result.exit_code == 0
        assert "queued" in result.stdout
        assert "total" in result.stdout

    def test_recover_reports_count(self, cli_session):
        result = runner.invoke(app, ["jobs", "--recover"])

        assert result.exit_code == 0
        assert "Re-queued 0 stale jobs" in result.stdout
