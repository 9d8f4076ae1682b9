"""
Tests for the FastAPI application.
"""

import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient

from tutorchat.models.db import JobRun, TurnStatus, ChatTurn


class TestRootEndpoint:
    """Tests for root endpoint."""

    def test_root_endpoint(self, api_client: TestClient):
        response = api_client.get("/")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "message": "TutorChat API is running",
            "version": "0.1.0",
        }


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_when_database_connected(self, api_client: TestClient):
        with patch("tutorchat.db.connection.check_connection", return_value=True):
            data = api_client.get("/health").json()
        assert data == {"status": "healthy", "database": "healthy"}

    def test_health_when_database_disconnected(self, api_client: TestClient):
        """Test health endpoint reports degraded when database is down."""
        with patch("tutorchat.db.connection.check_connection", return_value=False):
            response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"


class TestAuthHeader:
    """Tests for the X-User-Id identity header."""

    def test_missing_header_is_unauthorized(self, api_client: TestClient):
        response = api_client.get("/threads")
        assert response.status_code == 401

    def test_blank_header_is_unauthorized(self, api_client: TestClient):
        response = api_client.get("/threads", headers={"X-User-Id": "  "})
        assert response.status_code == 401

    def test_malformed_header_is_bad_request(self, api_client: TestClient):
        response = api_client.get("/threads", headers={"X-User-Id": "not-a-uuid"})
        assert response.status_code == 400


class TestThreadEndpoints:
    """Tests for /threads."""

    def test_create_list_get(self, api_client: TestClient, auth_headers):
        created = api_client.post("/threads", json={"title": "Graphs"}, headers=auth_headers)
        assert created.status_code == 201
        thread = created.json()
        assert thread["title"] == "Graphs"
        assert thread["next_seq"] == 1
        assert thread["status"] == "active"

        listed = api_client.get("/threads", headers=auth_headers).json()
        assert [t["id"] for t in listed["items"]] == [thread["id"]]

        detail = api_client.get(f"/threads/{thread['id']}", headers=auth_headers)
        assert detail.status_code == 200
        assert detail.json()["messages"] == []

    def test_thread_of_other_user_is_not_found(
        self, api_client: TestClient, sample_thread, other_user_id
    ):
        response = api_client.get(
            f"/threads/{sample_thread.id}", headers={"X-User-Id": str(other_user_id)}
        )
        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_create_thread_on_unknown_path(self, api_client: TestClient, auth_headers):
        response = api_client.post(
            "/threads", json={"path_id": str(uuid.uuid4())}, headers=auth_headers
        )
        assert response.status_code == 404

    def test_delete_enqueues_purge(self, api_client: TestClient, auth_headers, sample_thread):
        response = api_client.delete(f"/threads/{sample_thread.id}", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["job_type"] == "chat_purge"
        assert body["created"] is True
        assert api_client.get(
            f"/threads/{sample_thread.id}", headers=auth_headers
        ).status_code == 404

    def test_rebuild_is_deduplicated(self, api_client: TestClient, auth_headers, sample_thread):
        first = api_client.post(f"/threads/{sample_thread.id}/rebuild", headers=auth_headers)
        second = api_client.post(f"/threads/{sample_thread.id}/rebuild", headers=auth_headers)

        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert first.json()["job_id"] == second.json()["job_id"]


class TestPostMessage:
    """Tests for POST /threads/{id}/messages."""

    def test_post_message_accepted(
        self, api_client: TestClient, auth_headers, sample_thread, db_session
    ):
        response = api_client.post(
            f"/threads/{sample_thread.id}/messages",
            json={"content": "what is a spanning tree?"},
            headers=auth_headers,
        )

        assert response.status_code == 202
        body = response.json()
        assert body["user_message"]["seq"] == 1
        assert body["assistant_message"]["seq"] == 2
        assert body["assistant_message"]["status"] == "streaming"

        job = db_session.get(JobRun, uuid.UUID(body["job_id"]))
        assert job.job_type == "chat_respond"
        turn = db_session.get(ChatTurn, uuid.UUID(body["turn_id"]))
        assert turn.status == TurnStatus.QUEUED.value

    def test_second_post_while_open_is_conflict(
        self, api_client: TestClient, auth_headers, sample_thread
    ):
        url = f"/threads/{sample_thread.id}/messages"
        assert api_client.post(url, json={"content": "one"}, headers=auth_headers).status_code == 202

        response = api_client.post(url, json={"content": "two"}, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["kind"] == "thread_busy"

    def test_empty_content_is_bad_request(
        self, api_client: TestClient, auth_headers, sample_thread
    ):
        response = api_client.post(
            f"/threads/{sample_thread.id}/messages", json={"content": "   "}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "input_invalid"

    def test_post_to_unknown_thread(self, api_client: TestClient, auth_headers):
        response = api_client.post(
            f"/threads/{uuid.uuid4()}/messages", json={"content": "hi"}, headers=auth_headers
        )
        assert response.status_code == 404


class TestPathAndJobEndpoints:
    """Tests for /paths and /jobs."""

    def test_path_index_accepted(self, api_client: TestClient, auth_headers, sample_path):
        response = api_client.post(f"/paths/{sample_path.id}/index", headers=auth_headers)

        assert response.status_code == 202
        assert response.json()["job_type"] == "chat_path_index"

    def test_path_index_of_other_user(self, api_client: TestClient, sample_path, other_user_id):
        response = api_client.post(
            f"/paths/{sample_path.id}/index", headers={"X-User-Id": str(other_user_id)}
        )
        assert response.status_code == 404

    def test_get_job_and_stats(self, api_client: TestClient, auth_headers, sample_thread):
        posted = api_client.post(
            f"/threads/{sample_thread.id}/messages",
            json={"content": "hello"},
            headers=auth_headers,
        ).json()

        job = api_client.get(f"/jobs/{posted['job_id']}", headers=auth_headers)
        assert job.status_code == 200
        assert job.json()["status"] == "queued"

        stats = api_client.get("/jobs/stats", headers=auth_headers).json()
        assert stats["queued"] == 1
        assert stats["active"] == 1
        assert stats["worker"] == {"running": False}

    def test_unknown_job_not_found(self, api_client: TestClient, auth_headers):
        response = api_client.get(f"/jobs/{uuid.uuid4()}", headers=auth_headers)
        assert response.status_code == 404
