"""
Tests for the DB-queue worker routing and the HTTP server error mapping.
"""
import asyncio
import threading

import pytest
from fastapi.testclient import TestClient

import server
import worker_main
from incident_capture.entities import QueueMessage

from conftest import REPORTER_TOKEN, VIEWER_TOKEN


def queued_responses(session_factory):
    session = session_factory()
    try:
        return [
            {"sender_id": m.sender_id, "receiver_id": m.receiver_id, "type": m.type, "payload": m.payload}
            for m in session.query(QueueMessage).all()
        ]
    finally:
        session.close()


class TestWorker:
    @pytest.fixture
    def host(self, backend, session_factory):
        return worker_main.AppHost(
            session_factory,
            receiver_id="worker-1",
            apps=[worker_main.IncidentCaptureApp(backend)],
        )

    def test_build_request_takes_incident_from_sender(self, backend):
        app = worker_main.IncidentCaptureApp(backend)
        request = app.build_request(
            {"id": "m1", "type": "create_narrative", "payload": {"token": REPORTER_TOKEN}},
            "I7",
        )
        assert request == {
            "type": "create_narrative",
            "token": REPORTER_TOKEN,
            "correlation_id": "corr_m1",
            "payload": {"incident_id": "I7"},
        }

    def test_job_response_is_sent_back_to_sender(self, host, session_factory, incident_id):
        host.process_queue_job({
            "id": "m1",
            "sender_id": f"incident_capture::{incident_id}",
            "receiver_id": "worker-1",
            "type": "create_narrative",
            "payload": {"token": REPORTER_TOKEN, "correlation_id": "corr_job"},
        })

        [response] = queued_responses(session_factory)
        assert response["receiver_id"] == f"incident_capture::{incident_id}"
        assert response["sender_id"] == "worker-1"
        assert response["type"] == "create_narrative_response"
        assert response["payload"]["status"] == "success"
        assert response["payload"]["correlation_id"] == "corr_job"

    def test_unknown_prefix_answers_with_error(self, host, session_factory):
        host.process_queue_job({
            "id": "m2",
            "sender_id": "billing::I1",
            "receiver_id": "worker-1",
            "type": "create_narrative",
            "payload": {},
        })

        [response] = queued_responses(session_factory)
        assert response["payload"]["status"] == "error"
        assert "No app matched" in response["payload"]["message"]

    def test_claim_jobs_removes_claimed_messages(self, host, session_factory, incident_id):
        session = session_factory()
        try:
            session.add(QueueMessage(
                sender_id=f"incident_capture::{incident_id}",
                receiver_id="worker-1",
                type="create_narrative",
                payload={"token": REPORTER_TOKEN},
            ))
            session.add(QueueMessage(sender_id="x::1", receiver_id="worker-2", type="noop", payload={}))
            session.commit()
        finally:
            session.close()

        guard = worker_main.AsyncGuard(host, receiver_id="worker-1")
        jobs = guard.claim_jobs(10)

        assert [j["type"] for j in jobs] == ["create_narrative"]
        assert [r["receiver_id"] for r in queued_responses(session_factory)] == ["worker-2"]


class TestServer:
    @pytest.fixture
    def client(self, backend):
        server.app.dependency_overrides[server.get_backend] = lambda: backend
        yield TestClient(server.app)
        server.app.dependency_overrides.clear()

    def auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def test_missing_bearer_token(self, client, incident_id):
        assert client.post(f"/incidents/{incident_id}/narrative").status_code == 401

    def test_create_and_edit_narrative(self, client, incident_id):
        created = client.post(f"/incidents/{incident_id}/narrative", headers=self.auth(REPORTER_TOKEN))
        assert created.status_code == 200
        assert created.json()["created"] is True

        edited = client.patch(
            f"/incidents/{incident_id}/narrative",
            json={"before_event": "Breakfast."},
            headers=self.auth(REPORTER_TOKEN),
        )
        assert edited.status_code == 200
        assert edited.json()["version"] == 2

    def test_error_codes_map_to_http_status(self, client, incident_id):
        headers = self.auth(REPORTER_TOKEN)
        assert client.post("/incidents/missing/narrative", headers=headers).status_code == 404
        assert client.post(f"/incidents/{incident_id}/narrative", headers=self.auth("bogus")).status_code == 401
        assert client.post(
            f"/incidents/{incident_id}/clarifications/before_event/questions",
            json={"narrative_text": "X"},
            headers=self.auth(VIEWER_TOKEN),
        ).status_code == 403

        client.post(f"/incidents/{incident_id}/narrative", headers=headers)
        assert client.patch(f"/incidents/{incident_id}/narrative", json={}, headers=headers).status_code == 422

        client.patch(f"/incidents/{incident_id}/narrative", json={"before_event": "X"}, headers=headers)
        assert client.post(f"/incidents/{incident_id}/finalize", headers=headers).status_code == 200
        closed = client.patch(f"/incidents/{incident_id}/narrative", json={"before_event": "Y"}, headers=headers)
        assert closed.status_code == 409
        assert closed.json()["detail"]["error_code"] == "workflow_closed"

    def test_generate_and_list_questions(self, client, incident_id):
        headers = self.auth(REPORTER_TOKEN)
        generated = client.post(
            f"/incidents/{incident_id}/clarifications/during_event/questions",
            json={"narrative_text": "Fell from the chair."},
            headers=headers,
        )
        assert generated.status_code == 200
        assert generated.json()["cached"] is False

        listed = client.get(
            f"/incidents/{incident_id}/clarifications/questions",
            params={"phase": "during_event"},
            headers=self.auth(VIEWER_TOKEN),
        )
        assert [q["question_id"] for q in listed.json()["questions"]] == [
            q["question_id"] for q in generated.json()["questions"]
        ]

    @pytest.mark.asyncio
    async def test_backend_runs_off_the_server_loop(self, backend, monkeypatch):
        seen = {}

        async def recording(request):
            seen["loop"] = asyncio.get_running_loop()
            seen["thread"] = threading.get_ident()
            return {"status": "success", "correlation_id": request["correlation_id"]}

        monkeypatch.setattr(backend, "process_request", recording)
        response = await server.dispatch(backend, "get_clarification_questions", REPORTER_TOKEN, {}, "corr_http")

        assert response["correlation_id"] == "corr_http"
        assert seen["loop"] is not asyncio.get_running_loop()
        assert seen["thread"] != threading.get_ident()
