"""Integration tests for the Flask adapter over the coordinator."""
import json

from core.errors import SessionStartError


class TestSessionEndpoints:
    """Tests for /sessions endpoints."""

    def test_create_starts_by_default(self, client, fake_wrappers, temp_dir):
        """Should create, start and activate a session."""
        response = client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir})

        assert response.status_code == 201
        data = response.get_json()
        assert data["session_name"] == "demo"
        assert data["started"] is True
        assert fake_wrappers.created[0].started

    def test_create_without_start(self, client, fake_wrappers, temp_dir):
        """Should only record the session when start is false."""
        response = client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir, "start": False})

        assert response.status_code == 201
        assert response.get_json()["started"] is False
        assert not fake_wrappers.created[0].started

        session_id = response.get_json()["session_id"]
        response = client.post(f'/sessions/{session_id}/start')
        assert response.status_code == 200
        assert fake_wrappers.created[0].started

    def test_invalid_name_returns_error_code(self, client, temp_dir):
        """Should return 400 with INVALID_INPUT code."""
        response = client.post('/sessions', json={"session_name": "a/b", "working_directory": temp_dir})

        assert response.status_code == 400
        assert response.get_json().get('code') == 'INVALID_INPUT'

    def test_duplicate_name_returns_conflict(self, client, temp_dir):
        """Should return 409 with CONFLICT code."""
        client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir})
        response = client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir})

        assert response.status_code == 409
        assert response.get_json().get('code') == 'CONFLICT'

    def test_unknown_recipe_returns_404(self, client, temp_dir):
        """Should return 404 with RECIPE_NOT_FOUND code."""
        response = client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir, "recipe_id": "ghost"})

        assert response.status_code == 404
        assert response.get_json().get('code') == 'RECIPE_NOT_FOUND'

    def test_start_failure_returns_diagnosis(self, client, fake_wrappers, temp_dir):
        """Should return 502 with START_FAILED and the diagnosis."""
        response = client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir, "start": False})
        session_id = response.get_json()["session_id"]
        fake_wrappers.created[0].fail_with = SessionStartError("Recipe file not found or invalid", returncode=1)

        response = client.post(f'/sessions/{session_id}/start')

        assert response.status_code == 502
        data = response.get_json()
        assert data["code"] == "START_FAILED"
        assert data["details"]["diagnosis"] == "Recipe file not found or invalid"

    def test_unknown_session_returns_404(self, client):
        """Should return 404 with SESSION_NOT_FOUND code."""
        for response in (
            client.post('/sessions/nope/switch'),
            client.delete('/sessions/nope'),
            client.get('/sessions/nope/conversation'),
        ):
            assert response.status_code == 404
            assert response.get_json().get('code') == 'SESSION_NOT_FOUND'

    def test_list_sessions(self, client, temp_dir):
        """Should list running and stored sessions."""
        client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir})

        data = client.get('/sessions').get_json()

        assert [s["session_name"] for s in data["running"]] == ["demo"]
        assert [s["name"] for s in data["available"]] == ["demo"]
        assert data["active"]["session_name"] == "demo"

    def test_switch_returns_conversation(self, client, fake_wrappers, temp_dir):
        """Should return the target session's conversation."""
        first = client.post('/sessions', json={"session_name": "first", "working_directory": temp_dir}).get_json()
        client.post('/sessions', json={"session_name": "second", "working_directory": temp_dir})
        fake_wrappers.created[0].emit_message("background reply")

        data = client.post(f'/sessions/{first["session_id"]}/switch').get_json()

        assert [m["content"] for m in data["conversation"]] == ["background reply"]

    def test_resume_requires_name(self, client):
        """Should return 400 with MISSING_SESSION_NAME code."""
        response = client.post('/sessions/resume', json={})

        assert response.status_code == 400
        assert response.get_json().get('code') == 'MISSING_SESSION_NAME'

    def test_resume_is_idempotent(self, client, fake_wrappers):
        """Should return the same session id twice."""
        first = client.post('/sessions/resume', json={"session_name": "demo"}).get_json()
        second = client.post('/sessions/resume', json={"session_name": "demo"}).get_json()

        assert first["session_id"] == second["session_id"]
        assert len(fake_wrappers.created) == 1

    def test_stop_session(self, client, temp_dir):
        """Should stop and forget the session."""
        created = client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir}).get_json()

        response = client.delete(f'/sessions/{created["session_id"]}')

        assert response.status_code == 200
        assert client.get('/sessions').get_json()["running"] == []


class TestActiveEndpoints:
    """Tests for /active endpoints."""

    def test_message_without_active_session(self, client):
        """Should return 409 with NO_ACTIVE_SESSION code."""
        response = client.post('/active/message', json={"content": "hi"})

        assert response.status_code == 409
        assert response.get_json().get('code') == 'NO_ACTIVE_SESSION'

    def test_message_requires_content(self, client):
        """Should return 400 with MISSING_REQUIRED_FIELD code."""
        response = client.post('/active/message', json={})

        assert response.status_code == 400
        assert response.get_json().get('code') == 'MISSING_REQUIRED_FIELD'

    def test_message_requires_json(self, client):
        """Should reject a non-JSON body."""
        response = client.post('/active/message', data="hi", content_type="text/plain")

        assert response.status_code == 400

    def test_message_sent_to_active(self, client, fake_wrappers, temp_dir):
        """Should forward content to the active session only."""
        client.post('/sessions', json={"session_name": "a", "working_directory": temp_dir})
        client.post('/sessions', json={"session_name": "b", "working_directory": temp_dir})

        response = client.post('/active/message', json={"content": "hello\nthere"})

        assert response.status_code == 200
        assert response.get_json()["session_name"] == "b"
        assert fake_wrappers.created[0].sent == []
        assert fake_wrappers.created[1].sent == [("hello\nthere", False)]

    def test_interrupt_and_force_stop(self, client, fake_wrappers, temp_dir):
        """Should interrupt then force-stop the active session."""
        client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir})

        assert client.post('/active/interrupt').get_json()["interrupted"] is True
        assert fake_wrappers.created[0].interrupts == 1

        assert client.post('/active/force-stop').get_json()["stopped"] is True
        assert client.post('/active/interrupt').status_code == 409


class TestHealthAndStream:
    """Tests for /health and /events/stream."""

    def test_health(self, client):
        """Should report ok with uptime."""
        data = client.get('/health').get_json()

        assert data["ok"] is True
        assert data["running_sessions"] == 0
        assert data["uptime"].endswith("s")

    def test_event_stream_starts_with_snapshot(self, client, temp_dir):
        """Should send a snapshot of the active session first."""
        client.post('/sessions', json={"session_name": "demo", "working_directory": temp_dir})

        response = client.get('/events/stream', buffered=False)
        first = next(response.response)
        response.close()

        if isinstance(first, bytes):
            first = first.decode("utf-8")
        assert first.startswith("data: ")
        payload = json.loads(first[len("data: "):].strip())
        assert payload["type"] == "snapshot"
        assert payload["active"]["session_name"] == "demo"
