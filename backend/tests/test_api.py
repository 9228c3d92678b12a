"""Tests for the HTTP layer (backend/cadena/api/analysis.py, backend/cadena/main.py).

Tests cover:
  - health endpoint and the uvicorn runner
  - session lifecycle: create → analyze → results → delete
  - 404 for unknown sessions, 400 for results before analysis
  - 422 for structural failures and invalid options
  - stale-session purge
"""

import pytest
from fastapi.testclient import TestClient

from cadena import main
from cadena.api import analysis
from cadena.config import API_HOST, API_PORT
from cadena.main import app


@pytest.fixture
def client():
    analysis._sessions.clear()
    with TestClient(app) as c:
        yield c
    analysis._sessions.clear()


def _create(client, expediente) -> str:
    resp = client.post("/api/analysis/expediente", json=expediente)
    assert resp.status_code == 200
    return resp.json()["session_id"]


# ═══════════════════════════════════════════════════
# 1. Health
# ═══════════════════════════════════════════════════

def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "operational"


def test_run_serves_app_with_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr("cadena.main.uvicorn.run", lambda *args, **kwargs: calls.append((args, kwargs)))
    main.run()
    assert calls == [(("cadena.main:app",), {"host": API_HOST, "port": API_PORT, "log_level": "info"})]


# ═══════════════════════════════════════════════════
# 2. Session lifecycle
# ═══════════════════════════════════════════════════

class TestSessionLifecycle:

    def test_create(self, client, expediente_basic):
        resp = client.post("/api/analysis/expediente", json=expediente_basic)
        body = resp.json()
        assert body["status"] == "initialized"
        assert body["total_files"] == 3
        assert len(body["session_id"]) == 8

    def test_analyze_then_results(self, client, expediente_basic):
        sid = _create(client, expediente_basic)
        resp = client.post(f"/api/analysis/{sid}/analyze", json={"as_of": "2024-01-15"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

        results = client.get(f"/api/analysis/{sid}/results")
        assert results.status_code == 200
        assert results.json()["metadata"]["asOf"] == "2024-01-15"

        status = client.get(f"/api/analysis/{sid}").json()
        assert status["status"] == "completed"
        assert status["has_result"] is True

    def test_analyze_without_body(self, client, expediente_basic):
        sid = _create(client, expediente_basic)
        resp = client.post(f"/api/analysis/{sid}/analyze")
        assert resp.status_code == 200
        assert resp.json()["metadata"]["returnPolicy"] == "allow"

    def test_results_before_analysis(self, client, expediente_basic):
        sid = _create(client, expediente_basic)
        assert client.get(f"/api/analysis/{sid}/results").status_code == 400

    def test_structural_failure_stored(self, client):
        sid = _create(client, {"files": []})
        resp = client.post(f"/api/analysis/{sid}/analyze")
        assert resp.json()["success"] is False
        assert client.get(f"/api/analysis/{sid}").json()["status"] == "failed"
        assert client.get(f"/api/analysis/{sid}/results").json()["success"] is False

    def test_delete(self, client, expediente_basic):
        sid = _create(client, expediente_basic)
        assert client.delete(f"/api/analysis/{sid}").json() == {"deleted": sid}
        assert client.get(f"/api/analysis/{sid}").status_code == 404

    def test_unknown_session(self, client):
        assert client.get("/api/analysis/nope1234").status_code == 404
        assert client.post("/api/analysis/nope1234/analyze").status_code == 404
        assert client.delete("/api/analysis/nope1234").status_code == 404

    def test_invalid_return_policy(self, client, expediente_basic):
        sid = _create(client, expediente_basic)
        resp = client.post(f"/api/analysis/{sid}/analyze", json={"return_policy": "maybe"})
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════
# 3. One-shot sequence endpoint
# ═══════════════════════════════════════════════════

class TestSequenceEndpoint:

    def test_success(self, client, expediente_with_certificate):
        payload = {**expediente_with_certificate, "as_of": "2023-01-01"}
        resp = client.post("/api/analysis/sequence", json=payload)
        assert resp.status_code == 200
        body = resp.json()
        assert body["propertyValidation"]["propietario_actual_sin_vigencia"] is True
        assert analysis._sessions == {}

    def test_structural_failure(self, client, make_invoice):
        payload = {"files": [make_invoice("f1", "A", "B", "2020-01-01")]}
        resp = client.post("/api/analysis/sequence", json=payload)
        assert resp.status_code == 422
        assert resp.json()["detail"]["success"] is False

    def test_invalid_as_of(self, client, expediente_basic):
        resp = client.post("/api/analysis/sequence", json={**expediente_basic, "as_of": "ayer"})
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════
# 4. Session store
# ═══════════════════════════════════════════════════

class TestSessionStore:

    def test_purge_stale(self, client, expediente_basic):
        sid = _create(client, expediente_basic)
        session, touched = analysis._sessions[sid]
        removed = analysis.purge_stale_sessions(now=touched + analysis.SESSION_TTL_SECONDS + 1)
        assert removed == 1
        assert sid not in analysis._sessions

    def test_eviction_when_full(self, client, expediente_basic, monkeypatch):
        monkeypatch.setattr(analysis, "MAX_SESSIONS", 2)
        first = _create(client, expediente_basic)
        _create(client, expediente_basic)
        _create(client, expediente_basic)
        assert len(analysis._sessions) == 2
        assert first not in analysis._sessions
