"""Tests for the Flask JSON API."""

import base64
import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

pytest.importorskip("flask")

web_gui = importlib.import_module("sightsinging_generator.web_gui")


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("FLASK_SECRET", "test-secret")
    monkeypatch.delenv("RATE_LIMIT_PER_MINUTE", raising=False)
    monkeypatch.delenv("MAX_UPLOAD_MB", raising=False)
    web_gui.REQUEST_LOG.clear()
    app = web_gui.create_app()
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
    web_gui.REQUEST_LOG.clear()


def test_list_keys(client):
    response = client.get("/api/keys")
    assert response.status_code == 200
    data = response.get_json()
    assert "C" in data["keys"]
    assert data["modes"] == ["major", "minor"]


def test_generate_returns_events(client):
    response = client.post("/api/generate", json={"spec": {"key": "F", "timeSig": "3/4"}, "seed": 2})
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["events"][0]["keyId"] == "F-major"
    assert "midi" not in data


def test_generate_includes_midi(client):
    pytest.importorskip("mido")
    response = client.post("/api/generate", json={"spec": {}, "seed": 1, "includeMidi": True})
    assert response.status_code == 200
    assert base64.b64decode(response.get_json()["midi"]).startswith(b"MThd")


@pytest.mark.parametrize(
    "body",
    [
        [1, 2],
        {"spec": {"timeSig": "7/8"}},
        {"spec": {}, "seed": "abc"},
        {"spec": {}, "bpm": 0},
    ],
)
def test_bad_requests(client, body):
    response = client.post("/api/generate", json=body)
    assert response.status_code == 400
    assert response.get_json()["status"] == "error"


def test_infeasible_rules_return_422(client):
    response = client.post("/api/generate", json={"spec": {"illegalDegrees": [2, 3, 4, 5, 6, 7]}})
    assert response.status_code == 422
    assert response.get_json()["error"]["reasonCode"] == "constraints_too_strict"


def test_rate_limit(monkeypatch):
    monkeypatch.setenv("FLASK_SECRET", "test-secret")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "1")
    web_gui.REQUEST_LOG.clear()
    app = web_gui.create_app()
    with app.test_client() as test_client:
        assert test_client.get("/api/keys").status_code == 200
        limited = test_client.get("/api/keys")
    web_gui.REQUEST_LOG.clear()
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers


def test_missing_secret_outside_debug(monkeypatch):
    monkeypatch.delenv("FLASK_SECRET", raising=False)
    monkeypatch.delenv("FLASK_DEBUG", raising=False)
    with pytest.raises(RuntimeError):
        web_gui.create_app()
