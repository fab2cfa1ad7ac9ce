"""Tests for FastAPI lifespan behaviour in main application."""

from fastapi.testclient import TestClient

from hostpulse import main


def test_lifespan_starts_and_stops_polling(monkeypatch):
    """The polling service runs for exactly the lifetime of the app."""

    events = []

    async def _start():
        events.append("start")

    async def _stop():
        events.append("stop")

    monkeypatch.setattr(main.node_polling_service, "start", _start)
    monkeypatch.setattr(main.node_polling_service, "stop", _stop)

    with TestClient(main.app) as client:
        assert events == ["start"]
        assert client.get("/healthz").status_code == 200

    assert events == ["start", "stop"]
