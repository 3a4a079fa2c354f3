"""
Liveness endpoint and controller lifespan.
"""
import pytest
from fastapi.testclient import TestClient

from load_controller import ControllerState, LoadController
from metrics import MetricsCollector
from server import create_app

from conftest import RecordingBackend, wait_all


def test_root_answers_without_a_controller():
    with TestClient(create_app()) as client:
        response = client.get("/")

    assert response.status_code == 200
    assert response.text == "Hello World!"


def test_controller_runs_for_the_lifetime_of_the_app(scenario_config, manual_scheduler):
    backends = []

    def factory():
        backend = RecordingBackend()
        backends.append(backend)
        return backend

    controller = LoadController(
        scenario_config,
        metrics=MetricsCollector(),
        scheduler=manual_scheduler,
        backend_factory=factory,
    )

    with TestClient(create_app(controller)) as client:
        assert controller.state is ControllerState.RUNNING
        assert client.get("/stats").json() == {"state": "running"}

        wait_all(manual_scheduler.fire(1.0))
        manual_scheduler.fire(5.0)
        stats = client.get("/stats").json()

        assert client.get("/").text == "Hello World!"

    assert stats["write_count"] == 20
    assert stats["qps"] == 4.0
    assert controller.state is ControllerState.STOPPED
    assert manual_scheduler.shut_down
    assert all(backend.closed for backend in backends)


def test_startup_failure_still_releases_the_controller(scenario_config, manual_scheduler):
    controller = LoadController(
        scenario_config,
        metrics=MetricsCollector(),
        scheduler=manual_scheduler,
        backend_factory=lambda: RecordingBackend(connect_error=ConnectionError("refused")),
    )

    with pytest.raises(ConnectionError):
        with TestClient(create_app(controller)):
            pass

    assert controller.state is ControllerState.STOPPED
    assert manual_scheduler.shut_down
    assert not controller.dispatcher.running
    assert manual_scheduler.registrations == []
