"""Integration tests for the channel WebSocket route."""

import pytest
from starlette.testclient import TestClient

from crateflow.managers.engine_client import ExecChunk
from crateflow.runtime import Runtime, set_runtime
from crateflow.server import create_app

LABEL = "nexus-crate-flow"


def receive_until(ws, event_type, limit=20):
    events = []
    for _ in range(limit):
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events
    raise AssertionError(f"no {event_type} event received")


@pytest.fixture
def app(fake_engine, identities, make_verifier):
    """Application over a runtime whose engine holds one labelled container."""
    fake_engine.add(
        "e1",
        "web",
        status="running",
        labels={
            LABEL: "true",
            f"{LABEL}.container-id": "c1",
            f"{LABEL}.created-by": "alice",
        },
    )
    runtime = Runtime(engine=fake_engine, verifier=make_verifier(identities))
    yield create_app(runtime)
    set_runtime(None)


@pytest.mark.integration
def test_websocket_session(app, fake_engine):
    """Test authenticate, subscribe with replay, bad frames and command streaming."""
    fake_engine.exec_chunks = [ExecChunk("stdout", "hi\n")]

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "welcome"

            ws.send_json({"type": "authenticate", "token": "alice-token"})
            authenticated = ws.receive_json()
            assert authenticated["type"] == "authenticated"
            assert authenticated["user"]["id"] == "alice"

            ws.send_json({"type": "subscribe_logs", "container_id": "c1"})
            ack = ws.receive_json()
            assert ack["type"] == "log_subscription_success"
            assert ack["replayed"] == 1
            replayed = ws.receive_json()
            assert replayed["log"]["content"] == "Container auto-imported from engine"

            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "invalid_message"

            ws.send_json({"type": "execute_command", "container_id": "c1", "command": "echo hi"})
            events = receive_until(ws, "command_completed")

    types = [event["type"] for event in events]
    assert types == ["log_entry", "command_started", "command_output", "command_completed"]
    assert events[0]["log"]["content"] == "Command executed: echo hi"
    assert events[2]["output"] == "hi\n"
    assert events[3]["exit_code"] == 0


@pytest.mark.integration
def test_websocket_rejects_unauthenticated_requests(app):
    """Test that requests before authentication get auth_required."""
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe_logs", "container_id": "c1"})
            error = ws.receive_json()

            ws.send_json({"type": "ping"})
            pong = ws.receive_json()

    assert error["code"] == "auth_required"
    assert pong["type"] == "pong"
