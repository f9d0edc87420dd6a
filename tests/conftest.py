"""Shared fixtures and helpers for all CodeSync tests."""

import sys
from unittest.mock import AsyncMock

import pytest

from codesync.config import Settings
from codesync.languages import Language, PythonAdapter
from codesync.rooms import RoomRegistry
from codesync.sandbox import ExecutionSandbox
from codesync.supervisor import ExecutionResult, ProcessSupervisor
from codesync.ws import SessionGateway


class ScriptedSupervisor:
    """Stands in for ProcessSupervisor and records every command it is given.

    ``results`` maps a command name to the ExecutionResult to return; any
    command not listed behaves as if its binary were missing.
    """

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    async def execute(self, command, args=(), *, cwd=None, cleanup=None):
        self.calls.append((command, list(args), cwd))
        result = self.results.get(command)
        if result is None:
            return ExecutionResult(
                exit_code=None,
                stderr=f"{command}: command not found",
                toolchain_missing=True,
            )
        return ExecutionResult(**vars(result))

    @property
    def commands(self):
        return [call[0] for call in self.calls]


def connect(gateway, connection_id):
    """Register a mock WebSocket under ``connection_id`` and return it."""
    ws = AsyncMock()
    gateway.connections[connection_id] = ws
    return ws


def sent(ws):
    """Every message passed to ``ws.send_json`` so far."""
    return [call.args[0] for call in ws.send_json.call_args_list]


def sent_types(ws):
    return [msg["type"] for msg in sent(ws)]


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def fake_sandbox():
    sandbox = AsyncMock(spec=ExecutionSandbox)
    sandbox.execute.return_value = ExecutionResult(
        exit_code=0, stdout="hello\n", duration_ms=12
    )
    return sandbox


@pytest.fixture
def gateway(registry, fake_sandbox):
    return SessionGateway(registry, fake_sandbox)


@pytest.fixture
def python_sandbox():
    """A real sandbox that runs Python with the interpreter running the tests."""
    supervisor = ProcessSupervisor()
    return ExecutionSandbox(
        supervisor=supervisor,
        adapters={
            Language.PYTHON: PythonAdapter(supervisor, interpreters=(sys.executable,))
        },
    )


@pytest.fixture
def settings():
    return Settings(allowed_origins=["*"])


@pytest.fixture
def client(settings, registry, python_sandbox):
    from fastapi.testclient import TestClient

    from codesync.app import create_app

    app = create_app(settings=settings, registry=registry, sandbox=python_sandbox)
    with TestClient(app) as c:
        yield c
