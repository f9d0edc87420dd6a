"""WebSocket protocol handler for collaborative rooms.

Every frame is a JSON object with a ``type`` field naming the event.

Client -> server: ``join-room``, ``code-change``, ``language-change``,
``run-code``, ``ping``.

Server -> client: ``room-state``, ``user-joined``, ``user-left``,
``code-update``, ``language-update``, ``run-result``, ``pong``, ``error``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid

from fastapi import WebSocket, WebSocketDisconnect

from codesync.rooms import Participant, Room, RoomRegistry
from codesync.sandbox import ExecutionRequest, ExecutionSandbox
from codesync.supervisor import ExecutionResult

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 20
UNKNOWN_USER = "Unknown"


class GatewayError(Exception):
    """A request the sender should hear about; no state was changed."""


class ValidationError(GatewayError):
    pass


class RoomNotFoundError(GatewayError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Room not found")
        self.room_id = room_id


def _required_str(data: dict, key: str, label: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value


def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


# --- Message builders ---


def error_msg(message: str) -> dict:
    return {"type": "error", "message": message}


def room_state_msg(room: Room) -> dict:
    """Join-time snapshot, sent to the joining connection only."""
    return {
        "type": "room-state",
        "code": room.buffer,
        "language": room.language,
        "participants": room.participant_list(),
    }


def presence_msg(kind: str, room: Room, participant: Participant) -> dict:
    """Build a ``user-joined`` or ``user-left`` message."""
    return {
        "type": kind,
        "user": participant.to_dict(),
        "participants": room.participant_list(),
    }


def run_result_msg(
    request: ExecutionRequest,
    result: ExecutionResult,
    started_at_ms: int,
    initiated_by: str,
) -> dict:
    return {
        "type": "run-result",
        "roomId": request.room_id,
        "language": request.language,
        "startedAt": started_at_ms,
        "durationMs": result.duration_ms,
        "exitCode": result.exit_code,
        "signal": result.signal,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "timedOut": result.timed_out,
        "outputTruncated": result.output_truncated,
        "toolchainMissing": result.toolchain_missing,
        "initiatedBy": initiated_by,
    }


class SessionGateway:
    """Connection table plus the per-event handlers.

    The gateway keeps no room state of its own: only which socket belongs to
    which connection id and which room (if any) each connection is in.
    """

    def __init__(self, registry: RoomRegistry, sandbox: ExecutionSandbox) -> None:
        self.registry = registry
        self.sandbox = sandbox
        self.connections: dict[str, WebSocket] = {}
        self.memberships: dict[str, str] = {}
        self._runs: set[asyncio.Task] = set()
        self._handlers = {
            "join-room": self.handle_join,
            "code-change": self.handle_code_change,
            "language-change": self.handle_language_change,
            "run-code": self.handle_run_code,
            "ping": self.handle_ping,
        }

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    # --- Delivery ---

    async def send(self, connection_id: str, message: dict) -> None:
        """Send to one connection; a dead socket is logged, never raised."""
        ws = self.connections.get(connection_id)
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except Exception:
            logger.warning(
                "Failed to deliver %s to connection %s",
                message.get("type"),
                connection_id,
                exc_info=True,
            )

    async def broadcast(
        self, room: Room, message: dict, exclude: str | None = None
    ) -> None:
        """Send ``message`` to every participant of ``room`` except ``exclude``."""
        for connection_id in list(room.participants):
            if connection_id != exclude:
                await self.send(connection_id, message)

    def _username(self, room: Room, connection_id: str) -> str:
        participant = room.participants.get(connection_id)
        return participant.username if participant else UNKNOWN_USER

    def _require_room(self, data: dict) -> Room:
        room_id = _required_str(data, "roomId", "Room ID")
        room = self.registry.get(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    # --- Handlers ---

    async def handle_join(self, connection_id: str, data: dict) -> None:
        room_id = _required_str(data, "roomId", "Room ID")
        username = _required_str(data, "username", "Username").strip()
        if len(username) > MAX_USERNAME_LENGTH:
            raise ValidationError(
                f"Username too long (max {MAX_USERNAME_LENGTH} chars)"
            )

        # Leave-then-join with no await in between: nobody can observe the
        # connection in both rooms or in neither.
        left = None
        previous_id = self.memberships.get(connection_id)
        if previous_id is not None and previous_id != room_id:
            previous = self.registry.get(previous_id)
            if previous is not None:
                gone = self.registry.remove_participant(previous, connection_id)
                if gone is not None:
                    left = (previous, gone)

        room = self.registry.get_or_create(room_id)
        participant = self.registry.add_participant(room, connection_id, username)
        self.memberships[connection_id] = room_id

        if left is not None:
            previous, gone = left
            await self.broadcast(previous, presence_msg("user-left", previous, gone))
            logger.info("User %s left room %s", gone.username, previous.id)

        await self.send(connection_id, room_state_msg(room))
        await self.broadcast(
            room, presence_msg("user-joined", room, participant), exclude=connection_id
        )
        logger.info(
            "User %s (%s) joined room %s", participant.username, connection_id, room_id
        )

    async def handle_code_change(self, connection_id: str, data: dict) -> None:
        room = self._require_room(data)
        code = _optional_str(data, "code")
        language = _optional_str(data, "language")

        self.registry.update_buffer(
            room, text=code, language=language, by_connection_id=connection_id
        )
        await self.broadcast(
            room,
            {
                "type": "code-update",
                "code": room.buffer,
                "language": room.language,
                "updatedBy": self._username(room, connection_id),
            },
            exclude=connection_id,
        )

    async def handle_language_change(self, connection_id: str, data: dict) -> None:
        room = self._require_room(data)
        language = _required_str(data, "language", "Language")

        self.registry.update_buffer(
            room, language=language, by_connection_id=connection_id
        )
        await self.broadcast(
            room,
            {
                "type": "language-update",
                "language": room.language,
                "updatedBy": self._username(room, connection_id),
            },
            exclude=connection_id,
        )

    async def handle_run_code(self, connection_id: str, data: dict) -> None:
        """Validate now, execute in the background.

        The connection's receive loop is not held while the child process
        runs, so pings and edits from the requester keep flowing.
        """
        room = self._require_room(data)
        code = data.get("code")
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("Code is required")
        language = _required_str(data, "language", "Language")

        request = ExecutionRequest(room_id=room.id, code=code, language=language)
        initiated_by = self._username(room, connection_id)
        task = asyncio.create_task(
            self._run_and_publish(connection_id, request, initiated_by)
        )
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)

    async def _run_and_publish(
        self,
        connection_id: str,
        request: ExecutionRequest,
        initiated_by: str,
    ) -> None:
        started_at_ms = int(time.time() * 1000)
        try:
            result = await self.sandbox.execute(request)
            message = run_result_msg(request, result, started_at_ms, initiated_by)
            # The room may have been emptied and recreated during the run.
            room = self.registry.get(request.room_id)
            if room is not None:
                await self.broadcast(room, message)
            if room is None or connection_id not in room.participants:
                await self.send(connection_id, message)
        except Exception:
            logger.exception("Execution failed in room %s", request.room_id)
            await self.send(connection_id, error_msg("Failed to run code"))

    async def cancel_runs(self) -> None:
        """Cancel in-flight executions; their children are killed."""
        tasks = list(self._runs)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def handle_ping(self, connection_id: str, data: dict) -> None:
        await self.send(connection_id, {"type": "pong"})

    async def disconnect(self, connection_id: str) -> None:
        """Drop the connection and leave whichever room it occupied."""
        self.connections.pop(connection_id, None)
        room_id = self.memberships.pop(connection_id, None)
        if room_id is None:
            return
        room = self.registry.get(room_id)
        if room is None:
            return
        participant = self.registry.remove_participant(room, connection_id)
        if participant is None:
            return
        logger.info("User %s left room %s", participant.username, room_id)
        if room.participants:
            await self.broadcast(room, presence_msg("user-left", room, participant))

    # --- Dispatch ---

    async def dispatch(self, connection_id: str, data: object) -> None:
        """Route one inbound frame; never lets a handler error escape."""
        if not isinstance(data, dict):
            await self.send(connection_id, error_msg("Malformed message"))
            return

        event = data.get("type")
        handler = self._handlers.get(event)
        if handler is None:
            await self.send(connection_id, error_msg(f"Unknown event: {event}"))
            return

        try:
            await handler(connection_id, data)
        except GatewayError as e:
            await self.send(connection_id, error_msg(str(e)))
        except Exception:
            logger.exception(
                "Error handling %s from connection %s", event, connection_id
            )
            await self.send(connection_id, error_msg("Internal server error"))

    async def serve(self, ws: WebSocket) -> None:
        """Main loop for one WebSocket connection."""
        await ws.accept()
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = ws
        logger.info("Connection %s opened", connection_id)

        try:
            while True:
                text = await ws.receive_text()
                try:
                    data = json.loads(text)
                except ValueError:
                    await self.send(connection_id, error_msg("Malformed message"))
                    continue
                await self.dispatch(connection_id, data)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("WebSocket error on connection %s", connection_id)
        finally:
            await self.disconnect(connection_id)
            logger.info("Connection %s closed", connection_id)
