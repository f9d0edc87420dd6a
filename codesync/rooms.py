"""Room and participant state management."""

from __future__ import annotations

import logging
import textwrap
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, MutableMapping

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "javascript"

# Empty rooms untouched for this long are evicted by the sweep.
DEFAULT_MAX_IDLE_SECONDS = 24 * 60 * 60

DEFAULT_BUFFER_TEMPLATE = textwrap.dedent("""\
    // Welcome to CodeSync - a shared, real-time code editor.
    // Share this room ID with others to collaborate: {room_id}

    function fibonacci(n) {
      if (n <= 1) return n;
      return fibonacci(n - 1) + fibonacci(n - 2);
    }

    // Everyone in the room sees every edit. Press Run to execute the
    // buffer on the server; the output is shown to the whole room.
    console.log('Fibonacci sequence:');
    for (let i = 0; i < 10; i++) {
      console.log(`F(${i}) = ${fibonacci(i)}`);
    }
""")


def default_buffer(room_id: str) -> str:
    """Tutorial text seeded into every new room."""
    # str.replace rather than format(): the template is full of braces.
    return DEFAULT_BUFFER_TEMPLATE.replace("{room_id}", room_id)


def iso_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Participant:
    """A connection's membership record within a room.

    Attributes:
        connection_id: Server-assigned id of the WebSocket connection.
        username: Display name, trimmed and non-empty. Not unique.
        joined_at: Unix timestamp of the join.
        last_seen: Unix timestamp of the participant's latest edit (or join).
    """

    connection_id: str
    username: str
    joined_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.connection_id,
            "username": self.username,
            "joinedAt": iso_timestamp(self.joined_at),
            "lastSeen": iso_timestamp(self.last_seen),
        }


@dataclass
class Room:
    """One shared buffer and the connections editing it.

    Attributes:
        id: Client-supplied, case-sensitive room id.
        buffer: The shared text. Last writer wins.
        language: Editor language tag. Not necessarily executable.
        participants: Map of connection id to Participant.
        created_at: Unix timestamp when the room was created.
        last_activity: Unix timestamp of the latest join, leave or edit (for GC).
    """

    id: str
    buffer: str
    language: str = DEFAULT_LANGUAGE
    participants: dict[str, Participant] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def touch(self, now: float | None = None) -> None:
        self.last_activity = time.time() if now is None else now

    def participant_list(self) -> list[dict]:
        return [p.to_dict() for p in self.participants.values()]


class RoomRegistry:
    """In-memory table of live rooms.

    ``store`` may be any mutable mapping of room id to Room; it defaults to
    a plain dict.  None of the methods awaits, so on a single event loop
    every mutation runs to completion before the next one starts.
    """

    def __init__(
        self,
        store: MutableMapping[str, Room] | None = None,
        default_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._rooms: MutableMapping[str, Room] = {} if store is None else store
        self.default_language = default_language

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __iter__(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def get(self, room_id: str) -> Room | None:
        """Look up a room by ID. Returns None if not found."""
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: str) -> Room:
        """Return the live room for ``room_id``, creating and seeding it if absent."""
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(
                id=room_id,
                buffer=default_buffer(room_id),
                language=self.default_language,
            )
            self._rooms[room_id] = room
            logger.info("Created room %s", room_id)
        return room

    def add_participant(
        self, room: Room, connection_id: str, username: str
    ) -> Participant:
        """Register ``connection_id`` in ``room``, replacing any stale entry."""
        now = time.time()
        participant = Participant(
            connection_id=connection_id,
            username=username.strip(),
            joined_at=now,
            last_seen=now,
        )
        room.participants[connection_id] = participant
        room.touch(now)
        return participant

    def remove_participant(self, room: Room, connection_id: str) -> Participant | None:
        """Remove a connection from ``room``.

        Deletes the room immediately if that leaves it empty.
        """
        participant = room.participants.pop(connection_id, None)
        room.touch()
        if not room.participants and self._rooms.get(room.id) is room:
            del self._rooms[room.id]
            logger.info("Room %s deleted (empty)", room.id)
        return participant

    def update_buffer(
        self,
        room: Room,
        text: str | None = None,
        language: str | None = None,
        by_connection_id: str | None = None,
    ) -> None:
        """Apply whichever of ``text`` / ``language`` is given."""
        now = time.time()
        if text is not None:
            room.buffer = text
        if language:
            room.language = language
        room.touch(now)
        participant = room.participants.get(by_connection_id) if by_connection_id else None
        if participant is not None:
            participant.last_seen = now

    def get_idle_rooms(
        self, now: float | None = None, max_idle: float = DEFAULT_MAX_IDLE_SECONDS
    ) -> list[str]:
        """Return IDs of empty rooms whose last activity is older than ``max_idle``.

        Rooms with at least one participant are never returned, however old.
        """
        now = time.time() if now is None else now
        return [
            room_id
            for room_id, room in self._rooms.items()
            if not room.participants and now - room.last_activity > max_idle
        ]

    def sweep(
        self, now: float | None = None, max_idle: float = DEFAULT_MAX_IDLE_SECONDS
    ) -> list[str]:
        """Delete idle empty rooms and return their IDs."""
        expired = self.get_idle_rooms(now=now, max_idle=max_idle)
        for room_id in expired:
            self._rooms.pop(room_id, None)
        return expired
