"""Presence hub: routes events to live connections.

An in-memory broadcaster for a single-process deployment. Each connection is
bound to one user identity and joins three kinds of delivery group: its user
group (direct addressing), its role group (coarse broadcasts such as "all
garages"), and at most one chat room at a time. Delivery is best-effort; a
target with no live connection simply receives nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

Group = tuple[str, str]


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def user_group(user_id: str) -> Group:
    return ("user", str(user_id))


def role_group(role: str) -> Group:
    return ("role", str(role))


def room_group(room_id: str) -> Group:
    return ("room", str(room_id))


def location_group(booking_id: str) -> Group:
    return ("room", f"location_{booking_id}")


@dataclass
class ConnectionState:
    connection: Connection
    user_id: str | None = None
    role: str | None = None
    user_name: str | None = None
    # Single active chat room; join/leave are the only mutators.
    current_room: str | None = None
    groups: set[Group] = field(default_factory=set)
    alive: bool = True


class PresenceHub:
    """Tracks connections and their group memberships, and fans events out."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._states: dict[Connection, ConnectionState] = {}
        self._groups: dict[Group, set[Connection]] = defaultdict(set)

    # ------------- membership -------------
    async def attach(self, connection: Connection) -> ConnectionState:
        async with self._lock:
            state = self._states.get(connection)
            if state is None:
                state = ConnectionState(connection=connection)
                self._states[connection] = state
            return state

    async def register(
        self,
        connection: Connection,
        user_id: str,
        role: str,
        *,
        user_name: str | None = None,
    ) -> ConnectionState:
        """Bind a connection to a user and join its user and role groups."""
        async with self._lock:
            state = self._states.get(connection)
            if state is None:
                state = ConnectionState(connection=connection)
                self._states[connection] = state
            if state.user_id and state.user_id != str(user_id):
                self._discard(connection, state, user_group(state.user_id))
            if state.role and state.role != str(role):
                self._discard(connection, state, role_group(state.role))
            state.user_id = str(user_id)
            state.role = str(role)
            if user_name:
                state.user_name = user_name
            self._add(connection, state, user_group(user_id))
            self._add(connection, state, role_group(role))
        logger.debug("Registered connection for user=%s role=%s", user_id, role)
        return state

    def state_of(self, connection: Connection) -> ConnectionState | None:
        return self._states.get(connection)

    async def enter_room(self, connection: Connection, room_id: str) -> None:
        async with self._lock:
            state = self._require(connection)
            if state.current_room and state.current_room != room_id:
                raise RuntimeError(
                    f"connection is still in room {state.current_room}; leave it first"
                )
            state.current_room = room_id
            self._add(connection, state, room_group(room_id))

    async def exit_room(self, connection: Connection, room_id: str) -> bool:
        """Detach a connection from a room. Returns False when it was not in it."""
        async with self._lock:
            state = self._states.get(connection)
            if state is None or state.current_room != room_id:
                return False
            state.current_room = None
            self._discard(connection, state, room_group(room_id))
            return True

    async def join_group(self, connection: Connection, group: Group) -> None:
        async with self._lock:
            self._add(connection, self._require(connection), group)

    async def leave_group(self, connection: Connection, group: Group) -> None:
        async with self._lock:
            state = self._states.get(connection)
            if state is not None:
                self._discard(connection, state, group)

    async def unregister(self, connection: Connection) -> ConnectionState | None:
        """Forget a connection entirely; returns its last state, if any."""
        async with self._lock:
            state = self._states.pop(connection, None)
            if state is None:
                return None
            for group in list(state.groups):
                self._discard(connection, state, group)
            state.alive = False
            return state

    # ------------- queries -------------
    def is_online(self, user_id: str) -> bool:
        return bool(self._groups.get(user_group(user_id)))

    def online_users(self) -> set[str]:
        return {
            state.user_id for state in self._states.values() if state.user_id and state.alive
        }

    def members(self, room_id: str) -> list[ConnectionState]:
        return [
            self._states[c] for c in self._groups.get(room_group(room_id), ()) if c in self._states
        ]

    # ------------- delivery -------------
    async def send_to_connection(self, connection: Connection, event: str, payload: Any) -> bool:
        return await self._deliver([connection], event, payload) == 1

    async def send_to_user(self, user_id: str, event: str, payload: Any) -> int:
        return await self._send_group(user_group(user_id), event, payload)

    async def send_to_role(self, role: str, event: str, payload: Any) -> int:
        return await self._send_group(role_group(role), event, payload)

    async def send_to_room(
        self,
        room_id: str,
        event: str,
        payload: Any,
        *,
        exclude: Connection | None = None,
    ) -> int:
        return await self._send_group(room_group(room_id), event, payload, exclude=exclude)

    async def send_to_group(self, group: Group, event: str, payload: Any) -> int:
        return await self._send_group(group, event, payload)

    async def _send_group(
        self,
        group: Group,
        event: str,
        payload: Any,
        *,
        exclude: Connection | None = None,
    ) -> int:
        async with self._lock:
            targets = [c for c in self._groups.get(group, set()) if c is not exclude]
        if not targets:
            logger.debug("No live connection for %s:%s; dropped %s", group[0], group[1], event)
            return 0
        return await self._deliver(targets, event, payload)

    async def _deliver(self, targets: Iterable[Connection], event: str, payload: Any) -> int:
        frame = {"event": event, "data": jsonable_encoder(payload)}
        delivered = 0
        dead: list[Connection] = []
        for connection in targets:
            try:
                await connection.send_json(frame)
                delivered += 1
            except Exception as exc:
                logger.debug("Dropping %s for a dead connection: %s", event, exc)
                dead.append(connection)

        if dead:
            async with self._lock:
                for connection in dead:
                    state = self._states.get(connection)
                    if state is None:
                        continue
                    # Keep the state so the transport's disconnect path still sees
                    # the last room; only stop routing to it.
                    state.alive = False
                    for group in state.groups:
                        self._unlink(connection, group)
        return delivered

    # ------------- internals -------------
    def _require(self, connection: Connection) -> ConnectionState:
        state = self._states.get(connection)
        if state is None:
            raise RuntimeError("connection is not attached to the presence hub")
        return state

    def _add(self, connection: Connection, state: ConnectionState, group: Group) -> None:
        state.groups.add(group)
        self._groups[group].add(connection)

    def _discard(self, connection: Connection, state: ConnectionState, group: Group) -> None:
        state.groups.discard(group)
        self._unlink(connection, group)

    def _unlink(self, connection: Connection, group: Group) -> None:
        members = self._groups.get(group)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._groups[group]
