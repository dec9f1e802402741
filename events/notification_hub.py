"""
MathPulse Worker – Notification Hub.

Room-based publish/subscribe for live clients:
- student:<userId>  one room per student
- teachers          shared by every connected teacher
- admins            shared by every connected admin

Delivery is best-effort: nothing is persisted or replayed, a client that
is offline misses what was published meanwhile, and a failing connection
is dropped instead of failing the publisher. Clients treat pushes as a
latency optimization; the status poller reading the record store is what
guarantees they converge.

Architecture:
- The hub is constructed once by the runtime and injected into request
  handlers and workers; start()/stop() are tied to process startup and
  shutdown.
- With a Redis client, publish() goes out on a Redis Pub/Sub channel and
  every process's hub relays the messages into its own local rooms, so a
  worker in one process reaches sockets held by another. Without Redis,
  delivery is local only.
- Room membership changes only through explicit join/leave from a
  connected client; a reconnecting client must join again.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from identity import Identity, Role

logger = logging.getLogger(__name__)

TEACHERS_ROOM = "teachers"
ADMINS_ROOM = "admins"

JOIN_STUDENT = "join:student"
JOIN_TEACHER = "join:teacher"
JOIN_ADMIN = "join:admin"


def student_room(user_id: str) -> str:
    return f"student:{user_id}"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


class RoomAccessDenied(Exception):
    """The connection's identity may not join the requested room."""


class NotificationHub:
    def __init__(
        self,
        redis: Optional[aioredis.Redis] = None,
        channel: str = "mathpulse:notifications",
    ) -> None:
        self._redis = redis
        self._channel = channel
        self._rooms: dict[str, set[Connection]] = defaultdict(set)
        self._memberships: dict[Connection, set[str]] = {}
        self._pubsub = None
        self._task: asyncio.Task | None = None
        self._running = False

    # ── Lifecycle ────────────────────────────────────────────────
    async def start(self) -> None:
        """Subscribe to the relay channel (if any) and start relaying."""
        if self._redis is None or self._running:
            return

        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info(f"Notification relay listening on channel: {self._channel}")

    async def stop(self) -> None:
        self._running = False

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._channel)
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning(f"Error closing notification relay: {e}")
            self._pubsub = None

        self._rooms.clear()
        self._memberships.clear()
        logger.info("Notification hub stopped")

    async def _listen(self) -> None:
        """Relay loop. Each message is delivered with full error isolation."""
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                logger.warning(f"Notification relay read failed, retrying: {e}")
                await asyncio.sleep(1.0)
                continue

            if not message or message.get("type") != "message":
                await asyncio.sleep(0.05)
                continue

            try:
                envelope = json.loads(message["data"])
                await self.deliver(envelope["room"], envelope["event"], envelope["data"])
            except Exception as e:
                logger.error(f"Error relaying notification: {e}", exc_info=True)

    # ── Membership ───────────────────────────────────────────────
    def connect(self, conn: Connection) -> None:
        self._memberships.setdefault(conn, set())

    def disconnect(self, conn: Connection) -> None:
        for room in self._memberships.pop(conn, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(conn)
            if not members:
                del self._rooms[room]

    def join(self, conn: Connection, room: str) -> None:
        self._memberships.setdefault(conn, set()).add(room)
        self._rooms[room].add(conn)

    def leave(self, conn: Connection, room: str) -> None:
        self._memberships.get(conn, set()).discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self._rooms[room]

    def join_for_identity(self, conn: Connection, identity: Identity, kind: str) -> str:
        """
        Resolve a client join request to a room the identity may enter.

        Students only ever get their own room; the shared rooms are scoped
        by role (admins may also observe the teachers room).
        """
        if kind == JOIN_STUDENT:
            if identity.role is not Role.STUDENT:
                raise RoomAccessDenied("Only students have a student room")
            room = student_room(identity.user_id)
        elif kind == JOIN_TEACHER:
            if not identity.is_staff:
                raise RoomAccessDenied("Teachers room requires TEACHER or ADMIN")
            room = TEACHERS_ROOM
        elif kind == JOIN_ADMIN:
            if identity.role is not Role.ADMIN:
                raise RoomAccessDenied("Admins room requires ADMIN")
            room = ADMINS_ROOM
        else:
            raise ValueError(f"Unknown join request: {kind}")

        self.join(conn, room)
        return room

    def rooms_of(self, conn: Connection) -> set[str]:
        return set(self._memberships.get(conn, set()))

    def member_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    # ── Publishing ───────────────────────────────────────────────
    async def publish(self, room: str, event: str, data: dict[str, Any]) -> None:
        """Fan an event out to a room. Never raises on transport failure."""
        if self._redis is not None:
            envelope = {"room": room, "event": event, "data": data}
            try:
                await self._redis.publish(self._channel, json.dumps(envelope, default=str))
                return
            except RedisError as e:
                logger.warning(f"Relay publish of {event} failed, delivering locally: {e}")

        await self.deliver(room, event, data)

    async def deliver(self, room: str, event: str, data: dict[str, Any]) -> int:
        """Send to this process's members of `room`. Returns the delivered count."""
        message = {"event": event, "data": data}
        delivered = 0
        for conn in list(self._rooms.get(room, ())):
            try:
                await conn.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping connection after failed {event} delivery: {e}")
                self.disconnect(conn)
        return delivered

    async def emit_to_student(self, user_id: str, event: str, data: dict[str, Any]) -> None:
        await self.publish(student_room(user_id), event, data)

    async def emit_to_teachers(self, event: str, data: dict[str, Any]) -> None:
        await self.publish(TEACHERS_ROOM, event, data)

    async def emit_to_admins(self, event: str, data: dict[str, Any]) -> None:
        await self.publish(ADMINS_ROOM, event, data)

    async def emit_activity(
        self,
        user_id: str,
        user_name: Optional[str],
        action: str,
        is_correct: Optional[bool] = None,
    ) -> None:
        """`student:activity` for the observers (teachers and admins)."""
        payload: dict[str, Any] = {
            "userId": user_id,
            "userName": user_name,
            "action": action,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }
        if is_correct is not None:
            payload["isCorrect"] = is_correct

        await self.emit_to_teachers("student:activity", payload)
        await self.emit_to_admins("student:activity", payload)
