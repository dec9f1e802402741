import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import RecordingConnection
from events.notification_hub import (
    ADMINS_ROOM,
    JOIN_ADMIN,
    JOIN_STUDENT,
    JOIN_TEACHER,
    TEACHERS_ROOM,
    NotificationHub,
    RoomAccessDenied,
    student_room,
)
from identity import Identity, Role

pytestmark = pytest.mark.anyio

STUDENT = Identity(user_id="stu-1", role=Role.STUDENT)
TEACHER = Identity(user_id="t-1", role=Role.TEACHER)
ADMIN = Identity(user_id="a-1", role=Role.ADMIN)


class BrokenConnection:
    async def send_json(self, data):
        raise ConnectionResetError("socket closed")


class UnreachableRedis:
    async def publish(self, channel, message):
        raise RedisConnectionError("Connection refused")


async def test_events_reach_only_the_target_room():
    hub = NotificationHub()
    mine, other, teacher = RecordingConnection(), RecordingConnection(), RecordingConnection()
    hub.join(mine, student_room("stu-1"))
    hub.join(other, student_room("stu-2"))
    hub.join(teacher, TEACHERS_ROOM)

    await hub.emit_to_student("stu-1", "problem:generated", {"sessionId": "s1"})

    assert mine.messages == [{"event": "problem:generated", "data": {"sessionId": "s1"}}]
    assert other.messages == []
    assert teacher.messages == []


async def test_activity_goes_to_teachers_and_admins():
    hub = NotificationHub()
    teacher, admin = RecordingConnection(), RecordingConnection()
    hub.join(teacher, TEACHERS_ROOM)
    hub.join(admin, ADMINS_ROOM)

    await hub.emit_activity("stu-1", "Aisha", "submitted_answer", is_correct=False)

    for conn in (teacher, admin):
        (message,) = conn.messages
        assert message["event"] == "student:activity"
        data = message["data"]
        assert data["userId"] == "stu-1"
        assert data["userName"] == "Aisha"
        assert data["isCorrect"] is False
        assert data["timestamp"].endswith("Z")


async def test_join_is_scoped_by_role():
    hub = NotificationHub()
    conn = RecordingConnection()

    assert hub.join_for_identity(conn, STUDENT, JOIN_STUDENT) == "student:stu-1"
    with pytest.raises(RoomAccessDenied):
        hub.join_for_identity(conn, STUDENT, JOIN_TEACHER)
    with pytest.raises(RoomAccessDenied):
        hub.join_for_identity(conn, STUDENT, JOIN_ADMIN)
    with pytest.raises(RoomAccessDenied):
        hub.join_for_identity(conn, TEACHER, JOIN_STUDENT)
    with pytest.raises(RoomAccessDenied):
        hub.join_for_identity(conn, TEACHER, JOIN_ADMIN)
    with pytest.raises(ValueError):
        hub.join_for_identity(conn, STUDENT, "join:everything")

    assert hub.join_for_identity(conn, TEACHER, JOIN_TEACHER) == TEACHERS_ROOM
    assert hub.join_for_identity(conn, ADMIN, JOIN_TEACHER) == TEACHERS_ROOM
    assert hub.join_for_identity(conn, ADMIN, JOIN_ADMIN) == ADMINS_ROOM
    assert hub.rooms_of(conn) == {"student:stu-1", TEACHERS_ROOM, ADMINS_ROOM}


async def test_leave_and_disconnect_stop_delivery():
    hub = NotificationHub()
    conn = RecordingConnection()
    hub.connect(conn)
    hub.join(conn, TEACHERS_ROOM)
    hub.join(conn, ADMINS_ROOM)

    hub.leave(conn, TEACHERS_ROOM)
    await hub.emit_to_teachers("student:activity", {})
    assert conn.messages == []
    assert hub.member_count(TEACHERS_ROOM) == 0

    hub.disconnect(conn)
    await hub.emit_to_admins("queue:update", {})
    assert conn.messages == []
    assert hub.rooms_of(conn) == set()


async def test_failing_connection_is_dropped_without_affecting_others():
    hub = NotificationHub()
    broken, healthy = BrokenConnection(), RecordingConnection()
    hub.join(broken, TEACHERS_ROOM)
    hub.join(healthy, TEACHERS_ROOM)

    delivered = await hub.deliver(TEACHERS_ROOM, "student:activity", {"userId": "stu-1"})

    assert delivered == 1
    assert len(healthy.messages) == 1
    assert hub.member_count(TEACHERS_ROOM) == 1
    assert hub.rooms_of(broken) == set()


async def test_publish_without_members_is_a_no_op():
    await NotificationHub().emit_to_student("nobody", "problem:generated", {})


async def test_relay_failure_falls_back_to_local_delivery():
    hub = NotificationHub(redis=UnreachableRedis())
    conn = RecordingConnection()
    hub.join(conn, student_room("stu-1"))

    await hub.emit_to_student("stu-1", "feedback:ready", {"submissionId": "x"})

    assert conn.events("feedback:ready")[0]["data"] == {"submissionId": "x"}


async def test_relay_delivers_through_redis_channel(redis_client):
    hub = NotificationHub(redis=redis_client, channel="test:notifications")
    conn = RecordingConnection()
    hub.join(conn, ADMINS_ROOM)
    await hub.start()
    try:
        await hub.emit_to_admins("queue:update", {"queueName": "problem-generation", "waiting": 0})
        for _ in range(200):
            if conn.messages:
                break
            await asyncio.sleep(0.01)
    finally:
        await hub.stop()

    assert conn.messages == [
        {"event": "queue:update", "data": {"queueName": "problem-generation", "waiting": 0}}
    ]
