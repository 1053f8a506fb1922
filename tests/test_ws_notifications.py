import asyncio

from carebridge.frames import AnnouncementFrame, AnnouncementPayload
from carebridge.ws_notifications import PushConnection, SessionRegistry


def _frame(title: str = "Clinic closed") -> AnnouncementFrame:
    return AnnouncementFrame(
        payload=AnnouncementPayload(notificationId=1, title=title, message="Back Monday")
    )


def test_push_to_user_without_connections_is_noop(registry, notifications, make_user):
    user = make_user("offline")
    notifications.create(user.id, "ANNOUNCEMENT", "announcement", 1, {"title": "Clinic closed"})
    before = len(notifications.list_for_user(user.id))

    delivered = asyncio.run(registry.push_to_user(user.id, _frame()))

    assert delivered == 0
    assert len(notifications.list_for_user(user.id)) == before == 1


def test_register_reports_first_connection(registry, fake_socket):
    async def scenario():
        first = await registry.register(7, PushConnection(fake_socket(), user_id=7, device_id="phone"))
        second = await registry.register(7, PushConnection(fake_socket(), user_id=7, device_id="laptop"))
        return first, second, await registry.connection_count(7)

    first, second, count = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert count == 2


def test_push_reaches_every_device(registry, fake_socket):
    phone = fake_socket()
    laptop = fake_socket()
    other = fake_socket()

    async def scenario():
        await registry.register(7, PushConnection(phone, user_id=7, device_id="phone"))
        await registry.register(7, PushConnection(laptop, user_id=7, device_id="laptop"))
        await registry.register(8, PushConnection(other, user_id=8))
        return await registry.push_to_user(7, _frame())

    delivered = asyncio.run(scenario())

    assert delivered == 2
    expected = _frame().to_wire()
    assert phone.sent == [expected]
    assert laptop.sent == [expected]
    assert other.sent == []


def test_failed_write_drops_only_that_connection(registry, fake_socket):
    healthy = fake_socket()
    broken = fake_socket(fail=True)

    async def scenario():
        await registry.register(7, PushConnection(healthy, user_id=7))
        await registry.register(7, PushConnection(broken, user_id=7))
        delivered = await registry.push_to_user(7, _frame())
        return delivered, await registry.connection_count(7)

    delivered, remaining = asyncio.run(scenario())

    assert delivered == 1
    assert remaining == 1
    assert len(healthy.sent) == 1



class StalledSocket:
    """Accepts a write and never finishes it."""

    def __init__(self) -> None:
        self.closed = False

    async def send_json(self, payload):
        await asyncio.Event().wait()

    async def close(self, code: int = 1000) -> None:
        self.closed = True


def test_stalled_write_times_out_and_is_dropped(fake_socket):
    registry = SessionRegistry(send_timeout=0.05)
    healthy = fake_socket()

    async def scenario():
        await registry.register(7, PushConnection(StalledSocket(), user_id=7, device_id="stuck"))
        await registry.register(7, PushConnection(healthy, user_id=7, device_id="phone"))
        delivered = await asyncio.wait_for(registry.push_to_user(7, _frame()), 2)
        return delivered, await registry.connection_count(7)

    delivered, remaining = asyncio.run(scenario())

    assert delivered == 1
    assert remaining == 1
    assert healthy.sent == [_frame().to_wire()]


def test_unregister_is_idempotent(registry, fake_socket):
    connection = PushConnection(fake_socket(), user_id=3)

    async def scenario():
        await registry.register(3, connection)
        await registry.unregister(connection)
        await registry.unregister(connection)
        return await registry.connected_users()

    assert asyncio.run(scenario()) == []


def test_frames_for_one_connection_keep_call_order(registry, fake_socket):
    socket = fake_socket()

    async def scenario():
        await registry.register(5, PushConnection(socket, user_id=5))
        await asyncio.gather(*(registry.push_to_user(5, _frame(f"n{i}")) for i in range(10)))

    asyncio.run(scenario())

    assert [frame["payload"]["title"] for frame in socket.sent] == [f"n{i}" for i in range(10)]


def test_close_all_closes_and_forgets(registry, fake_socket):
    sockets = [fake_socket(), fake_socket()]

    async def scenario():
        await registry.register(1, PushConnection(sockets[0], user_id=1))
        await registry.register(2, PushConnection(sockets[1], user_id=2))
        await registry.close_all()
        return await registry.connected_users()

    assert asyncio.run(scenario()) == []
    assert all(socket.closed for socket in sockets)
