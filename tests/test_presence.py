import asyncio
import threading
import time
from unittest.mock import AsyncMock

from conftest import settle
from database import InMemoryDatabase, _deep_merge
from services.client_context import ClientContext
from services.errors import TransientSyncFailure
from services.local_state_service import set_display_name
from services.presence_service import PresenceTracker, best_effort
from services.session_service import participant_path


def test_join_registers_participant(context, db):
    async def scenario():
        handle = await PresenceTracker(context).join("s1")
        record = await db.get(participant_path("s1", handle.uid))
        await handle.cancel()
        return handle, record

    handle, record = asyncio.run(scenario())
    assert handle.join_result.ok
    assert record["uid"] == handle.uid
    assert record["name"] == f"Guest-{handle.uid[:5]}"
    assert "joinedAt" in record and "lastActive" in record


def test_join_uses_saved_display_name(context, state, db):
    set_display_name(state, "Ada")

    async def scenario():
        handle = await PresenceTracker(context).join("s1")
        record = await db.get(participant_path("s1", handle.uid))
        await handle.cancel()
        return record

    assert asyncio.run(scenario())["name"] == "Ada"


def test_rejoin_keeps_joined_at(context, db):
    async def scenario():
        tracker = PresenceTracker(context)
        first = await tracker.join("s1", uid="u1")
        joined_at = (await db.get(participant_path("s1", "u1")))["joinedAt"]
        second = await tracker.join("s1", uid="u1")
        record = await db.get(participant_path("s1", "u1"))
        first.cancel()
        await second.cancel()
        return joined_at, record

    joined_at, record = asyncio.run(scenario())
    assert record["joinedAt"] == joined_at


def test_heartbeat_refreshes_last_active(context, db):
    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1")
        before = (await db.get(participant_path("s1", "u1")))["lastActive"]
        await asyncio.sleep(0.05)
        after = (await db.get(participant_path("s1", "u1")))["lastActive"]
        await handle.cancel()
        return before, after

    before, after = asyncio.run(scenario())
    assert after > before


def test_cancel_twice_leaves_record_absent(context, db):
    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1")
        first = handle.cancel()
        second = handle.cancel()
        await first
        # Past several heartbeat intervals: nothing may re-create the record
        await asyncio.sleep(0.05)
        return first, second, await db.get(participant_path("s1", "u1"))

    first, second, record = asyncio.run(scenario())
    assert first is second
    assert record is None


def test_departure_hook_removes_record(context, db):
    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1")
        await context.run_departure_hooks()
        record = await db.get(participant_path("s1", "u1"))
        handle.cancel()
        await settle()
        return record

    assert asyncio.run(scenario()) is None


def test_cancel_unregisters_departure_hook(context):
    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1")
        await handle.cancel()
        return context._departure_hooks

    assert asyncio.run(scenario()) == []


def test_join_survives_unavailable_database(state):
    db = InMemoryDatabase()
    db.set = AsyncMock(side_effect=TransientSyncFailure("offline"))
    context = ClientContext(local_state=state, database=db, backend="memory", heartbeat_seconds=0.01)

    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1")
        await asyncio.sleep(0.03)
        await handle.cancel()
        return handle

    handle = asyncio.run(scenario())
    assert handle.join_result.status == "transient"
    assert not handle.active


def test_best_effort_classifies_failures():
    async def fails(exc):
        raise exc

    async def scenario():
        ok = await best_effort(asyncio.sleep(0), "noop")
        transient = await best_effort(fails(TransientSyncFailure("offline")), "write")
        fatal = await best_effort(fails(RuntimeError("denied")), "write")
        return ok, transient, fatal

    ok, transient, fatal = asyncio.run(scenario())
    assert ok.status == "ok"
    assert transient.status == "transient" and transient.error == "offline"
    assert fatal.status == "fatal" and fatal.error == "denied"


def test_list_and_watch_participants(context):
    async def scenario():
        tracker = PresenceTracker(context)
        seen = []
        stop = tracker.watch_participants("s1", seen.append)
        a = await tracker.join("s1", uid="alice", name="Alice")
        b = await tracker.join("s1", uid="bob")
        await settle()
        listed = await tracker.list_participants("s1")
        await a.cancel()
        await settle()
        stop()
        await b.cancel()
        return listed, seen

    listed, seen = asyncio.run(scenario())
    assert {(p.uid, p.name) for p in listed} == {("alice", "Alice"), ("bob", "Guest-bob")}
    assert seen[0] == []
    assert [p.uid for p in seen[-1]] == ["bob"]


class ThreadedHeartbeatDatabase(InMemoryDatabase):
    """Runs lastActive merges in a worker thread that lands its write late."""

    def __init__(self):
        super().__init__()
        self.in_flight = threading.Event()

    def _slow_merge(self, path, data):
        self.in_flight.set()
        time.sleep(0.05)
        if path in self._docs:
            _deep_merge(self._docs[path], data)
        else:
            self._docs[path] = dict(data)

    async def set(self, path, data, merge=False):
        if merge and set(data) == {"lastActive"}:
            await asyncio.to_thread(self._slow_merge, path, data)
        else:
            await super().set(path, data, merge=merge)


def test_cancel_during_heartbeat_write_leaves_record_absent(state):
    db = ThreadedHeartbeatDatabase()
    context = ClientContext(local_state=state, database=db, backend="memory", heartbeat_seconds=0.01)

    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1")
        await asyncio.to_thread(db.in_flight.wait, 1)
        await handle.cancel()
        await asyncio.sleep(0.1)
        return await db.get(participant_path("s1", "u1"))

    assert asyncio.run(scenario()) is None


def test_departure_during_heartbeat_write_leaves_record_absent(state):
    db = ThreadedHeartbeatDatabase()
    context = ClientContext(local_state=state, database=db, backend="memory", heartbeat_seconds=0.01)

    async def scenario():
        await PresenceTracker(context).join("s1", uid="u1")
        await asyncio.to_thread(db.in_flight.wait, 1)
        await context.run_departure_hooks()
        await asyncio.sleep(0.1)
        return await db.get(participant_path("s1", "u1"))

    assert asyncio.run(scenario()) is None


class FlakyFirstWriteDatabase(InMemoryDatabase):
    def __init__(self):
        super().__init__()
        self.failures_left = 1

    async def set(self, path, data, merge=False):
        if self.failures_left:
            self.failures_left -= 1
            raise TransientSyncFailure("offline")
        await super().set(path, data, merge=merge)


def test_heartbeat_registers_after_failed_join(state):
    db = FlakyFirstWriteDatabase()
    context = ClientContext(local_state=state, database=db, backend="memory", heartbeat_seconds=0.01)

    async def scenario():
        handle = await PresenceTracker(context).join("s1", uid="u1", name="Ada")
        first = handle.join_result
        await asyncio.sleep(0.05)
        record = await db.get(participant_path("s1", "u1"))
        await handle.cancel()
        return first, handle.join_result, record

    first, later, record = asyncio.run(scenario())
    assert first.status == "transient"
    assert later.ok
    assert record["uid"] == "u1" and record["name"] == "Ada"
    assert "joinedAt" in record
