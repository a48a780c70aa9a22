"""
Presence: liveness hints for participants of a session.

Every write here is best-effort. A record whose owner crashed is never cleaned
up, so readers must treat presence as "possibly stale", never as authoritative.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models.session_models import Participant, WriteResult
from services.client_context import ClientContext
from services.errors import TransientSyncFailure
from services.identity_service import IdentityProvider
from services.local_state_service import get_display_name
from services.session_service import PARTICIPANTS, participant_path, session_path

logger = logging.getLogger(__name__)


def default_guest_name(uid: str) -> str:
    return f"Guest-{uid[:5]}"


async def best_effort(operation: Awaitable[Any], what: str) -> WriteResult:
    """Await a database write and classify its outcome instead of raising."""
    try:
        await operation
        return WriteResult.success()
    except TransientSyncFailure as e:
        logger.debug(f"{what} skipped, database unavailable: {e}")
        return WriteResult.transient(str(e))
    except Exception as e:
        logger.warning(f"{what} failed: {e}")
        return WriteResult.fatal(str(e))


def _to_participant(data: Dict[str, Any]) -> Optional[Participant]:
    uid = data.get("uid")
    if not uid:
        return None
    return Participant(uid=uid, name=data.get("name") or default_guest_name(uid))


class PresenceHandle:
    """Returned by PresenceTracker.join; ``cancel()`` is safe to call repeatedly."""

    def __init__(self, tracker: "PresenceTracker", session_id: str, uid: str, name: str):
        self.tracker = tracker
        self.session_id = session_id
        self.uid = uid
        self.name = name
        self.join_result: Optional[WriteResult] = None
        self.cleanup_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def _start(self) -> None:
        self._stopping = asyncio.Event()
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        self.tracker.context.add_departure_hook(self._on_departure)

    async def _heartbeat(self) -> None:
        interval = self.tracker.context.heartbeat_seconds
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            if self.join_result is not None and not self.join_result.ok:
                # Never registered; a bare lastActive merge would leave a nameless record
                self.join_result = await self.tracker.register(self.session_id, self.uid, self.name)
                result = self.join_result
            else:
                result = await self.tracker.touch(self.session_id, self.uid)
            if not result.ok:
                logger.debug(f"Heartbeat for {self.uid} in {self.session_id}: {result.status}")

    async def _stop_heartbeat(self) -> None:
        # Writes are never interrupted: a write already handed to the database
        # client would still land, after our delete
        if self._stopping is not None:
            self._stopping.set()
        if self._heartbeat_task is not None:
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)

    async def _on_departure(self) -> WriteResult:
        self._cancelled = True
        await self._stop_heartbeat()
        return await self.tracker.leave(self.session_id, self.uid)

    def cancel(self) -> Optional[asyncio.Task]:
        """Stop heartbeating, drop the departure hook, delete the record (non-blocking)."""
        if self._cancelled:
            return self.cleanup_task
        self._cancelled = True
        if self._stopping is not None:
            self._stopping.set()
        self.tracker.context.remove_departure_hook(self._on_departure)
        self.cleanup_task = asyncio.ensure_future(self._delete_after_heartbeat())
        return self.cleanup_task

    async def _delete_after_heartbeat(self) -> WriteResult:
        await self._stop_heartbeat()
        return await self.tracker.leave(self.session_id, self.uid)


class PresenceTracker:
    def __init__(self, context: ClientContext, identity: Optional[IdentityProvider] = None):
        self.context = context
        self.identity = identity or IdentityProvider(context)

    @property
    def db(self):
        return self.context.database

    async def join(self, session_id: str, uid: Optional[str] = None, name: Optional[str] = None) -> PresenceHandle:
        """
        Register presence in a session and start heartbeating.

        Without an explicit uid the client's own identity is used; identity
        errors other than the local fallback propagate.
        """
        if uid is None:
            uid = (await self.identity.ensure_identity()).uid
        display_name = name or get_display_name(self.context.local_state) or default_guest_name(uid)

        handle = PresenceHandle(self, session_id, uid, display_name)
        handle.join_result = await self.register(session_id, uid, display_name)
        handle._start()
        logger.info(f"{display_name} ({uid}) joined session {session_id}")
        return handle

    async def register(self, session_id: str, uid: str, name: str) -> WriteResult:
        return await best_effort(self._register(session_id, uid, name), f"Presence join for {uid}")

    async def _register(self, session_id: str, uid: str, name: str) -> None:
        path = participant_path(session_id, uid)
        now = self.db.server_timestamp()
        record = {"uid": uid, "lastActive": now, "name": name}
        if await self.db.get(path) is None:
            record["joinedAt"] = now
        await self.db.set(path, record, merge=True)

    async def touch(self, session_id: str, uid: str) -> WriteResult:
        return await best_effort(
            self.db.set(participant_path(session_id, uid), {"lastActive": self.db.server_timestamp()}, merge=True),
            f"Presence heartbeat for {uid}",
        )

    async def leave(self, session_id: str, uid: str) -> WriteResult:
        return await best_effort(self.db.delete(participant_path(session_id, uid)),
                                 f"Presence removal for {uid}")

    async def list_participants(self, session_id: str) -> List[Participant]:
        try:
            docs = await self.db.list_documents(session_path(session_id) + (PARTICIPANTS,))
        except TransientSyncFailure as e:
            logger.debug(f"Participant list unavailable for {session_id}: {e}")
            return []
        return [p for p in (_to_participant(d) for d in docs) if p is not None]

    def watch_participants(self, session_id: str,
                           on_change: Callable[[List[Participant]], None]) -> Callable[[], None]:
        def handle(docs: List[Dict[str, Any]]) -> None:
            on_change([p for p in (_to_participant(d) for d in docs) if p is not None])

        def on_error(e: Exception) -> None:
            logger.debug(f"Participant watch error for {session_id}: {e}")

        return self.db.watch_collection(session_path(session_id) + (PARTICIPANTS,), handle, on_error)
