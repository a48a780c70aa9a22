"""
Session stream: live, normalized snapshots of a session document.

Legacy writers sometimes stored "main.js" as the nested map {"main": {"js": ...}}.
Snapshots carrying that shape are flattened before delivery, and the flat
entries are written back field by field so later readers see the repaired
document.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Tuple, Union

from models.session_models import SessionSnapshot, WriteResult
from services.client_context import ClientContext
from services.file_map_service import flatten_files_map, is_malformed
from services.presence_service import PresenceHandle, PresenceTracker, best_effort
from services.session_service import new_session_document, session_path

logger = logging.getLogger(__name__)

OnUpdate = Callable[[SessionSnapshot], Union[None, Awaitable[None]]]

DEFAULT_FILES = {"main.js": "// Start coding..."}


class RepairSlot:
    """Single-slot in-flight token: at most one outstanding repair write."""

    def __init__(self):
        self._token: Optional[object] = None

    @property
    def busy(self) -> bool:
        return self._token is not None

    def try_acquire(self) -> Optional[object]:
        # No await between check and set, so this is atomic on the event loop
        if self._token is not None:
            return None
        self._token = object()
        return self._token

    def release(self, token: object) -> None:
        if self._token is token:
            self._token = None


class SessionSubscription:
    """
    Snapshots are queued and handed to ``on_update`` one at a time, in the
    order the database delivered them.
    """

    def __init__(self, normalizer: "SessionStreamNormalizer", session_id: str, on_update: OnUpdate):
        self.normalizer = normalizer
        self.session_id = session_id
        self.on_update = on_update
        self.presence: Optional[PresenceHandle] = None
        self._stop_watch: Optional[Callable[[], None]] = None
        self._queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _start(self) -> None:
        self._consumer = asyncio.create_task(self._consume())

    def _on_snapshot(self, data: Optional[Dict[str, Any]]) -> None:
        if self._active:
            self._queue.put_nowait(data)

    def _on_error(self, error: Exception) -> None:
        # The database client keeps retrying the listen stream on its own
        logger.debug(f"Stream error for session {self.session_id}: {error}")

    async def _consume(self) -> None:
        while True:
            data = await self._queue.get()
            await self._process(data)

    async def _process(self, data: Optional[Dict[str, Any]]) -> None:
        if data is None:
            logger.debug(f"Session {self.session_id} has no document yet")
            return
        snapshot = self.normalizer.normalize(self.session_id, data)
        if not self._active:
            return
        try:
            result = self.on_update(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Session update handler failed for {self.session_id}: {e}", exc_info=True)

    def unsubscribe(self) -> Optional[asyncio.Task]:
        """Stop listening and leave the session; safe to call repeatedly."""
        if not self._active:
            return self.presence.cleanup_task if self.presence else None
        self._active = False
        if self._stop_watch:
            self._stop_watch()
            self._stop_watch = None
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
        logger.info(f"Unsubscribed from session {self.session_id}")
        return self.presence.cancel() if self.presence else None


class SessionStreamNormalizer:
    def __init__(self, context: ClientContext, presence: Optional[PresenceTracker] = None):
        self.context = context
        self.presence = presence or PresenceTracker(context)
        self._repair_slots: Dict[str, RepairSlot] = {}
        self._repairs: Set[asyncio.Task] = set()

    @property
    def db(self):
        return self.context.database

    @property
    def pending_repairs(self) -> Set[asyncio.Task]:
        return set(self._repairs)

    def repair_slot(self, session_id: str) -> RepairSlot:
        return self._repair_slots.setdefault(session_id, RepairSlot())

    async def ensure_session_exists(self, session_id: str) -> bool:
        """Create a default document if a read shows none. Never raises."""
        try:
            if await self.db.get(session_path(session_id)) is None:
                await self.db.set(session_path(session_id), new_session_document(dict(DEFAULT_FILES)))
                logger.info(f"Created missing session document {session_id}")
            return True
        except Exception as e:
            logger.info(f"Could not check session {session_id} (offline?), will sync later: {e}")
            return False

    def repair_fields(self, raw_files: Dict[str, Any]) -> Dict[Tuple[str, ...], Any]:
        """
        Field-level writes that turn the nested entries of ``raw_files`` flat.

        Only nested entries are touched: flat files, and files others add
        while the repair is in flight, are left alone.
        """
        fields: Dict[Tuple[str, ...], Any] = {}
        for key, value in raw_files.items():
            if isinstance(value, Mapping):
                for name, content in flatten_files_map({key: value}).items():
                    fields[("files", name)] = content
                fields[("files", key)] = self.db.delete_field()
        return fields

    async def repair(self, session_id: str, raw_files: Dict[str, Any]) -> WriteResult:
        return await best_effort(self.db.update(session_path(session_id), self.repair_fields(raw_files)),
                                 f"Files repair for session {session_id}")

    async def _repair_in_background(self, session_id: str, raw_files: Dict[str, Any],
                                    slot: RepairSlot, token: object) -> WriteResult:
        try:
            result = await self.repair(session_id, raw_files)
            if not result.ok:
                logger.info(f"Repair of session {session_id} deferred to a later snapshot ({result.status})")
            return result
        finally:
            slot.release(token)

    def normalize(self, session_id: str, data: Dict[str, Any]) -> SessionSnapshot:
        """
        Normalize one snapshot without waiting on the database.

        A malformed files map is flattened for delivery and a repair write is
        started in the background, unless one is already in flight for this
        session, in which case the snapshot is passed through as-is.
        """
        raw_files = data.get("files")
        output = data.get("output")
        output = output if isinstance(output, str) else None

        if raw_files is None or not is_malformed(raw_files):
            return SessionSnapshot(files=raw_files, output=output)

        slot = self.repair_slot(session_id)
        token = slot.try_acquire()
        if token is None:
            return SessionSnapshot(files=raw_files, output=output)

        flattened = flatten_files_map(raw_files)
        logger.info(f"Repairing nested files map in session {session_id} ({len(flattened)} files)")
        task = asyncio.ensure_future(self._repair_in_background(session_id, raw_files, slot, token))
        self._repairs.add(task)
        task.add_done_callback(self._repairs.discard)
        return SessionSnapshot(files=flattened, output=output)

    async def subscribe(self, session_id: str, on_update: OnUpdate,
                        uid: Optional[str] = None, name: Optional[str] = None) -> SessionSubscription:
        """
        Start streaming normalized snapshots of a session to ``on_update``.

        Joins presence as part of subscribing; ``unsubscribe()`` on the
        returned subscription undoes both.
        """
        await self.ensure_session_exists(session_id)

        subscription = SessionSubscription(self, session_id, on_update)
        subscription.presence = await self.presence.join(session_id, uid=uid, name=name)
        subscription._start()
        subscription._stop_watch = self.db.watch_document(
            session_path(session_id), subscription._on_snapshot, subscription._on_error
        )
        return subscription
