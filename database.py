"""
Document database collaborators for session sync.

Paths are tuples of literal segments, e.g. ("sessions", sid) or
("sessions", sid, "participants", uid). Field paths passed to ``update`` are
tuples too, so a filename containing "." is always a single key.
"""

import abc
import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore_v1.field_path import FieldPath

from services.errors import SessionNotFound, TransientSyncFailure

logger = logging.getLogger(__name__)

DocPath = Tuple[str, ...]
FieldPathTuple = Tuple[str, ...]
DocumentCallback = Callable[[Optional[Dict[str, Any]]], None]
CollectionCallback = Callable[[List[Dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class DocumentDatabase(abc.ABC):
    """Narrow interface the session-sync layer needs from a document store."""

    @abc.abstractmethod
    async def get(self, path: DocPath) -> Optional[Dict[str, Any]]:
        """Return the document data, or None if it does not exist."""

    @abc.abstractmethod
    async def set(self, path: DocPath, data: Dict[str, Any], merge: bool = False) -> None:
        """Create/overwrite a document, or deep-merge into it when merge=True."""

    @abc.abstractmethod
    async def update(self, path: DocPath, fields: Dict[FieldPathTuple, Any]) -> None:
        """Replace the value at each literal field path; the document must exist."""

    @abc.abstractmethod
    async def delete(self, path: DocPath) -> None:
        """Delete a document; deleting a missing document is not an error."""

    @abc.abstractmethod
    async def list_documents(self, collection: DocPath) -> List[Dict[str, Any]]:
        """Return the data of every document in a collection."""

    @abc.abstractmethod
    def watch_document(self, path: DocPath, on_change: DocumentCallback,
                       on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        """Deliver the current and every subsequent state of a document.

        Must be called from inside a running event loop; callbacks run on it.
        """

    @abc.abstractmethod
    def watch_collection(self, collection: DocPath, on_change: CollectionCallback,
                         on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        """Deliver the current and every subsequent list of documents."""

    @abc.abstractmethod
    def server_timestamp(self) -> Any:
        """Value that the database replaces with its own write time."""

    @abc.abstractmethod
    def delete_field(self) -> Any:
        """Value that removes its field when passed to ``update``."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

# Stands in for firestore.DELETE_FIELD
_DELETE_FIELD = object()


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class InMemoryDatabase(DocumentDatabase):
    """
    Process-local document store with Firestore-like semantics.

    Change notifications are scheduled on the event loop rather than delivered
    inline, so a writer always sees its own write echoed back asynchronously.
    """

    def __init__(self):
        self._docs: Dict[DocPath, Dict[str, Any]] = {}
        self._doc_watchers: Dict[DocPath, List[Tuple[asyncio.AbstractEventLoop, DocumentCallback]]] = {}
        self._collection_watchers: Dict[DocPath, List[Tuple[asyncio.AbstractEventLoop, CollectionCallback]]] = {}

    def _snapshot(self, path: DocPath) -> Optional[Dict[str, Any]]:
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    def _collection_snapshot(self, collection: DocPath) -> List[Dict[str, Any]]:
        return [copy.deepcopy(data) for path, data in self._docs.items() if path[:-1] == collection]

    def _notify(self, path: DocPath) -> None:
        for loop, callback in list(self._doc_watchers.get(path, [])):
            loop.call_soon_threadsafe(callback, self._snapshot(path))
        collection = path[:-1]
        for loop, callback in list(self._collection_watchers.get(collection, [])):
            loop.call_soon_threadsafe(callback, self._collection_snapshot(collection))

    async def get(self, path: DocPath) -> Optional[Dict[str, Any]]:
        return self._snapshot(path)

    async def set(self, path: DocPath, data: Dict[str, Any], merge: bool = False) -> None:
        if merge and path in self._docs:
            _deep_merge(self._docs[path], data)
        else:
            self._docs[path] = copy.deepcopy(data)
        self._notify(path)

    async def update(self, path: DocPath, fields: Dict[FieldPathTuple, Any]) -> None:
        doc = self._docs.get(path)
        if doc is None:
            raise SessionNotFound("/".join(path))
        for field_path, value in fields.items():
            node = doc
            for segment in field_path[:-1]:
                if not isinstance(node.get(segment), dict):
                    if value is _DELETE_FIELD:
                        break
                    node[segment] = {}
                node = node[segment]
            else:
                if value is _DELETE_FIELD:
                    node.pop(field_path[-1], None)
                else:
                    node[field_path[-1]] = copy.deepcopy(value)
        self._notify(path)

    async def delete(self, path: DocPath) -> None:
        if self._docs.pop(path, None) is not None:
            self._notify(path)

    async def list_documents(self, collection: DocPath) -> List[Dict[str, Any]]:
        return self._collection_snapshot(collection)

    def watch_document(self, path, on_change, on_error=None):
        loop = asyncio.get_running_loop()
        entry = (loop, on_change)
        self._doc_watchers.setdefault(path, []).append(entry)
        loop.call_soon(on_change, self._snapshot(path))

        def unsubscribe():
            watchers = self._doc_watchers.get(path, [])
            if entry in watchers:
                watchers.remove(entry)
        return unsubscribe

    def watch_collection(self, collection, on_change, on_error=None):
        loop = asyncio.get_running_loop()
        entry = (loop, on_change)
        self._collection_watchers.setdefault(collection, []).append(entry)
        loop.call_soon(on_change, self._collection_snapshot(collection))

        def unsubscribe():
            watchers = self._collection_watchers.get(collection, [])
            if entry in watchers:
                watchers.remove(entry)
        return unsubscribe

    def server_timestamp(self):
        return datetime.now(timezone.utc)

    def delete_field(self):
        return _DELETE_FIELD


# ---------------------------------------------------------------------------
# Firestore backend
# ---------------------------------------------------------------------------

class FirestoreDatabase(DocumentDatabase):
    """
    google-cloud-firestore backed store.

    The Firestore client is blocking, so calls run in worker threads; watch
    callbacks arrive on the client's listener thread and are handed back to
    the subscribing event loop.
    """

    def __init__(self, project_id: Optional[str] = None, client=None):
        self.client = client or firestore.Client(project=project_id)

    def _ref(self, path: DocPath):
        return self.client.document(*path)

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except gexc.NotFound as e:
            raise SessionNotFound(str(e)) from e
        except (gexc.ServiceUnavailable, gexc.DeadlineExceeded, gexc.PermissionDenied,
                gexc.Unauthenticated, gexc.RetryError) as e:
            raise TransientSyncFailure(str(e)) from e

    async def get(self, path):
        snap = await self._call(self._ref(path).get)
        return snap.to_dict() if snap.exists else None

    async def set(self, path, data, merge=False):
        await self._call(self._ref(path).set, data, merge=merge)

    async def update(self, path, fields):
        field_updates = {
            FieldPath(*field_path).to_api_repr(): value
            for field_path, value in fields.items()
        }
        await self._call(self._ref(path).update, field_updates)

    async def delete(self, path):
        await self._call(self._ref(path).delete)

    async def list_documents(self, collection):
        def _read():
            return [d.to_dict() for d in self.client.collection(*collection).stream()]
        return await self._call(_read)

    def _bridge(self, on_change, on_error, convert):
        loop = asyncio.get_running_loop()

        def callback(docs, changes, read_time):
            try:
                data = convert(docs)
            except Exception as e:
                logger.error(f"Failed to decode snapshot: {e}", exc_info=True)
                if on_error:
                    loop.call_soon_threadsafe(on_error, e)
                return
            loop.call_soon_threadsafe(on_change, data)
        return callback

    def watch_document(self, path, on_change, on_error=None):
        def convert(docs):
            snap = docs[0] if docs else None
            return snap.to_dict() if snap is not None and snap.exists else None

        watch = self._ref(path).on_snapshot(self._bridge(on_change, on_error, convert))
        return watch.unsubscribe

    def watch_collection(self, collection, on_change, on_error=None):
        def convert(docs):
            return [d.to_dict() for d in docs]

        watch = self.client.collection(*collection).on_snapshot(self._bridge(on_change, on_error, convert))
        return watch.unsubscribe

    def server_timestamp(self):
        return firestore.SERVER_TIMESTAMP

    def delete_field(self):
        return firestore.DELETE_FIELD


def create_database(backend: str, project_id: Optional[str] = None) -> DocumentDatabase:
    if backend == "memory":
        logger.info("Using in-memory document database")
        return InMemoryDatabase()
    if backend == "firestore":
        logger.info(f"Using Firestore project {project_id}")
        return FirestoreDatabase(project_id=project_id)
    raise ValueError(f"Unknown database backend: {backend}")
