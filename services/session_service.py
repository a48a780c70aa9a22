import logging
import time
import uuid
from typing import Any, Dict, Optional

from models.session_models import SessionSnapshot
from services.client_context import ClientContext
from services.file_map_service import flatten_files_map

logger = logging.getLogger(__name__)

SESSIONS = "sessions"
PARTICIPANTS = "participants"


def session_path(session_id: str):
    return (SESSIONS, session_id)


def participant_path(session_id: str, uid: str):
    return (SESSIONS, session_id, PARTICIPANTS, uid)


def new_session_document(files: Dict[str, str]) -> Dict[str, Any]:
    return {
        "createdAt": int(time.time() * 1000),
        "files": files,
        "output": "",
        "participants": [],  # legacy; live presence is in the participants sub-collection
    }


def initial_files(session_id: str) -> Dict[str, str]:
    return {
        "main.js": "// Start coding...\nconsole.log('Hello from session: " + session_id[:8] + "')",
        "index.html": "<!doctype html>\n<html>\n  <head><title>Preview</title></head>\n  <body><h1>Hello</h1></body>\n</html>",
    }


class SessionStore:
    """Create/read/update session documents. Errors propagate to the caller."""

    def __init__(self, context: ClientContext):
        self.context = context

    @property
    def db(self):
        return self.context.database

    async def create_session(self) -> str:
        session_id = str(uuid.uuid4())
        await self.db.set(session_path(session_id), new_session_document(initial_files(session_id)))
        logger.info(f"Created session {session_id}")
        return session_id

    async def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        data = await self.db.get(session_path(session_id))
        if data is None:
            return None
        return SessionSnapshot(files=flatten_files_map(data.get("files") or {}), output=data.get("output", ""))

    async def update_file(self, session_id: str, filename: str, content: str) -> None:
        # ("files", filename) is a literal path: "a.b" stays one key
        await self.db.update(session_path(session_id), {("files", filename): content})

    async def add_file(self, session_id: str, filename: str, initial: str = "// New file") -> None:
        await self.update_file(session_id, filename, initial)

    async def update_output(self, session_id: str, text: str) -> None:
        await self.db.update(session_path(session_id), {("output",): text})
