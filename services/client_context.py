"""
Client context: the explicitly constructed bundle of handles every
session-sync component receives (database, local state, cached identity,
departure hooks).

Configuration is read lazily on first use and then reused; saving or clearing
a config override resets that so the next access reads it again.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import config
from database import DocumentDatabase, create_database
from models.session_models import Identity
from services.errors import InvalidRequest, MissingCredential
from services.local_state_service import CONFIG_OVERRIDE_KEY, LocalStateStore

logger = logging.getLogger(__name__)

DepartureHook = Callable[[], Awaitable[Any]]


def read_config_from_env_or_local(state: LocalStateStore) -> Optional[Dict[str, str]]:
    """Firebase client config from the environment, else the saved override."""
    if config.FIREBASE_API_KEY and config.FIREBASE_PROJECT_ID:
        project_id = config.FIREBASE_PROJECT_ID
        return {
            "apiKey": config.FIREBASE_API_KEY,
            "authDomain": config.FIREBASE_AUTH_DOMAIN or f"{project_id}.firebaseapp.com",
            "projectId": project_id,
            "storageBucket": config.FIREBASE_STORAGE_BUCKET or f"{project_id}.appspot.com",
            "messagingSenderId": config.FIREBASE_MESSAGING_SENDER_ID,
            "appId": config.FIREBASE_APP_ID,
        }

    saved = state.get(CONFIG_OVERRIDE_KEY)
    if isinstance(saved, dict) and saved.get("apiKey") and saved.get("projectId"):
        return saved
    return None


class ClientContext:
    def __init__(self,
                 local_state: Optional[LocalStateStore] = None,
                 database: Optional[DocumentDatabase] = None,
                 backend: Optional[str] = None,
                 heartbeat_seconds: Optional[float] = None):
        self.local_state = local_state or LocalStateStore(config.LOCAL_STATE_PATH)
        self.backend = backend or config.DATABASE_BACKEND
        self.heartbeat_seconds = heartbeat_seconds or config.PRESENCE_HEARTBEAT_SECONDS
        self.current_identity: Optional[Identity] = None
        self._database = database
        self._client_config: Optional[Dict[str, str]] = None
        self._config_loaded = False
        self._departure_hooks: List[DepartureHook] = []

    # -- configuration ------------------------------------------------------

    @property
    def client_config(self) -> Optional[Dict[str, str]]:
        if not self._config_loaded:
            self._client_config = read_config_from_env_or_local(self.local_state)
            self._config_loaded = True
        return self._client_config

    def save_config_override(self, override: Dict[str, str]) -> None:
        if not override.get("apiKey") or not override.get("projectId"):
            raise InvalidRequest("Config must include apiKey and projectId")
        self.local_state.set(CONFIG_OVERRIDE_KEY, override)
        self._reset()

    def clear_config_override(self) -> None:
        self.local_state.remove(CONFIG_OVERRIDE_KEY)
        self._reset()

    def _reset(self) -> None:
        self._config_loaded = False
        self._client_config = None
        self.current_identity = None
        if self.backend != "memory":
            self._database = None

    # -- database -----------------------------------------------------------

    @property
    def database(self) -> DocumentDatabase:
        if self._database is None:
            project_id = None
            if self.backend == "firestore":
                cfg = self.client_config
                if not cfg:
                    raise MissingCredential("Firebase is not configured")
                project_id = cfg["projectId"]
            self._database = create_database(self.backend, project_id)
        return self._database

    @property
    def is_configured(self) -> bool:
        return self._database is not None or self.backend == "memory" or self.client_config is not None

    # -- departure hooks ----------------------------------------------------

    def add_departure_hook(self, hook: DepartureHook) -> None:
        self._departure_hooks.append(hook)

    def remove_departure_hook(self, hook: DepartureHook) -> None:
        if hook in self._departure_hooks:
            self._departure_hooks.remove(hook)

    async def run_departure_hooks(self) -> None:
        """Fire every registered hook once (client is going away)."""
        hooks, self._departure_hooks = self._departure_hooks, []
        results = await asyncio.gather(*(hook() for hook in hooks), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Departure hook failed: {result}")
