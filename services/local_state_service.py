import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SYNTHETIC_UID_KEY = "syntheticUid"
CONFIG_OVERRIDE_KEY = "firebaseConfig"
DISPLAY_NAME_KEY = "displayName"


class LocalStateStore:
    """
    Small JSON file holding per-client state that must survive restarts:
    the fallback uid, a saved Firebase config override and the display name.
    """

    def __init__(self, path: str):
        self.path = path

    def _read_all(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable local state at {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self._read_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def remove(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)


def get_display_name(state: LocalStateStore) -> Optional[str]:
    return state.get(DISPLAY_NAME_KEY) or None


def set_display_name(state: LocalStateStore, name: str) -> None:
    name = name.strip()
    if name:
        state.set(DISPLAY_NAME_KEY, name)
    else:
        state.remove(DISPLAY_NAME_KEY)
