import asyncio
import logging
import uuid
from typing import Optional

import requests

from models.session_models import Identity
from services.client_context import ClientContext
from services.errors import AuthFallback
from services.local_state_service import SYNTHETIC_UID_KEY

logger = logging.getLogger(__name__)

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"

# Identity Toolkit error codes meaning "anonymous auth is unusable here",
# as opposed to a network or server failure.
FALLBACK_ERROR_CODES = (
    "CONFIGURATION_NOT_FOUND",       # project has no auth configuration
    "OPERATION_NOT_ALLOWED",         # anonymous provider disabled
    "ADMIN_ONLY_OPERATION",          # anonymous provider disabled (newer projects)
    "API_KEY_HTTP_REFERRER_BLOCKED", # domain not authorized for this key
)


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or ""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", ""))
    if isinstance(error, str):
        return error
    return resp.text or ""


def sign_in_anonymously(api_key: Optional[str]) -> str:
    """
    Anonymous sign-in against the Firebase Identity Toolkit REST API.
    Returns the new uid. Raises AuthFallback for configuration-class errors.
    """
    if not api_key:
        raise AuthFallback("Identity service is not configured")

    resp = requests.post(
        SIGN_UP_URL,
        params={"key": api_key},
        json={"returnSecureToken": True},
        timeout=10,
    )
    if resp.ok:
        return resp.json()["localId"]

    message = _error_message(resp)
    if any(code in message for code in FALLBACK_ERROR_CODES):
        raise AuthFallback(message)
    resp.raise_for_status()
    raise RuntimeError(f"Unexpected sign-in response: {resp.status_code}")


class IdentityProvider:
    """Per-client stable participant id: managed when possible, local otherwise."""

    def __init__(self, context: ClientContext):
        self.context = context

    def _local_uid(self) -> str:
        state = self.context.local_state
        try:
            uid = state.get(SYNTHETIC_UID_KEY)
            if not uid:
                uid = str(uuid.uuid4())
                state.set(SYNTHETIC_UID_KEY, uid)
            return uid
        except OSError as e:
            logger.warning(f"Could not persist local identity: {e}")
            return "local-" + uuid.uuid4().hex[:12]

    async def ensure_identity(self) -> Identity:
        if self.context.current_identity is not None:
            return self.context.current_identity

        cfg = self.context.client_config or {}
        try:
            uid = await asyncio.to_thread(sign_in_anonymously, cfg.get("apiKey"))
            identity = Identity(uid=uid, origin="managed")
        except AuthFallback as e:
            logger.info(f"Anonymous sign-in unavailable ({e}); using local identity")
            identity = Identity(uid=self._local_uid(), origin="local")

        # Another caller may have finished first while we were signing in
        if self.context.current_identity is None:
            self.context.current_identity = identity
        return self.context.current_identity
